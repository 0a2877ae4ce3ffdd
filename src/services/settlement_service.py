from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from src.models import Order, OrderStatus, PaymentStatus, utcnow
from src.observability import increment_counter, record_event
from src.services.payment_gateway import TRANSACTION_NOT_FOUND

PAYMENT_VERIFIED_STAGE = "Payment Verified"
ZERO_TOTAL_TRANSACTION_ID = "DISC-100"
ZERO_TOTAL_METHOD = "100% Discount"


class PaymentOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    PENDING = "PENDING"


SUCCESS_CODES = frozenset({"PAYMENT_SUCCESS"})
FAILURE_CODES = frozenset({"PAYMENT_ERROR", "PAYMENT_DECLINED", "TIMED_OUT"})


def map_provider_code(code: Optional[str], not_found_is_failure: bool = False) -> PaymentOutcome:
    """
    Translate a provider response code into a settlement outcome.

    TRANSACTION_NOT_FOUND means the buyer never reached the hosted page; the
    sweep treats that as an abandoned payment, manual verification does not.
    """
    if code in SUCCESS_CODES:
        return PaymentOutcome.SUCCESS
    if code in FAILURE_CODES:
        return PaymentOutcome.FAILURE
    if code == TRANSACTION_NOT_FOUND and not_found_is_failure:
        return PaymentOutcome.FAILURE
    return PaymentOutcome.PENDING


@dataclass(frozen=True)
class SettlementResult:
    order_number: str
    found: bool
    applied: bool
    status: Optional[str] = None
    payment_status: Optional[str] = None

    def to_dict(self):
        return {
            "orderId": self.order_number,
            "status": self.status,
            "paymentStatus": self.payment_status,
            "applied": self.applied,
        }


def _value(enum_value) -> Optional[str]:
    if enum_value is None:
        return None
    return getattr(enum_value, "value", enum_value)


class SettlementCoordinator:
    """
    The one code path that moves an order out of PENDING_PAYMENT.

    Checkout (zero total), the payment webhook, manual verification and the
    pending-payment sweep all call ``settle``. The atomic claim in the order
    ledger guarantees only one caller ever applies inventory and referral
    side effects for a given order.
    """

    def __init__(
        self,
        db_session: Session,
        orders=None,
        inventory=None,
        promotions=None,
        notify=None,
    ) -> None:
        from src.services.inventory_service import InventoryService
        from src.services.notification_service import publish_order_event
        from src.services.order_service import OrderLedger
        from src.services.promotion_service import PromotionLedger

        self.db = db_session
        self.orders = orders or OrderLedger(db_session)
        self.inventory = inventory or InventoryService(db_session)
        self.promotions = promotions or PromotionLedger(db_session)
        self.notify = notify or publish_order_event
        self.logger = logging.getLogger(__name__)

    def settle(
        self,
        order_number: str,
        outcome: PaymentOutcome,
        transaction_id: Optional[str] = None,
        method: Optional[str] = None,
        source: str = "unknown",
    ) -> SettlementResult:
        order = self.orders.find_by_order_id(order_number)
        if order is None:
            self.logger.info(
                "Settlement for unknown order ignored",
                extra={"order_number": order_number, "source": source},
            )
            return SettlementResult(order_number=order_number, found=False, applied=False)

        if not order.is_pending_payment:
            increment_counter("settlement_noop_total", labels={"source": source})
            return self._result(order, applied=False)

        outcome = PaymentOutcome(outcome)
        if outcome == PaymentOutcome.SUCCESS:
            return self._settle_success(order, transaction_id, method, source)
        if outcome == PaymentOutcome.FAILURE:
            return self._settle_failure(order, transaction_id, source)
        return self._result(order, applied=False)

    def _settle_success(
        self,
        order: Order,
        transaction_id: Optional[str],
        method: Optional[str],
        source: str,
    ) -> SettlementResult:
        try:
            if not self.orders.claim(order, OrderStatus.IN_PROGRESS):
                self.db.rollback()
                increment_counter("settlement_noop_total", labels={"source": source})
                return self._result(order, applied=False)

            now = utcnow()
            order.payment_status = PaymentStatus.SUCCESS
            order.payment_txn_id = transaction_id or order.payment_txn_id
            order.payment_method = method or order.payment_method or "Online"
            order.payment_updated_at = now
            self.orders.append_transit(order, PAYMENT_VERIFIED_STAGE, completed=True)

            self.inventory.deduct(order)
            if order.referral_code:
                self.promotions.credit_referral(order.referral_code, order)

            self.db.commit()
        except Exception:
            self.db.rollback()
            self.logger.exception(
                "Settlement failed; order left pending",
                extra={"order_number": order.order_number, "source": source},
            )
            raise

        increment_counter("settlements_total", labels={"outcome": "success", "source": source})
        record_event(
            "order_settled",
            {"order_number": order.order_number, "outcome": "success", "source": source, "total": order.total},
        )
        self.logger.info(
            "Order settled as paid",
            extra={"order_number": order.order_number, "source": source, "txn_id": order.payment_txn_id},
        )
        self.notify(order, "payment_success")
        return self._result(order, applied=True)

    def _settle_failure(self, order: Order, transaction_id: Optional[str], source: str) -> SettlementResult:
        try:
            if not self.orders.claim(order, OrderStatus.FAILED):
                self.db.rollback()
                increment_counter("settlement_noop_total", labels={"source": source})
                return self._result(order, applied=False)

            order.payment_status = PaymentStatus.FAILED
            if transaction_id:
                order.payment_txn_id = transaction_id
            order.payment_updated_at = utcnow()
            self.inventory.release(order)
            self.db.commit()
        except Exception:
            self.db.rollback()
            self.logger.exception(
                "Failed-payment settlement could not be stored",
                extra={"order_number": order.order_number, "source": source},
            )
            raise

        increment_counter("settlements_total", labels={"outcome": "failure", "source": source})
        record_event(
            "order_settled",
            {"order_number": order.order_number, "outcome": "failure", "source": source},
        )
        self.logger.info(
            "Order settled as failed",
            extra={"order_number": order.order_number, "source": source},
        )
        return self._result(order, applied=True)

    @staticmethod
    def _result(order: Order, applied: bool) -> SettlementResult:
        return SettlementResult(
            order_number=order.order_number,
            found=True,
            applied=applied,
            status=_value(order.status),
            payment_status=_value(order.payment_status),
        )
