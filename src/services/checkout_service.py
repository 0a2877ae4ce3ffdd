from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from src.config import Config
from src.errors import CheckoutError, OrderNotFound, ValidationError
from src.models import Order, OrderStatus, PaymentStatus, User, utcnow
from src.observability import increment_counter, record_event
from src.sanitize import clean_text
from src.services.inventory_service import InventoryService
from src.services.notification_service import publish_order_event
from src.services.order_service import OrderLedger
from src.services.payment_gateway import PaymentGatewayClient
from src.services.pricing_service import PriceQuote, PricingEngine, parse_cart_lines
from src.services.promotion_service import PromotionLedger
from src.services.settings_service import GatewaySettings, SettingsService
from src.services.settlement_service import (
    ZERO_TOTAL_METHOD,
    ZERO_TOTAL_TRANSACTION_ID,
    PaymentOutcome,
    SettlementCoordinator,
    map_provider_code,
)

GatewayFactory = Callable[[GatewaySettings], PaymentGatewayClient]


def payment_status_url(order_number: str) -> str:
    return f"{Config.FRONTEND_URL}/payment-status/{order_number}"


def payment_callback_url() -> str:
    return f"{Config.API_BASE_URL}/api/webhooks/payment"


def _optional_code(payload: Dict[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string", field=key)
    return value


@dataclass(frozen=True)
class CheckoutResult:
    order_number: str
    total: int
    redirect_url: str
    settled: bool
    quote: PriceQuote

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_number,
            "total": self.total,
            "paymentPayload": {"redirectUrl": self.redirect_url},
            "settled": self.settled,
            "priceBreakup": self.quote.to_dict(),
        }


class CheckoutService:
    """
    Buyer-facing order lifecycle: checkout, payment retry, manual
    verification, the signed payment callback and admin refunds.

    Settings are resolved once per call and the gateway client is built from
    them, so an admin credential change applies to the next request.
    """

    def __init__(
        self,
        db_session: Session,
        settings_service: Optional[SettingsService] = None,
        pricing: Optional[PricingEngine] = None,
        inventory: Optional[InventoryService] = None,
        promotions: Optional[PromotionLedger] = None,
        orders: Optional[OrderLedger] = None,
        settlement: Optional[SettlementCoordinator] = None,
        gateway_factory: Optional[GatewayFactory] = None,
        notify=None,
    ) -> None:
        self.db = db_session
        self.settings = settings_service or SettingsService(db_session)
        self.inventory = inventory or InventoryService(db_session)
        self.promotions = promotions or PromotionLedger(db_session)
        self.orders = orders or OrderLedger(db_session)
        self.pricing = pricing or PricingEngine(db_session, promotions=self.promotions)
        self.notify = notify or publish_order_event
        self.settlement = settlement or SettlementCoordinator(
            db_session,
            orders=self.orders,
            inventory=self.inventory,
            promotions=self.promotions,
            notify=self.notify,
        )
        self.gateway_factory = gateway_factory or PaymentGatewayClient
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def checkout(self, user: User, payload: Dict[str, Any]) -> CheckoutResult:
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")

        lines = parse_cart_lines(payload.get("orderItems"))
        discount_code = _optional_code(payload, "discountCode")
        referral_code = _optional_code(payload, "referralCode")
        shipping_address = clean_text(payload.get("shippingAddress"), max_length=1000)
        settings = self.settings.resolve()

        try:
            quote = self.pricing.quote(
                lines,
                settings,
                discount_code=discount_code,
                referral_code=referral_code,
                shipping_address=shipping_address,
            )
            self.inventory.reserve(quote.lines)
            if quote.discount_code:
                self.promotions.consume_discount(quote.discount_code)
            order = self.orders.create_pending_order(quote, user.userID, shipping_address)
            self.db.commit()
        except CheckoutError as exc:
            self.db.rollback()
            increment_counter("checkouts_rejected_total", labels={"reason": exc.code})
            self.logger.info("Checkout rejected: %s", exc.message, extra={"user_id": user.userID})
            raise
        except Exception:
            self.db.rollback()
            raise

        increment_counter("checkouts_total")
        record_event(
            "order_created",
            {"order_number": order.order_number, "user_id": user.userID, "total": order.total},
        )

        if order.total == 0:
            self.settlement.settle(
                order.order_number,
                PaymentOutcome.SUCCESS,
                transaction_id=ZERO_TOTAL_TRANSACTION_ID,
                method=ZERO_TOTAL_METHOD,
                source="checkout",
            )
            return CheckoutResult(
                order_number=order.order_number,
                total=0,
                redirect_url=payment_status_url(order.order_number),
                settled=True,
                quote=quote,
            )

        gateway = self.gateway_factory(settings.gateway)
        redirect_url = gateway.initiate(
            order,
            redirect_url=payment_status_url(order.order_number),
            callback_url=payment_callback_url(),
            user_id=user.userID,
            mobile_number=user.mobile,
        )
        self.notify(order, "order_placed", settings.store_name)
        return CheckoutResult(
            order_number=order.order_number,
            total=order.total,
            redirect_url=redirect_url,
            settled=False,
            quote=quote,
        )

    # ------------------------------------------------------------------
    # Buyer follow-ups
    # ------------------------------------------------------------------

    def get_owned_order(self, user: User, order_id: str) -> Order:
        order = self.orders.find_by_order_id(order_id)
        if order is None or order.userID != user.userID:
            raise OrderNotFound(order_id)
        return order

    def retry_payment(self, user: User, order_id: str) -> str:
        """Open a new hosted checkout session for the order's stored total."""
        order = self.get_owned_order(user, order_id)
        if not order.is_pending_payment:
            raise ValidationError("Order is not pending payment")

        settings = self.settings.resolve()
        gateway = self.gateway_factory(settings.gateway)
        redirect_url = gateway.initiate(
            order,
            redirect_url=payment_status_url(order.order_number),
            callback_url=payment_callback_url(),
            user_id=user.userID,
            mobile_number=user.mobile,
        )
        order.payment_initiated_at = utcnow()
        order.payment_checked_at = None
        self.db.commit()
        increment_counter("payment_retries_total")
        return redirect_url

    def verify_payment(self, user: User, order_id: str) -> Dict[str, Any]:
        order = self.get_owned_order(user, order_id)
        if not order.is_pending_payment:
            return {
                "orderId": order.order_number,
                "status": OrderStatus(order.status).value,
                "paymentStatus": PaymentStatus(order.payment_status).value,
            }

        settings = self.settings.resolve()
        gateway = self.gateway_factory(settings.gateway)
        status = gateway.check_status(order.order_number)
        # Nothing is held open while the provider answers; settle claims afresh
        result = self.settlement.settle(
            order.order_number,
            map_provider_code(status.code, not_found_is_failure=False),
            transaction_id=status.transaction_id,
            method=status.payment_method or "Online",
            source="manual_verify",
        )
        body = result.to_dict()
        body["code"] = status.code
        return body

    def handle_payment_callback(self, raw_payload: Optional[str], signature: Optional[str]):
        """
        Verify and apply a provider callback.

        SignatureMismatch propagates so the caller can answer 400. Anything that
        goes wrong after verification is logged and swallowed so the provider
        stops retrying; the sweep reconciles the order later.
        """
        settings = self.settings.resolve()
        gateway = self.gateway_factory(settings.gateway)
        try:
            decoded = gateway.verify_callback(raw_payload, signature)
        except ValidationError as exc:
            increment_counter("webhook_processing_errors_total")
            self.logger.error("Signed callback could not be decoded: %s", exc.message)
            return None

        try:
            data = decoded.get("data") or {}
            order_number = data.get("merchantTransactionId")
            if not order_number:
                self.logger.warning("Verified callback without merchantTransactionId")
                return None
            instrument = data.get("paymentInstrument") or {}
            return self.settlement.settle(
                order_number,
                map_provider_code(decoded.get("code") or data.get("code")),
                transaction_id=data.get("transactionId"),
                method=instrument.get("type") or "Online Webhook",
                source="webhook",
            )
        except Exception:
            increment_counter("webhook_processing_errors_total")
            self.logger.exception("Payment callback processing failed after verification")
            return None

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    def refund_order(self, order_id: str) -> Tuple[bool, str, Optional[Dict[str, Any]]]:
        """
        Refund a paid order. The order is claimed (SUCCESS -> REFUNDING) before
        the provider is called, so concurrent refunds reach the gateway once.
        """
        order = self.orders.find_by_order_id(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        if PaymentStatus(order.payment_status) != PaymentStatus.SUCCESS:
            return False, "Invalid order state for refund", None
        if not self._move_payment_status(order, PaymentStatus.SUCCESS, PaymentStatus.REFUNDING):
            return False, "Order was already refunded", None

        refund_txn_id: Optional[str] = None
        gateway_code = "NOT_REQUIRED"
        if order.total > 0 and order.payment_txn_id != ZERO_TOTAL_TRANSACTION_ID:
            try:
                settings = self.settings.resolve()
                gateway = self.gateway_factory(settings.gateway)
                result = gateway.refund(order, callback_url=payment_callback_url())
            except Exception:
                self._move_payment_status(order, PaymentStatus.REFUNDING, PaymentStatus.SUCCESS)
                raise
            gateway_code = result.code
            if not result.accepted:
                self._move_payment_status(order, PaymentStatus.REFUNDING, PaymentStatus.SUCCESS)
                increment_counter("refunds_total", labels={"outcome": "rejected"})
                self.logger.warning(
                    "Refund rejected at gateway",
                    extra={"order_number": order.order_number, "code": result.code},
                )
                return False, "Refund failed at gateway", {"code": result.code}
            refund_txn_id = result.refund_transaction_id

        order.status = OrderStatus.CANCELLED
        order.payment_status = PaymentStatus.REFUNDED
        order.refund_txn_id = refund_txn_id
        order.payment_updated_at = utcnow()
        self.orders.append_transit(order, "Order Cancelled (Refund Initiated)", completed=True)
        self.db.commit()
        self.db.refresh(order)

        increment_counter("refunds_total", labels={"outcome": "accepted"})
        self.logger.info(
            "Refund initiated",
            extra={"order_number": order.order_number, "amount": order.total, "refund_txn_id": refund_txn_id},
        )

        self.notify(order, "refund_processed")
        return True, "Refund initiated successfully", {
            "orderId": order.order_number,
            "status": OrderStatus(order.status).value,
            "paymentStatus": PaymentStatus(order.payment_status).value,
            "refundTransactionId": refund_txn_id,
            "code": gateway_code,
        }

    def _move_payment_status(self, order: Order, expected: PaymentStatus, new: PaymentStatus) -> bool:
        updated = (
            self.db.query(Order)
            .filter(Order.orderID == order.orderID, Order.payment_status == expected)
            .update(
                {Order.payment_status: new, Order.payment_updated_at: utcnow()},
                synchronize_session=False,
            )
        )
        self.db.commit()
        self.db.refresh(order)
        return updated == 1
