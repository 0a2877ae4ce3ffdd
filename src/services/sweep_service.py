"""
Pending payment sweeper.

Orders whose payment session has been open longer than the configured
timeout are checked against the provider and settled. The provider never
having seen the transaction (404) counts as an abandoned payment. Gateway
errors leave the order for the next pass.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from src.config import Config
from src.errors import CheckoutError
from src.models import utcnow
from src.observability import increment_counter, record_event
from src.services.order_service import OrderLedger
from src.services.payment_gateway import PaymentGatewayClient
from src.services.settings_service import SettingsService
from src.services.settlement_service import PaymentOutcome, SettlementCoordinator, map_provider_code

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    checked: int = 0
    settled_success: int = 0
    settled_failure: int = 0
    still_pending: int = 0
    already_settled: int = 0
    errors: int = 0
    skipped_reason: Optional[str] = None
    order_numbers: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "settledSuccess": self.settled_success,
            "settledFailure": self.settled_failure,
            "stillPending": self.still_pending,
            "alreadySettled": self.already_settled,
            "errors": self.errors,
            "skippedReason": self.skipped_reason,
        }


class PendingPaymentSweeper:
    """
    Runs the reconciliation pass, on demand or from a daemon thread.

    Each pass opens its own session from ``session_factory`` so the thread
    never shares a session with request handlers.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway_factory: Optional[Callable[..., PaymentGatewayClient]] = None,
        timeout_minutes: Optional[int] = None,
        batch_size: int = 100,
    ) -> None:
        self.session_factory = session_factory
        self.gateway_factory = gateway_factory or PaymentGatewayClient
        self.timeout_minutes = timeout_minutes or Config.PENDING_PAYMENT_TIMEOUT_MINUTES
        self.batch_size = batch_size
        self._scheduler_thread: Optional[threading.Thread] = None
        self._scheduler_running = False

    def sweep_once(self) -> SweepReport:
        report = SweepReport()
        db = self.session_factory()
        try:
            orders = OrderLedger(db)
            cutoff = utcnow() - timedelta(minutes=self.timeout_minutes)
            stale = orders.find_stale_pending(cutoff, limit=self.batch_size)
            if not stale:
                return report

            settings = SettingsService(db).resolve()
            if not settings.gateway.is_configured:
                report.skipped_reason = "Payment gateway is not configured"
                logger.error("Cannot sweep pending payments: merchant credentials missing")
                return report

            gateway = self.gateway_factory(settings.gateway)
            coordinator = SettlementCoordinator(db, orders=orders)
            order_numbers = [order.order_number for order in stale]
            # Release the read transaction before talking to the provider
            db.commit()

            for order_number in order_numbers:
                report.checked += 1
                report.order_numbers.append(order_number)
                self._reconcile(order_number, gateway, orders, coordinator, report)
        finally:
            db.close()

        increment_counter("payment_sweeps_total")
        record_event("payment_sweep_completed", report.to_dict())
        logger.info("Pending payment sweep finished", extra=report.to_dict())
        return report

    def _reconcile(
        self,
        order_number: str,
        gateway: PaymentGatewayClient,
        orders: OrderLedger,
        coordinator: SettlementCoordinator,
        report: SweepReport,
    ) -> None:
        try:
            status = gateway.check_status(order_number)
        except CheckoutError as exc:
            report.errors += 1
            increment_counter("payment_sweep_errors_total")
            logger.warning("Status check failed for %s, retrying next sweep: %s", order_number, exc.message)
            orders.mark_checked(order_number)
            return

        outcome = map_provider_code(status.code, not_found_is_failure=True)
        try:
            result = coordinator.settle(
                order_number,
                outcome,
                transaction_id=status.transaction_id,
                method=status.payment_method or "Online (Auto-Recovery)",
                source="sweep",
            )
        except Exception:
            report.errors += 1
            increment_counter("payment_sweep_errors_total")
            logger.exception("Settlement failed during sweep for %s", order_number)
            orders.db.rollback()
            orders.mark_checked(order_number)
            return

        if outcome == PaymentOutcome.PENDING:
            report.still_pending += 1
            orders.mark_checked(order_number)
        elif not result.applied:
            report.already_settled += 1
        elif outcome == PaymentOutcome.SUCCESS:
            report.settled_success += 1
        else:
            report.settled_failure += 1

    # ------------------------------------------------------------------
    # Background scheduling
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._scheduler_running

    def start_scheduler(self, check_interval: Optional[int] = None) -> None:
        if self._scheduler_running:
            logger.warning("Payment sweeper is already running")
            return
        interval = check_interval or Config.PAYMENT_SWEEP_INTERVAL_SECONDS
        self._scheduler_running = True
        self._scheduler_thread = threading.Thread(
            target=self._scheduler_loop,
            args=(interval,),
            name="pending-payment-sweeper",
            daemon=True,
        )
        self._scheduler_thread.start()
        logger.info("Started pending payment sweeper (interval: %ss)", interval)

    def stop_scheduler(self) -> None:
        self._scheduler_running = False
        if self._scheduler_thread:
            self._scheduler_thread.join(timeout=5)
            self._scheduler_thread = None
        logger.info("Stopped pending payment sweeper")

    def _scheduler_loop(self, check_interval: int) -> None:
        while self._scheduler_running:
            try:
                self.sweep_once()
            except Exception:
                logger.exception("Pending payment sweep crashed")

            # Sleep in small increments to allow for quick shutdown
            for _ in range(check_interval):
                if not self._scheduler_running:
                    break
                time.sleep(1)
