from __future__ import annotations

import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from src.errors import Forbidden, OrderNotFound, ValidationError
from src.models import Order, OrderStatus, PaymentStatus, TransitEntry
from src.observability import increment_counter
from src.sanitize import clean_text
from src.services.notification_service import publish_order_event
from src.services.order_service import OrderLedger
from src.services.settings_service import SettingsService

DELIVERED_STAGE = "Delivered"
SHIPPABLE_STATUSES = frozenset({OrderStatus.IN_PROGRESS, OrderStatus.DELIVERED, OrderStatus.SUCCESS})
ADMIN_STATUSES = frozenset({OrderStatus.IN_PROGRESS, OrderStatus.DELIVERED, OrderStatus.CANCELLED})


def _parse_carrier_time(value: Any) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def map_carrier_status(current_status: str, location: Optional[str]) -> Tuple[str, bool]:
    """Return (transit stage label, delivered?) for a carrier status string."""
    lowered = current_status.lower()
    if "delivered" in lowered:
        return DELIVERED_STAGE, True
    if "transit" in lowered or "dispatched" in lowered:
        return f"In Transit - {location or 'Unknown'}", False
    return current_status, False


class FulfillmentService:
    """Shipping updates for paid orders, from the admin screen or the carrier."""

    def __init__(self, db_session: Session, orders=None, settings_service=None, notify=None) -> None:
        self.db = db_session
        self.orders = orders or OrderLedger(db_session)
        self.settings = settings_service or SettingsService(db_session)
        self.notify = notify or publish_order_event
        self.logger = logging.getLogger(__name__)

    def update_shipping(self, order_id: str, data: Dict[str, Any]) -> Tuple[bool, str, Optional[Order]]:
        order = self.orders.find_by_order_id(order_id)
        if order is None:
            return False, "Order not found", None
        if OrderStatus(order.status) not in SHIPPABLE_STATUSES:
            return False, "Only paid orders can be shipped", order

        partner = clean_text(data.get("partner"), max_length=120)
        tracking_id = clean_text(data.get("trackingId"), max_length=120)
        stage = clean_text(data.get("stage"), max_length=255)
        if not (partner or tracking_id or stage):
            return False, "Nothing to update", order

        first_tracking = bool(tracking_id) and not order.tracking_id
        self.orders.update_shipping(order, partner=partner or None, tracking_id=tracking_id or None)
        if stage:
            self.orders.append_transit(order, stage, completed=True)
        elif first_tracking:
            self.orders.append_transit(order, "Dispatched", completed=True)
        self.db.commit()

        self.logger.info(
            "Shipping updated",
            extra={"order_number": order.order_number, "partner": order.shipping_partner, "tracking_id": order.tracking_id},
        )
        if first_tracking:
            self.notify(order, "order_dispatched")
        return True, "Transit updated", order

    def update_status(self, order_id: str, value: Any) -> Tuple[bool, str, Optional[Order]]:
        """Admin status override for orders that have already been settled."""
        order = self.orders.find_by_order_id(order_id)
        if order is None:
            return False, "Order not found", None
        try:
            status = OrderStatus(str(value or "").strip().upper().replace(" ", "_"))
        except ValueError:
            return False, f"Unknown order status: {value}", order
        if status not in ADMIN_STATUSES:
            return False, f"Status {status.value} cannot be set manually", order
        paid = PaymentStatus(order.payment_status) == PaymentStatus.SUCCESS
        if status != OrderStatus.CANCELLED and not paid:
            return False, "Only paid orders can be moved to " + status.value, order

        previous = OrderStatus(order.status)
        try:
            self.orders.set_status(order, status)
        except ValueError as exc:
            return False, str(exc), order
        newly_delivered = status == OrderStatus.DELIVERED and previous != OrderStatus.DELIVERED
        if newly_delivered:
            self.orders.append_transit(order, DELIVERED_STAGE, completed=True)
        self.db.commit()

        self.logger.info(
            "Order status changed by admin",
            extra={"order_number": order.order_number, "previous_status": previous.value, "new_status": status.value},
        )
        if newly_delivered:
            self.notify(order, "order_delivered")
        return True, "Order status updated", order

    def handle_delivery_update(self, payload: Dict[str, Any], token: Optional[str]) -> Order:
        """Apply a carrier status callback keyed by waybill (our tracking id)."""
        settings = self.settings.resolve()
        expected = settings.delivery_api_token
        if expected and not hmac.compare_digest(expected.encode("utf-8"), (token or "").encode("utf-8")):
            increment_counter("delivery_callbacks_rejected_total")
            raise Forbidden("Invalid delivery token")

        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        waybill = clean_text(payload.get("waybill"), max_length=120)
        current_status = clean_text(payload.get("current_status"), max_length=255)
        if not waybill:
            raise ValidationError("waybill is required", field="waybill")
        if not current_status:
            raise ValidationError("current_status is required", field="current_status")

        order = self.db.query(Order).filter(Order.tracking_id == waybill).first()
        if order is None:
            raise OrderNotFound(waybill)
        if PaymentStatus(order.payment_status) != PaymentStatus.SUCCESS:
            raise ValidationError("Order is not paid", field="waybill")

        location = clean_text(payload.get("location"), max_length=120)
        stage, delivered = map_carrier_status(current_status, location)
        order.transit_history.append(
            TransitEntry(stage=stage, occurred_at=_parse_carrier_time(payload.get("status_dateTime")), completed=True)
        )
        newly_delivered = delivered and OrderStatus(order.status) != OrderStatus.DELIVERED
        if newly_delivered:
            self.orders.set_status(order, OrderStatus.DELIVERED)
        self.db.commit()

        increment_counter("delivery_updates_total", labels={"delivered": str(delivered).lower()})
        if newly_delivered:
            self.notify(order, "order_delivered")
        return order
