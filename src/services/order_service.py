from __future__ import annotations

import logging
import secrets
import time
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from src.models import (
    DIGITAL_DELIVERY,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    TransitEntry,
    User,
    utcnow,
)
from src.services.pricing_service import PriceQuote

ORDER_PLACED_STAGE = "Order Placed (Awaiting Payment)"


def generate_order_number() -> str:
    """Millisecond timestamp plus a random suffix, e.g. BK-1729339200123A4F9."""
    return f"BK-{int(time.time() * 1000)}{secrets.token_hex(2).upper()}"


class OrderLedger:
    """
    Order records and their status/payment sub-state.

    ``claim`` is the only way an order leaves PENDING_PAYMENT; it is used
    exclusively by the settlement coordinator.
    """

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def create_pending_order(
        self,
        quote: PriceQuote,
        owner_id: int,
        shipping_address: Optional[str],
    ) -> Order:
        """Persist the quote verbatim as a PENDING_PAYMENT order. Flushes, does not commit."""
        is_physical = quote.has_physical_items
        order = Order(
            order_number=generate_order_number(),
            userID=owner_id,
            status=OrderStatus.PENDING_PAYMENT,
            subtotal=quote.subtotal,
            shipping_fee=quote.shipping_fee,
            discount_code=quote.discount_code,
            referral_code=quote.referral_code,
            discount_amount=quote.discount_amount,
            tax_amount=quote.tax_amount,
            total=quote.total,
            payment_status=PaymentStatus.PENDING,
            payment_initiated_at=utcnow(),
            shipping_address=shipping_address.strip() if is_physical else DIGITAL_DELIVERY,
            shipping_partner="Pending Assign" if is_physical else DIGITAL_DELIVERY,
        )
        for line in quote.lines:
            order.items.append(
                OrderItem(
                    bookID=line.book_id,
                    name=line.title,
                    kind=line.kind,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                )
            )
        order.transit_history.append(TransitEntry(stage=ORDER_PLACED_STAGE, completed=True))
        self.db.add(order)
        self.db.flush()
        self.logger.info(
            "Pending order created",
            extra={"order_number": order.order_number, "total": order.total, "user_id": owner_id},
        )
        return order

    def find_by_order_id(self, order_id: str) -> Optional[Order]:
        return self.db.query(Order).filter(Order.order_number == str(order_id)).first()

    def find_by_owner(self, owner_id: int) -> List[Order]:
        return (
            self.db.query(Order)
            .filter(Order.userID == owner_id)
            .order_by(Order.created_at.desc(), Order.orderID.desc())
            .all()
        )

    def search(
        self,
        page: int = 1,
        limit: int = 10,
        search: str = "",
        status: Optional[OrderStatus] = None,
        payment_status: Optional[PaymentStatus] = None,
        user_id: Optional[int] = None,
    ) -> Tuple[List[Order], int]:
        """Admin listing, newest first. Returns one page and the total match count."""
        query = self.db.query(Order)
        if user_id is not None:
            query = query.filter(Order.userID == user_id)
        if status is not None:
            query = query.filter(Order.status == status)
        if payment_status is not None:
            query = query.filter(Order.payment_status == payment_status)
        if search:
            pattern = f"%{search}%"
            buyers = self.db.query(User.userID).filter(
                or_(User.name.ilike(pattern), User.email.ilike(pattern), User.mobile.ilike(pattern))
            )
            query = query.filter(
                or_(
                    Order.order_number.ilike(pattern),
                    Order.userID.in_(buyers),
                    Order.payment_txn_id.ilike(pattern),
                    Order.tracking_id.ilike(pattern),
                )
            )

        total = query.count()
        orders = (
            query.order_by(Order.created_at.desc(), Order.orderID.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return orders, total


    def append_transit(self, order: Order, stage: str, completed: bool = True) -> TransitEntry:
        entry = TransitEntry(stage=stage, completed=completed, occurred_at=utcnow())
        order.transit_history.append(entry)
        return entry

    def update_shipping(
        self,
        order: Order,
        partner: Optional[str] = None,
        tracking_id: Optional[str] = None,
    ) -> None:
        if partner:
            order.shipping_partner = partner.strip()
        if tracking_id:
            order.tracking_id = tracking_id.strip()

    def set_status(self, order: Order, status: OrderStatus) -> None:
        """Post-settlement transitions only (delivery, cancellation)."""
        if OrderStatus(order.status) == OrderStatus.PENDING_PAYMENT:
            raise ValueError("Pending orders can only leave PENDING_PAYMENT through settlement")
        order.status = status

    def claim(self, order: Order, new_status: OrderStatus) -> bool:
        """
        Atomically move ``order`` out of PENDING_PAYMENT.

        Exactly one concurrent caller sees True; everyone else must skip all
        settlement side effects. The in-memory order is refreshed either way.
        """
        updated = (
            self.db.query(Order)
            .filter(
                Order.orderID == order.orderID,
                Order.status == OrderStatus.PENDING_PAYMENT,
            )
            .update(
                {Order.status: new_status, Order.updated_at: utcnow()},
                synchronize_session=False,
            )
        )
        self.db.refresh(order)
        return updated == 1

    def find_stale_pending(self, cutoff: datetime, limit: int = 100) -> List[Order]:
        """
        Orders still awaiting payment whose last payment attempt started before
        ``cutoff``, least recently checked first.
        """
        last_seen = func.coalesce(Order.payment_checked_at, Order.payment_initiated_at)
        return (
            self.db.query(Order)
            .filter(
                Order.status == OrderStatus.PENDING_PAYMENT,
                Order.payment_initiated_at < cutoff,
            )
            .order_by(last_seen, Order.orderID)
            .limit(limit)
            .all()
        )

    def mark_checked(self, order_number: str) -> None:
        """Move a still-pending order to the back of the sweep queue."""
        self.db.query(Order).filter(
            Order.order_number == order_number,
            Order.status == OrderStatus.PENDING_PAYMENT,
        ).update({Order.payment_checked_at: utcnow()}, synchronize_session=False)
        self.db.commit()
