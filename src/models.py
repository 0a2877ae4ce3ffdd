# src/models.py
from __future__ import annotations

from enum import Enum
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Tuple

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    DateTime,
    ForeignKey,
    Boolean,
    Text,
    UniqueConstraint,
    Enum as SAEnum,
)
from sqlalchemy.orm import relationship

# Use a single, shared Base for all models
from src.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ItemKind(str, Enum):
    PHYSICAL = "PHYSICAL"
    DIGITAL = "DIGITAL"


class StockChangeKind(str, Enum):
    ADDITION = "ADDITION"
    DEDUCTION = "DEDUCTION"
    CREATION = "CREATION"


class DiscountKind(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FLAT_AMOUNT = "FLAT_AMOUNT"


class DiscountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    INACTIVE = "INACTIVE"


class ReferralStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DISABLED = "DISABLED"


class PayoutStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "PENDING_PAYMENT"
    IN_PROGRESS = "IN_PROGRESS"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    REFUNDING = "REFUNDING"
    REFUNDED = "REFUNDED"


DIGITAL_DELIVERY = "Digital Delivery"
UNLIMITED_STOCK_LABEL = "∞"


class User(Base):
    __tablename__ = 'User'
    userID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    mobile = Column(String(20))
    role = Column(String(50), default='customer', nullable=False)
    created_at = Column(DateTime, default=utcnow)

    orders = relationship("Order", back_populates="user")
    referrals = relationship("Referral", back_populates="user")

    @property
    def is_admin(self) -> bool:
        return (self.role or '').lower() == 'admin'


class Book(Base):
    __tablename__ = 'Book'
    bookID = Column(Integer, primary_key=True, autoincrement=True)
    sku = Column(String(64), unique=True, nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    kind = Column(
        SAEnum(ItemKind, name="item_kind", native_enum=False, validate_strings=True),
        nullable=False,
    )
    price = Column(Integer, nullable=False)
    # NULL stock means unlimited (digital goods)
    stock = Column(Integer)
    reserved = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    history = relationship(
        "StockHistory",
        back_populates="book",
        cascade="all, delete-orphan",
        order_by="StockHistory.entryID",
    )

    @property
    def is_physical(self) -> bool:
        return ItemKind(self.kind) == ItemKind.PHYSICAL

    @property
    def available_stock(self) -> Optional[int]:
        """Units that can still be promised to a new order; None when unlimited."""
        if not self.is_physical:
            return None
        return max(0, (self.stock or 0) - (self.reserved or 0))

    def can_supply(self, quantity: int) -> bool:
        available = self.available_stock
        return available is None or quantity <= available


class StockHistory(Base):
    __tablename__ = 'StockHistory'
    entryID = Column(Integer, primary_key=True, autoincrement=True)
    bookID = Column(Integer, ForeignKey('Book.bookID', ondelete="CASCADE"), nullable=False)
    kind = Column(
        SAEnum(StockChangeKind, name="stock_change_kind", native_enum=False, validate_strings=True),
        nullable=False,
    )
    change = Column(Integer, nullable=False)
    balance = Column(Integer, nullable=False)
    reason = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    book = relationship("Book", back_populates="history")


class Discount(Base):
    __tablename__ = 'Discount'
    discountID = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(64), unique=True, nullable=False)
    kind = Column(
        SAEnum(DiscountKind, name="discount_kind", native_enum=False, validate_strings=True),
        nullable=False,
    )
    value = Column(Integer, nullable=False)
    max_discount = Column(Integer)
    valid_till = Column(DateTime)
    max_usage = Column(Integer)
    current_usage = Column(Integer, nullable=False, default=0)
    status = Column(
        SAEnum(DiscountStatus, name="discount_status", native_enum=False, validate_strings=True),
        nullable=False,
        default=DiscountStatus.ACTIVE,
    )
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def is_past_expiry(self, now: Optional[datetime] = None) -> bool:
        if self.valid_till is None:
            return False
        return as_utc(self.valid_till) <= (now or utcnow())

    def is_usage_exhausted(self) -> bool:
        return self.max_usage is not None and (self.current_usage or 0) >= self.max_usage

    def check_usable(self, now: Optional[datetime] = None) -> Tuple[bool, str]:
        if DiscountStatus(self.status) == DiscountStatus.INACTIVE:
            return False, "This code is not active"
        if self.is_past_expiry(now):
            return False, "This code has expired"
        if self.is_usage_exhausted():
            return False, "This code usage limit has been reached"
        if DiscountStatus(self.status) != DiscountStatus.ACTIVE:
            return False, "This code has expired"
        return True, "OK"

    def compute_amount(self, subtotal: int) -> int:
        # Imported lazily to keep models free of service dependencies at import time
        from src.services.pricing_service import round_half_up

        if DiscountKind(self.kind) == DiscountKind.PERCENTAGE:
            amount = round_half_up(Decimal(subtotal) * self.value / 100)
            if self.max_discount is not None:
                amount = min(amount, self.max_discount)
        else:
            amount = self.value
        return max(0, min(amount, subtotal))

    def refresh_status(self, now: Optional[datetime] = None) -> DiscountStatus:
        """Re-derive Active/Expired from the current data. A manual INACTIVE is left alone."""
        current = DiscountStatus(self.status)
        if current == DiscountStatus.INACTIVE:
            return current
        still_valid = not self.is_past_expiry(now) and not self.is_usage_exhausted()
        self.status = DiscountStatus.ACTIVE if still_valid else DiscountStatus.EXPIRED
        return DiscountStatus(self.status)


class Referral(Base):
    __tablename__ = 'Referral'
    referralID = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(64), unique=True, nullable=False)
    userID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    reward_rate = Column(Integer, nullable=False, default=50)
    uses = Column(Integer, nullable=False, default=0)
    total_earned = Column(Integer, nullable=False, default=0)
    pending_payout = Column(Integer, nullable=False, default=0)
    is_discount_linked = Column(Boolean, nullable=False, default=False)
    status = Column(
        SAEnum(ReferralStatus, name="referral_status", native_enum=False, validate_strings=True),
        nullable=False,
        default=ReferralStatus.ACTIVE,
    )
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="referrals")
    transactions = relationship(
        "ReferralTransaction",
        back_populates="referral",
        cascade="all, delete-orphan",
        order_by="ReferralTransaction.transactionID",
    )

    @property
    def is_active(self) -> bool:
        return ReferralStatus(self.status) == ReferralStatus.ACTIVE


class ReferralTransaction(Base):
    __tablename__ = 'ReferralTransaction'
    __table_args__ = (UniqueConstraint('referralID', 'orderID', name='uq_referral_order'),)

    transactionID = Column(Integer, primary_key=True, autoincrement=True)
    referralID = Column(Integer, ForeignKey('Referral.referralID'), nullable=False)
    orderID = Column(Integer, ForeignKey('Order.orderID'), nullable=False)
    earned_amount = Column(Integer, nullable=False)
    payout_status = Column(
        SAEnum(PayoutStatus, name="payout_status", native_enum=False, validate_strings=True),
        nullable=False,
        default=PayoutStatus.PENDING,
    )
    created_at = Column(DateTime, default=utcnow)
    paid_at = Column(DateTime)

    referral = relationship("Referral", back_populates="transactions")
    order = relationship("Order")


class Order(Base):
    __tablename__ = 'Order'
    orderID = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String(40), unique=True, nullable=False)
    userID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    status = Column(
        SAEnum(OrderStatus, name="order_status", native_enum=False, validate_strings=True),
        nullable=False,
        default=OrderStatus.PENDING_PAYMENT,
    )

    # Price breakdown, captured once at checkout. discount_amount is stored positive.
    subtotal = Column(Integer, nullable=False)
    shipping_fee = Column(Integer, nullable=False, default=0)
    discount_code = Column(String(64))
    referral_code = Column(String(64))
    discount_amount = Column(Integer, nullable=False, default=0)
    tax_amount = Column(Integer, nullable=False, default=0)
    total = Column(Integer, nullable=False)

    payment_txn_id = Column(String(120))
    payment_method = Column(String(120))
    payment_status = Column(
        SAEnum(PaymentStatus, name="payment_status", native_enum=False, validate_strings=True),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    payment_initiated_at = Column(DateTime, default=utcnow)
    # Last sweep status check that left the order pending
    payment_checked_at = Column(DateTime)
    payment_updated_at = Column(DateTime)
    refund_txn_id = Column(String(120))

    shipping_address = Column(Text, nullable=False)
    shipping_partner = Column(String(120), nullable=False, default='Pending Assign')
    tracking_id = Column(String(120), index=True)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="orders")
    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.orderItemID",
    )
    transit_history = relationship(
        "TransitEntry",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="TransitEntry.entryID",
    )

    @property
    def is_pending_payment(self) -> bool:
        return OrderStatus(self.status) == OrderStatus.PENDING_PAYMENT

    @property
    def has_physical_items(self) -> bool:
        return any(item.is_physical for item in self.items)


class OrderItem(Base):
    __tablename__ = 'OrderItem'
    orderItemID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('Order.orderID', ondelete="CASCADE"), nullable=False)
    bookID = Column(Integer, ForeignKey('Book.bookID'), nullable=False)
    name = Column(String(255), nullable=False)
    kind = Column(
        SAEnum(ItemKind, name="order_item_kind", native_enum=False, validate_strings=True),
        nullable=False,
    )
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")
    book = relationship("Book")

    @property
    def is_physical(self) -> bool:
        return ItemKind(self.kind) == ItemKind.PHYSICAL

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


class TransitEntry(Base):
    __tablename__ = 'TransitEntry'
    entryID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('Order.orderID', ondelete="CASCADE"), nullable=False)
    stage = Column(String(255), nullable=False)
    occurred_at = Column(DateTime, default=utcnow)
    completed = Column(Boolean, nullable=False, default=False)

    order = relationship("Order", back_populates="transit_history")


class SystemConfig(Base):
    """Singleton row holding settings an admin can change without a redeploy."""

    __tablename__ = 'SystemConfig'
    SINGLETON_ID = 'SYSTEM_CONFIG'

    configID = Column(Integer, primary_key=True, autoincrement=True)
    singleton_id = Column(String(40), unique=True, nullable=False, default=SINGLETON_ID)

    store_name = Column(String(255))
    support_email = Column(String(255))
    support_phone = Column(String(40))

    payment_provider = Column(String(60), default='PhonePe')
    merchant_id = Column(String(120))
    salt_key = Column(String(255))
    salt_index = Column(Integer)
    is_live_mode = Column(Boolean)

    delivery_provider = Column(String(60), default='Delhivery')
    delivery_api_token = Column(String(255))

    tax_rate = Column(Numeric(5, 4))
    shipping_fee = Column(Integer)

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
