from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from sqlalchemy.orm import Session

from src.errors import InsufficientStock, PromotionInvalid, ValidationError
from src.models import ItemKind


def round_half_up(value: Any) -> int:
    """Round to the nearest integer with .5 going up (12.5 -> 13)."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class CartLine:
    book_id: int
    quantity: int


@dataclass(frozen=True)
class QuotedLine:
    book_id: int
    title: str
    kind: ItemKind
    quantity: int
    unit_price: int

    @property
    def is_physical(self) -> bool:
        return self.kind == ItemKind.PHYSICAL

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class DiscountApplied:
    code: str
    amount: int


@dataclass(frozen=True)
class ReferralApplied:
    code: str
    amount: int


AppliedPromotion = Union[None, DiscountApplied, ReferralApplied]


@dataclass(frozen=True)
class PriceQuote:
    lines: Tuple[QuotedLine, ...]
    subtotal: int
    discount_amount: int
    tax_amount: int
    shipping_fee: int
    total: int
    promotion: AppliedPromotion = None

    @property
    def discount_code(self) -> Optional[str]:
        return self.promotion.code if isinstance(self.promotion, DiscountApplied) else None

    @property
    def referral_code(self) -> Optional[str]:
        return self.promotion.code if isinstance(self.promotion, ReferralApplied) else None

    @property
    def has_physical_items(self) -> bool:
        return any(line.is_physical for line in self.lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subtotal": self.subtotal,
            "shipping": self.shipping_fee,
            "discountCode": self.discount_code,
            "discountAmount": self.discount_amount,
            "referralApplied": self.referral_code,
            "taxAmount": self.tax_amount,
            "total": self.total,
        }


def parse_cart_lines(raw_items: Any) -> List[CartLine]:
    """Validate the ``orderItems`` request field and merge repeated books."""
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("Order must contain at least one item", field="orderItems")

    merged: Dict[int, int] = {}
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"Item #{index + 1} is malformed", field="orderItems")
        book_id = raw.get("bookId", raw.get("itemId"))
        quantity = raw.get("quantity", raw.get("qty"))
        if isinstance(book_id, bool) or not isinstance(book_id, int):
            raise ValidationError(f"Item #{index + 1} has an invalid book id", field="orderItems")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError(
                f"Item #{index + 1} quantity must be a positive integer", field="orderItems"
            )
        merged[book_id] = merged.get(book_id, 0) + quantity

    return [CartLine(book_id=book_id, quantity=qty) for book_id, qty in merged.items()]


class PricingEngine:
    """
    Computes the server-side price breakdown for a cart.

    Prices always come from the catalog at quote time. Quoting has no side
    effects: discount usage is consumed separately by the checkout once the
    order is about to be written.
    """

    def __init__(self, db_session: Session, catalog=None, promotions=None) -> None:
        # Imported here to avoid a cycle with promotion_service -> pricing_service
        from src.services.catalog_service import CatalogService
        from src.services.promotion_service import PromotionLedger

        self.db = db_session
        self.catalog = catalog or CatalogService(db_session)
        self.promotions = promotions or PromotionLedger(db_session)
        self.logger = logging.getLogger(__name__)

    def quote(
        self,
        lines: Iterable[CartLine],
        settings,
        discount_code: Optional[str] = None,
        referral_code: Optional[str] = None,
        shipping_address: Optional[str] = None,
    ) -> PriceQuote:
        quoted = self._quote_lines(lines)
        subtotal = sum(line.line_total for line in quoted)
        has_physical = any(line.is_physical for line in quoted)

        if has_physical and not (shipping_address or "").strip():
            raise ValidationError("Shipping address is required for physical items", field="shippingAddress")

        promotion = self._apply_promotion(subtotal, discount_code, referral_code)
        discount_amount = promotion.amount if promotion else 0

        taxable = max(0, subtotal - discount_amount)
        tax_amount = round_half_up(Decimal(taxable) * settings.tax_rate)
        shipping_fee = settings.shipping_fee if has_physical else 0
        total = taxable + tax_amount + shipping_fee

        return PriceQuote(
            lines=tuple(quoted),
            subtotal=subtotal,
            discount_amount=discount_amount,
            tax_amount=tax_amount,
            shipping_fee=shipping_fee,
            total=total,
            promotion=promotion,
        )

    def _quote_lines(self, lines: Iterable[CartLine]) -> List[QuotedLine]:
        quoted: List[QuotedLine] = []
        for line in lines:
            if line.quantity <= 0:
                raise ValidationError(
                    f"Quantity for book {line.book_id} must be a positive integer", field="orderItems"
                )
            book = self.catalog.get_book(line.book_id)
            if not book.can_supply(line.quantity):
                raise InsufficientStock(book.bookID, book.title, line.quantity, book.available_stock or 0)
            quoted.append(
                QuotedLine(
                    book_id=book.bookID,
                    title=book.title,
                    kind=ItemKind(book.kind),
                    quantity=line.quantity,
                    unit_price=book.price,
                )
            )
        return quoted

    def _apply_promotion(
        self,
        subtotal: int,
        discount_code: Optional[str],
        referral_code: Optional[str],
    ) -> AppliedPromotion:
        if discount_code and discount_code.strip():
            discount = self.promotions.find_discount(discount_code)
            if discount is None:
                raise PromotionInvalid(discount_code.strip().upper(), "Invalid discount code")
            usable, reason = discount.check_usable()
            if not usable:
                raise PromotionInvalid(discount.code, reason)
            return DiscountApplied(code=discount.code, amount=discount.compute_amount(subtotal))

        if referral_code and referral_code.strip():
            referral = self.promotions.find_referral(referral_code)
            if referral is None or not referral.is_active:
                raise PromotionInvalid(referral_code.strip().upper(), "Invalid referral code")
            amount = min(referral.reward_rate, subtotal) if referral.is_discount_linked else 0
            return ReferralApplied(code=referral.code, amount=amount)

        return None
