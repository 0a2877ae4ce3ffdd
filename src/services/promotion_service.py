from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.errors import NotFound, PromotionInvalid, ValidationError
from src.models import (
    Discount,
    DiscountKind,
    DiscountStatus,
    Order,
    PayoutStatus,
    Referral,
    ReferralStatus,
    ReferralTransaction,
    User,
    utcnow,
)
from src.observability import increment_counter, record_event


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def _parse_kind(value: Any) -> DiscountKind:
    key = str(value or "").strip().upper().replace(" ", "").replace("_", "")
    if key == "PERCENTAGE":
        return DiscountKind.PERCENTAGE
    if key in {"FLATAMOUNT", "FLAT"}:
        return DiscountKind.FLAT_AMOUNT
    raise ValidationError(f"Unknown discount type: {value}", field="type")


def _parse_optional_int(data: Dict[str, Any], key: str, minimum: int = 0) -> Optional[int]:
    value = data.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ValidationError(f"{key} must be an integer >= {minimum}", field=key)
    return value


def _parse_datetime(data: Dict[str, Any], key: str) -> Optional[datetime]:
    value = data.get(key)
    if value in (None, ""):
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"{key} must be an ISO-8601 timestamp", field=key)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class PromotionPreview:
    code: str
    discount_amount: int
    is_referral: bool = False

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"code": self.code, "discountAmount": self.discount_amount}
        if self.is_referral:
            body["isReferral"] = True
        return body


class PromotionLedger:
    """
    Discount and referral codes.

    Counters are only ever changed through conditional UPDATE statements so
    concurrent checkouts and settlements cannot over-redeem a code or credit
    a referral twice.
    """

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def find_discount(self, code: Optional[str]) -> Optional[Discount]:
        normalized = normalize_code(code)
        if not normalized:
            return None
        return self.db.query(Discount).filter(Discount.code == normalized).first()

    def find_referral(self, code: Optional[str]) -> Optional[Referral]:
        normalized = normalize_code(code)
        if not normalized:
            return None
        return self.db.query(Referral).filter(Referral.code == normalized).first()

    def preview(self, code: Optional[str], subtotal: Any) -> PromotionPreview:
        """Report what a code would take off ``subtotal`` without consuming it."""
        if code is not None and not isinstance(code, str):
            raise ValidationError("Code must be a string", field="code")
        normalized = normalize_code(code)
        if not normalized:
            raise ValidationError("Code is required", field="code")
        if isinstance(subtotal, bool) or not isinstance(subtotal, int) or subtotal < 0:
            raise ValidationError("Subtotal must be a non-negative integer", field="subtotal")

        discount = self.find_discount(normalized)
        if discount is not None and DiscountStatus(discount.status) == DiscountStatus.ACTIVE:
            usable, reason = discount.check_usable()
            if not usable:
                discount.status = DiscountStatus.EXPIRED
                self.db.commit()
                self.logger.info("Discount %s marked expired during preview", normalized)
                raise PromotionInvalid(normalized, reason)
            return PromotionPreview(code=normalized, discount_amount=discount.compute_amount(subtotal))

        referral = self.find_referral(normalized)
        if referral is not None and referral.is_active and referral.is_discount_linked:
            return PromotionPreview(
                code=normalized,
                discount_amount=min(referral.reward_rate, subtotal),
                is_referral=True,
            )

        raise NotFound("Invalid or inactive promo code", {"promoCode": normalized})

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    def consume_discount(self, code: str) -> None:
        """
        Atomically count one redemption of ``code``.

        Raises PromotionInvalid when the code stopped being redeemable between
        quoting and this call (another checkout took the last use). Flips the
        code to Expired once its limit is reached. Does not commit.
        """
        normalized = normalize_code(code)
        now = utcnow()
        updated = (
            self.db.query(Discount)
            .filter(
                Discount.code == normalized,
                Discount.status == DiscountStatus.ACTIVE,
                or_(Discount.max_usage.is_(None), Discount.current_usage < Discount.max_usage),
                or_(Discount.valid_till.is_(None), Discount.valid_till > now),
            )
            .update(
                {Discount.current_usage: Discount.current_usage + 1},
                synchronize_session=False,
            )
        )
        if updated != 1:
            increment_counter("discount_redemptions_rejected_total")
            raise PromotionInvalid(normalized, "This code usage limit has been reached")

        self.db.query(Discount).filter(
            Discount.code == normalized,
            Discount.status == DiscountStatus.ACTIVE,
            Discount.max_usage.isnot(None),
            Discount.current_usage >= Discount.max_usage,
        ).update({Discount.status: DiscountStatus.EXPIRED}, synchronize_session=False)

        increment_counter("discount_redemptions_total")

    def credit_referral(self, code: str, order: Order) -> Optional[ReferralTransaction]:
        """
        Credit the referrer for a settled order. At most once per order.

        Returns the new transaction, or None when the code is unknown or the
        order was already credited. Does not commit.
        """
        referral = self.find_referral(code)
        if referral is None:
            self.logger.warning(
                "Referral code on order no longer exists",
                extra={"referral_code": code, "order_number": order.order_number},
            )
            return None

        already = (
            self.db.query(ReferralTransaction.transactionID)
            .filter_by(referralID=referral.referralID, orderID=order.orderID)
            .first()
        )
        if already is not None:
            self.logger.info(
                "Referral already credited for order",
                extra={"referral_code": referral.code, "order_number": order.order_number},
            )
            return None

        rate = referral.reward_rate
        self.db.query(Referral).filter(Referral.referralID == referral.referralID).update(
            {
                Referral.uses: Referral.uses + 1,
                Referral.total_earned: Referral.total_earned + rate,
                Referral.pending_payout: Referral.pending_payout + rate,
            },
            synchronize_session=False,
        )
        transaction = ReferralTransaction(
            referralID=referral.referralID,
            orderID=order.orderID,
            earned_amount=rate,
            payout_status=PayoutStatus.PENDING,
        )
        self.db.add(transaction)
        self.db.flush()

        record_event(
            "referral_credited",
            {"referral_code": referral.code, "order_number": order.order_number, "amount": rate},
        )
        increment_counter("referral_credits_total")
        return transaction

    def mark_paid(self, transaction_id: int) -> Tuple[bool, str, Optional[ReferralTransaction]]:
        transaction = self.db.query(ReferralTransaction).filter_by(transactionID=transaction_id).first()
        if transaction is None:
            return False, "Transaction not found", None
        if PayoutStatus(transaction.payout_status) == PayoutStatus.PAID:
            return False, "Transaction is already paid", transaction

        updated = (
            self.db.query(ReferralTransaction)
            .filter(
                ReferralTransaction.transactionID == transaction_id,
                ReferralTransaction.payout_status == PayoutStatus.PENDING,
            )
            .update(
                {
                    ReferralTransaction.payout_status: PayoutStatus.PAID,
                    ReferralTransaction.paid_at: utcnow(),
                },
                synchronize_session=False,
            )
        )
        if updated != 1:
            self.db.rollback()
            return False, "Transaction is already paid", transaction

        referral = transaction.referral
        referral.pending_payout = max(0, (referral.pending_payout or 0) - transaction.earned_amount)
        self.db.commit()
        self.db.refresh(transaction)
        self.logger.info(
            "Referral payout marked paid",
            extra={"transaction_id": transaction_id, "referral_code": referral.code},
        )
        return True, "Transaction marked as paid", transaction

    # ------------------------------------------------------------------
    # Admin: discounts
    # ------------------------------------------------------------------

    def list_discounts(self, search: str = "") -> List[Discount]:
        query = self.db.query(Discount)
        if search:
            query = query.filter(Discount.code.ilike(f"%{search.strip()}%"))
        return query.order_by(Discount.created_at.desc(), Discount.discountID.desc()).all()

    def create_discount(self, data: Dict[str, Any]) -> Tuple[bool, str, Optional[Discount]]:
        code = normalize_code(data.get("code"))
        if not code:
            return False, "Code is required", None
        try:
            discount = Discount(code=code, current_usage=0, status=DiscountStatus.ACTIVE)
            self._apply_discount_fields(discount, data, creating=True)
        except ValidationError as exc:
            return False, exc.message, None

        discount.refresh_status()
        try:
            self.db.add(discount)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return False, "This discount code already exists.", None
        self.logger.info("Discount %s created", code)
        return True, "Discount created", discount

    def update_discount(self, discount_id: int, data: Dict[str, Any]) -> Tuple[bool, str, Optional[Discount]]:
        """Apply admin edits and re-derive Active/Expired unless the admin chose Inactive."""
        discount = self.db.query(Discount).filter_by(discountID=discount_id).first()
        if discount is None:
            return False, "Discount not found", None
        try:
            self._apply_discount_fields(discount, data, creating=False)
        except ValidationError as exc:
            self.db.rollback()
            return False, exc.message, None

        discount.refresh_status()
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return False, "This discount code already exists.", None
        return True, "Discount updated", discount

    def _apply_discount_fields(self, discount: Discount, data: Dict[str, Any], creating: bool) -> None:
        if "code" in data and not creating:
            code = normalize_code(data.get("code"))
            if not code:
                raise ValidationError("Code is required", field="code")
            discount.code = code
        if creating or "type" in data:
            discount.kind = _parse_kind(data.get("type"))
        if creating or "value" in data:
            value = _parse_optional_int(data, "value")
            if value is None:
                raise ValidationError("value is required", field="value")
            discount.value = value
        if DiscountKind(discount.kind) == DiscountKind.PERCENTAGE and discount.value > 100:
            raise ValidationError("Percentage value cannot exceed 100", field="value")
        if "maxDiscount" in data:
            discount.max_discount = _parse_optional_int(data, "maxDiscount")
        if "maxUsage" in data:
            discount.max_usage = _parse_optional_int(data, "maxUsage", minimum=1)
        if "validTill" in data:
            discount.valid_till = _parse_datetime(data, "validTill")
        if "status" in data and data.get("status"):
            try:
                discount.status = DiscountStatus(str(data["status"]).strip().upper())
            except ValueError:
                raise ValidationError(f"Unknown status: {data['status']}", field="status")

    # ------------------------------------------------------------------
    # Admin: referrals
    # ------------------------------------------------------------------

    def list_referrals(self, search: str = "") -> List[Referral]:
        query = self.db.query(Referral)
        if search:
            query = query.filter(Referral.code.ilike(f"%{search.strip()}%"))
        return query.order_by(Referral.created_at.desc(), Referral.referralID.desc()).all()

    def create_referral(self, data: Dict[str, Any]) -> Tuple[bool, str, Optional[Referral]]:
        code = normalize_code(data.get("code"))
        if not code:
            return False, "Code is required", None
        user_id = data.get("userId")
        if self.db.query(User.userID).filter_by(userID=user_id).first() is None:
            return False, "Referral owner not found", None
        try:
            rate = _parse_optional_int(data, "rate")
            status = self._parse_referral_status(data.get("status"))
        except ValidationError as exc:
            return False, exc.message, None

        referral = Referral(
            code=code,
            userID=user_id,
            reward_rate=50 if rate is None else rate,
            is_discount_linked=bool(data.get("isDiscountLinked", False)),
            status=status or ReferralStatus.ACTIVE,
            uses=0,
            total_earned=0,
            pending_payout=0,
        )
        try:
            self.db.add(referral)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return False, "This referral code already exists.", None
        self.logger.info("Referral %s created for user %s", code, user_id)
        return True, "Referral created", referral

    def update_referral(self, referral_id: int, data: Dict[str, Any]) -> Tuple[bool, str, Optional[Referral]]:
        referral = self.db.query(Referral).filter_by(referralID=referral_id).first()
        if referral is None:
            return False, "Referral not found", None
        try:
            if "code" in data:
                code = normalize_code(data.get("code"))
                if not code:
                    raise ValidationError("Code is required", field="code")
                referral.code = code
            if "rate" in data:
                rate = _parse_optional_int(data, "rate")
                if rate is not None:
                    referral.reward_rate = rate
            if "isDiscountLinked" in data:
                referral.is_discount_linked = bool(data["isDiscountLinked"])
            status = self._parse_referral_status(data.get("status"))
            if status is not None:
                referral.status = status
        except ValidationError as exc:
            self.db.rollback()
            return False, exc.message, None

        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return False, "This referral code already exists.", None
        return True, "Referral updated", referral

    def referral_transactions(self, referral_id: int) -> Optional[List[ReferralTransaction]]:
        referral = self.db.query(Referral).filter_by(referralID=referral_id).first()
        if referral is None:
            return None
        return sorted(referral.transactions, key=lambda txn: txn.transactionID, reverse=True)

    @staticmethod
    def _parse_referral_status(value: Any) -> Optional[ReferralStatus]:
        if value in (None, ""):
            return None
        try:
            return ReferralStatus(str(value).strip().upper())
        except ValueError:
            raise ValidationError(f"Unknown status: {value}", field="status")
