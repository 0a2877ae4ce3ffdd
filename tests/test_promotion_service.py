from datetime import timedelta

import pytest

from src.errors import NotFound, PromotionInvalid, ValidationError
from src.models import (
    Discount,
    DiscountKind,
    DiscountStatus,
    Order,
    OrderStatus,
    PayoutStatus,
    Referral,
    ReferralTransaction,
    utcnow,
)
from src.services.promotion_service import PromotionLedger


def _paid_order(db_session, user, number="BK-1"):
    order = Order(
        order_number=number,
        userID=user.userID,
        status=OrderStatus.IN_PROGRESS,
        subtotal=300,
        total=300,
        shipping_address="x",
    )
    db_session.add(order)
    db_session.commit()
    return order


def test_consume_discount_counts_usage_and_expires_at_limit(db_session, make_discount):
    discount = make_discount(code="ONCE", max_usage=1)
    ledger = PromotionLedger(db_session)

    ledger.consume_discount("once")
    db_session.commit()
    db_session.refresh(discount)

    assert discount.current_usage == 1
    assert discount.status == DiscountStatus.EXPIRED

    with pytest.raises(PromotionInvalid):
        ledger.consume_discount("ONCE")


def test_last_use_cannot_be_taken_by_two_sessions(db_session, other_session, make_discount):
    discount = make_discount(code="LAST", max_usage=5, current_usage=4)

    # Both sessions saw the code as redeemable before either wrote
    first = PromotionLedger(db_session)
    second = PromotionLedger(other_session)
    assert first.find_discount("LAST").check_usable()[0]
    assert second.find_discount("LAST").check_usable()[0]

    first.consume_discount("LAST")
    db_session.commit()

    with pytest.raises(PromotionInvalid):
        second.consume_discount("LAST")
    other_session.rollback()

    db_session.refresh(discount)
    assert discount.current_usage == 5


def test_preview_reports_amount_without_consuming(db_session, make_discount):
    discount = make_discount(code="PCT", kind=DiscountKind.PERCENTAGE, value=10, max_discount=100)

    preview = PromotionLedger(db_session).preview("pct", 450)

    assert preview.to_dict() == {"code": "PCT", "discountAmount": 45}
    db_session.refresh(discount)
    assert discount.current_usage == 0


def test_preview_marks_expired_discount(db_session, make_discount):
    discount = make_discount(code="STALE", valid_days=-2)

    with pytest.raises(PromotionInvalid):
        PromotionLedger(db_session).preview("STALE", 100)

    db_session.refresh(discount)
    assert discount.status == DiscountStatus.EXPIRED


def test_preview_of_linked_referral(db_session, make_user, make_referral):
    make_referral(make_user(), code="PAL", rate=30, linked=True)

    preview = PromotionLedger(db_session).preview("PAL", 20)

    assert preview.to_dict() == {"code": "PAL", "discountAmount": 20, "isReferral": True}


def test_preview_rejects_unknown_code_and_bad_subtotal(db_session):
    ledger = PromotionLedger(db_session)
    with pytest.raises(NotFound):
        ledger.preview("NOPE", 100)
    with pytest.raises(ValidationError):
        ledger.preview("", 100)
    with pytest.raises(ValidationError):
        ledger.preview("NOPE", -1)


def test_credit_referral_once_per_order(db_session, make_user, make_referral):
    owner = make_user(name="Referrer")
    buyer = make_user(name="Buyer")
    referral = make_referral(owner, code="FRIEND", rate=50)
    order = _paid_order(db_session, buyer)
    ledger = PromotionLedger(db_session)

    assert ledger.credit_referral("FRIEND", order) is not None
    assert ledger.credit_referral("friend", order) is None
    db_session.commit()
    db_session.refresh(referral)

    assert referral.uses == 1
    assert referral.total_earned == 50
    assert referral.pending_payout == 50
    assert db_session.query(ReferralTransaction).count() == 1


def test_mark_paid_clamps_pending_payout(db_session, make_user, make_referral):
    owner = make_user(name="Referrer")
    buyer = make_user(name="Buyer")
    referral = make_referral(owner, code="FRIEND", rate=50)
    ledger = PromotionLedger(db_session)
    txn = ledger.credit_referral("FRIEND", _paid_order(db_session, buyer))
    db_session.commit()

    # Simulate an out-of-band correction that left less pending than the transaction
    db_session.query(Referral).filter_by(referralID=referral.referralID).update({Referral.pending_payout: 20})
    db_session.commit()
    db_session.refresh(referral)

    success, _, paid = ledger.mark_paid(txn.transactionID)
    assert success
    assert paid.payout_status == PayoutStatus.PAID
    assert paid.paid_at is not None
    db_session.refresh(referral)
    assert referral.pending_payout == 0

    success, message, _ = ledger.mark_paid(txn.transactionID)
    assert not success
    assert "already paid" in message


def test_update_discount_rederives_status(db_session, make_discount):
    discount = make_discount(code="BACK", valid_days=-1, status=DiscountStatus.EXPIRED)
    ledger = PromotionLedger(db_session)
    new_expiry = (utcnow() + timedelta(days=7)).isoformat()

    success, _, updated = ledger.update_discount(discount.discountID, {"validTill": new_expiry})

    assert success
    assert updated.status == DiscountStatus.ACTIVE

    success, _, updated = ledger.update_discount(discount.discountID, {"status": "INACTIVE", "maxUsage": 100})
    assert success
    assert updated.status == DiscountStatus.INACTIVE


def test_create_discount_validates_and_rejects_duplicates(db_session):
    ledger = PromotionLedger(db_session)

    ok, _, discount = ledger.create_discount({"code": "new10", "type": "Percentage", "value": 10})
    assert ok
    assert discount.code == "NEW10"
    assert discount.kind == DiscountKind.PERCENTAGE

    ok, message, _ = ledger.create_discount({"code": "NEW10", "type": "FLAT_AMOUNT", "value": 5})
    assert not ok
    assert "already exists" in message

    ok, message, _ = ledger.create_discount({"code": "BAD", "type": "Percentage", "value": 150})
    assert not ok
    assert db_session.query(Discount).count() == 1


def test_create_referral_requires_existing_owner(db_session, make_user):
    ledger = PromotionLedger(db_session)

    ok, message, _ = ledger.create_referral({"code": "GHOST", "userId": 4242})
    assert not ok
    assert "not found" in message

    owner = make_user()
    ok, _, referral = ledger.create_referral({"code": "real", "userId": owner.userID, "rate": 75})
    assert ok
    assert referral.code == "REAL"
    assert referral.reward_rate == 75
