from decimal import Decimal

import pytest

from src.errors import InsufficientStock, ItemNotFound, PromotionInvalid, ValidationError
from src.models import DiscountKind, DiscountStatus, ItemKind
from src.services.pricing_service import CartLine, PricingEngine, parse_cart_lines, round_half_up


def test_round_half_up_rounds_point_five_away_from_zero():
    assert round_half_up(Decimal("12.5")) == 13
    assert round_half_up(Decimal("12.49")) == 12
    assert round_half_up(2.5) == 3


def test_parse_cart_lines_merges_duplicates_and_accepts_aliases():
    lines = parse_cart_lines([{"bookId": 1, "quantity": 2}, {"itemId": 1, "qty": 1}, {"bookId": 2, "quantity": 1}])
    assert {(line.book_id, line.quantity) for line in lines} == {(1, 3), (2, 1)}


@pytest.mark.parametrize(
    "raw",
    [None, [], [{"bookId": 1, "quantity": 0}], [{"bookId": "x", "quantity": 1}], ["bad"]],
)
def test_parse_cart_lines_rejects_malformed_input(raw):
    with pytest.raises(ValidationError):
        parse_cart_lines(raw)


def test_flat_discount_on_physical_order(db_session, runtime_settings, make_book, make_discount):
    book = make_book(price=300, stock=5)
    make_discount(code="SAVE50", kind=DiscountKind.FLAT_AMOUNT, value=50)

    quote = PricingEngine(db_session).quote(
        [CartLine(book.bookID, 1)], runtime_settings, discount_code="save50", shipping_address="12 MG Road"
    )

    assert quote.subtotal == 300
    assert quote.discount_amount == 50
    assert quote.tax_amount == 13  # 5% of 250 = 12.5
    assert quote.shipping_fee == 50
    assert quote.total == 313
    assert quote.discount_code == "SAVE50"
    assert quote.referral_code is None


def test_digital_only_cart_has_no_shipping_and_needs_no_address(db_session, runtime_settings, make_book):
    ebook = make_book(title="E-Book", kind=ItemKind.DIGITAL, price=200)

    quote = PricingEngine(db_session).quote([CartLine(ebook.bookID, 2)], runtime_settings)

    assert quote.shipping_fee == 0
    assert quote.tax_amount == 20
    assert quote.total == 420
    assert not quote.has_physical_items


def test_physical_item_requires_shipping_address(db_session, runtime_settings, make_book):
    book = make_book()
    with pytest.raises(ValidationError) as exc:
        PricingEngine(db_session).quote([CartLine(book.bookID, 1)], runtime_settings, shipping_address="   ")
    assert exc.value.field == "shippingAddress"


def test_unknown_book_is_rejected(db_session, runtime_settings):
    with pytest.raises(ItemNotFound):
        PricingEngine(db_session).quote([CartLine(999, 1)], runtime_settings, shipping_address="x")


def test_quantity_above_available_stock_is_rejected(db_session, runtime_settings, make_book):
    book = make_book(stock=3)
    book.reserved = 2
    db_session.commit()

    with pytest.raises(InsufficientStock) as exc:
        PricingEngine(db_session).quote([CartLine(book.bookID, 2)], runtime_settings, shipping_address="x")
    assert exc.value.available == 1


def test_percentage_discount_is_capped(db_session, runtime_settings, make_book, make_discount):
    book = make_book(price=1000)
    make_discount(code="TENPC", kind=DiscountKind.PERCENTAGE, value=10, max_discount=40)

    quote = PricingEngine(db_session).quote(
        [CartLine(book.bookID, 1)], runtime_settings, discount_code="TENPC", shipping_address="x"
    )
    assert quote.discount_amount == 40


def test_discount_never_exceeds_subtotal(db_session, runtime_settings, make_book, make_discount):
    book = make_book(kind=ItemKind.DIGITAL, price=30)
    make_discount(code="BIG", value=100)

    quote = PricingEngine(db_session).quote([CartLine(book.bookID, 1)], runtime_settings, discount_code="BIG")
    assert quote.discount_amount == 30
    assert quote.total == 0


def test_expired_or_exhausted_discount_is_rejected(db_session, runtime_settings, make_book, make_discount):
    book = make_book()
    make_discount(code="OLD", valid_days=-1)
    make_discount(code="USEDUP", max_usage=2, current_usage=2)
    make_discount(code="OFF", status=DiscountStatus.INACTIVE)
    engine = PricingEngine(db_session)

    for code in ("OLD", "USEDUP", "OFF", "MISSING"):
        with pytest.raises(PromotionInvalid):
            engine.quote([CartLine(book.bookID, 1)], runtime_settings, discount_code=code, shipping_address="x")


def test_discount_wins_over_referral(db_session, runtime_settings, make_user, make_book, make_discount, make_referral):
    owner = make_user(name="Referrer")
    book = make_book(price=300)
    make_discount(code="SAVE50", value=50)
    make_referral(owner, code="FRIEND", linked=True)

    quote = PricingEngine(db_session).quote(
        [CartLine(book.bookID, 1)],
        runtime_settings,
        discount_code="SAVE50",
        referral_code="FRIEND",
        shipping_address="x",
    )
    assert quote.discount_code == "SAVE50"
    assert quote.referral_code is None


def test_referral_only_records_code_without_discount_unless_linked(
    db_session, runtime_settings, make_user, make_book, make_referral
):
    owner = make_user(name="Referrer")
    book = make_book(price=300)
    make_referral(owner, code="PLAIN", linked=False)
    make_referral(owner, code="LINKED", rate=40, linked=True)
    engine = PricingEngine(db_session)

    plain = engine.quote([CartLine(book.bookID, 1)], runtime_settings, referral_code="plain", shipping_address="x")
    linked = engine.quote([CartLine(book.bookID, 1)], runtime_settings, referral_code="LINKED", shipping_address="x")

    assert plain.referral_code == "PLAIN"
    assert plain.discount_amount == 0
    assert linked.discount_amount == 40
    assert linked.total == 260 + 13 + 50


def test_unknown_referral_is_rejected(db_session, runtime_settings, make_book):
    book = make_book()
    with pytest.raises(PromotionInvalid):
        PricingEngine(db_session).quote(
            [CartLine(book.bookID, 1)], runtime_settings, referral_code="NOBODY", shipping_address="x"
        )


def test_quote_prices_from_catalog_and_has_no_side_effects(db_session, runtime_settings, make_book, make_discount):
    book = make_book(price=300, stock=5)
    discount = make_discount(code="SAVE50", max_usage=10)

    PricingEngine(db_session).quote(
        [CartLine(book.bookID, 2)], runtime_settings, discount_code="SAVE50", shipping_address="x"
    )
    db_session.refresh(book)
    db_session.refresh(discount)

    assert book.reserved == 0
    assert discount.current_usage == 0
