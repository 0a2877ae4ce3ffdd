import pytest

from src.errors import InsufficientStock
from src.models import Book, ItemKind, Order, OrderItem, OrderStatus, StockChangeKind, StockHistory
from src.observability import get_counter_value
from src.services.inventory_service import InventoryService
from src.services.pricing_service import QuotedLine


def _line(book, quantity):
    return QuotedLine(
        book_id=book.bookID,
        title=book.title,
        kind=ItemKind(book.kind),
        quantity=quantity,
        unit_price=book.price,
    )


def _order_for(db_session, user, book, quantity, number="BK-INV-1"):
    order = Order(
        order_number=number,
        userID=user.userID,
        status=OrderStatus.PENDING_PAYMENT,
        subtotal=book.price * quantity,
        total=book.price * quantity,
        shipping_address="x",
    )
    order.items.append(
        OrderItem(bookID=book.bookID, name=book.title, kind=book.kind, quantity=quantity, unit_price=book.price)
    )
    db_session.add(order)
    db_session.commit()
    return order


def test_reserve_holds_units_and_rejects_overbooking(db_session, make_book):
    book = make_book(stock=3)
    inventory = InventoryService(db_session)

    inventory.reserve([_line(book, 2)])
    db_session.commit()
    db_session.refresh(book)
    assert book.reserved == 2
    assert book.available_stock == 1

    with pytest.raises(InsufficientStock) as exc:
        inventory.reserve([_line(book, 2)])
    assert exc.value.available == 1


def test_reserve_ignores_digital_lines(db_session, make_book):
    ebook = make_book(kind=ItemKind.DIGITAL, price=100)
    InventoryService(db_session).reserve([_line(ebook, 50)])
    db_session.commit()
    db_session.refresh(ebook)
    assert ebook.stock is None
    assert ebook.reserved == 0


def test_deduct_runs_once_per_order(db_session, make_user, make_book):
    book = make_book(stock=5)
    inventory = InventoryService(db_session)
    inventory.reserve([_line(book, 2)])
    db_session.commit()
    order = _order_for(db_session, make_user(), book, 2)

    assert inventory.deduct(order) == 1
    db_session.commit()
    assert inventory.deduct(order) == 0
    db_session.commit()

    db_session.refresh(book)
    assert book.stock == 3
    assert book.reserved == 0
    entries = db_session.query(StockHistory).filter_by(kind=StockChangeKind.DEDUCTION).all()
    assert len(entries) == 1
    assert entries[0].change == -2
    assert entries[0].balance == 3
    assert entries[0].reason == "Order #BK-INV-1"


def test_deduct_skips_line_that_would_go_negative(db_session, make_user, make_book):
    book = make_book(stock=1)
    order = _order_for(db_session, make_user(), book, 3)

    assert InventoryService(db_session).deduct(order) == 0
    db_session.commit()

    db_session.refresh(book)
    assert book.stock == 1
    assert get_counter_value("inventory_discrepancies_total") == 1


def test_release_returns_reserved_units(db_session, make_user, make_book):
    book = make_book(stock=4)
    inventory = InventoryService(db_session)
    inventory.reserve([_line(book, 3)])
    db_session.commit()
    order = _order_for(db_session, make_user(), book, 3)

    inventory.release(order)
    db_session.commit()
    db_session.refresh(book)

    assert book.reserved == 0
    assert book.stock == 4


def test_manual_adjust_records_history(db_session, make_book):
    book = make_book(stock=4)
    inventory = InventoryService(db_session)

    ok, _, updated = inventory.manual_adjust(book.bookID, 10, "Restock from printer")
    assert ok
    assert updated.stock == 10
    entry = updated.history[-1]
    assert entry.kind == StockChangeKind.ADDITION
    assert entry.change == 6

    ok, message, _ = inventory.manual_adjust(book.bookID, -1, "")
    assert not ok

    ebook = make_book(kind=ItemKind.DIGITAL)
    ok, message, _ = inventory.manual_adjust(ebook.bookID, 5, "")
    assert not ok
    assert "unlimited" in message


def test_manual_adjust_reads_current_stock(db_session, other_session, make_book):
    book = make_book(stock=10)
    admin_view = other_session.get(Book, book.bookID)
    assert admin_view.stock == 10

    # A sale settles after the admin screen loaded the book
    book.stock = 7
    db_session.commit()

    ok, _, updated = InventoryService(other_session).manual_adjust(book.bookID, 12, "Recount")

    assert ok
    assert updated.stock == 12
    entry = other_session.query(StockHistory).filter_by(bookID=book.bookID).order_by(StockHistory.entryID.desc()).first()
    assert entry.change == 5
    assert entry.balance == 12
    db_session.expire_all()
    assert db_session.get(Book, book.bookID).stock == 12
