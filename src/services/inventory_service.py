from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional, Tuple

from sqlalchemy import case
from sqlalchemy.orm import Session

from src.errors import InsufficientStock
from src.models import Book, Order, StockChangeKind, StockHistory, utcnow
from src.observability import increment_counter, record_event


def publish_inventory_update_event(
    book_id: int,
    old_stock: int,
    new_stock: int,
    reason: str = "sale",
) -> None:
    """Record a stock change on the event feed and counters."""
    record_event(
        "inventory_updated",
        {
            "book_id": book_id,
            "old_stock": old_stock,
            "new_stock": new_stock,
            "change": new_stock - old_stock,
            "reason": reason,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
    increment_counter(
        "inventory_updates_total",
        labels={"direction": "decrease" if new_stock < old_stock else "increase"},
    )


def order_stock_reason(order: Order) -> str:
    return f"Order #{order.order_number}"


class InventoryService:
    """
    Stock changes for physical books.

    Checkout reserves units with a conditional UPDATE so two buyers can never
    both be promised the last copy. Settlement converts the reservation into
    a deduction (success) or hands it back (failure). Digital books have no
    stock and are skipped everywhere.
    """

    ADJUST_ATTEMPTS = 3

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def reserve(self, lines: Iterable) -> None:
        """
        Hold stock for each physical quoted line.

        Raises InsufficientStock when another checkout took the units first.
        The caller owns the transaction and rolls it back on error.
        """
        for line in lines:
            if not line.is_physical:
                continue
            updated = (
                self.db.query(Book)
                .filter(
                    Book.bookID == line.book_id,
                    Book.stock.isnot(None),
                    Book.stock - Book.reserved >= line.quantity,
                )
                .update(
                    {Book.reserved: Book.reserved + line.quantity},
                    synchronize_session=False,
                )
            )
            if updated != 1:
                available = self._available(line.book_id)
                raise InsufficientStock(line.book_id, line.title, line.quantity, available)

    def release(self, order: Order) -> None:
        """Return an order's reserved units to the available pool."""
        for item in order.items:
            if not item.is_physical:
                continue
            self.db.query(Book).filter(Book.bookID == item.bookID).update(
                {Book.reserved: self._reserved_minus(item.quantity)},
                synchronize_session=False,
            )
        self.logger.info("Reservation released", extra={"order_number": order.order_number})

    def deduct(self, order: Order) -> int:
        """
        Take the order's physical units out of stock and release its reservation.

        Runs at most once per order: lines that already carry a Deduction entry
        for this order are skipped. A line that would drive stock negative is
        skipped and logged, never raised, because the payment has been captured.
        Returns the number of lines deducted.
        """
        reason = order_stock_reason(order)
        deducted = 0
        for item in order.items:
            if not item.is_physical:
                continue
            if self._already_deducted(item.bookID, reason):
                self.logger.info(
                    "Skipping duplicate deduction",
                    extra={"order_number": order.order_number, "book_id": item.bookID},
                )
                continue

            old_stock = self._stock(item.bookID)
            updated = (
                self.db.query(Book)
                .filter(
                    Book.bookID == item.bookID,
                    Book.stock.isnot(None),
                    Book.stock >= item.quantity,
                )
                .update(
                    {
                        Book.stock: Book.stock - item.quantity,
                        Book.reserved: self._reserved_minus(item.quantity),
                    },
                    synchronize_session=False,
                )
            )
            if updated != 1:
                self.logger.error(
                    "Stock discrepancy: cannot deduct paid order line",
                    extra={
                        "order_number": order.order_number,
                        "book_id": item.bookID,
                        "requested": item.quantity,
                        "stock": old_stock,
                    },
                )
                increment_counter("inventory_discrepancies_total")
                self.db.query(Book).filter(Book.bookID == item.bookID).update(
                    {Book.reserved: self._reserved_minus(item.quantity)},
                    synchronize_session=False,
                )
                continue

            new_stock = self._stock(item.bookID)
            self.db.add(
                StockHistory(
                    bookID=item.bookID,
                    kind=StockChangeKind.DEDUCTION,
                    change=-item.quantity,
                    balance=new_stock,
                    reason=reason,
                )
            )
            publish_inventory_update_event(item.bookID, old_stock or 0, new_stock or 0, reason="sale")
            deducted += 1

        self.db.flush()
        return deducted

    def manual_adjust(self, book_id: int, new_stock, reason: str) -> Tuple[bool, str, Optional[Book]]:
        """
        Set a physical book's stock to ``new_stock``.

        The write is conditional on the stock value the delta was computed from,
        so a sale settling in between forces a re-read instead of being lost.
        """
        book = self.db.query(Book).filter_by(bookID=book_id).first()
        if book is None:
            return False, "Book not found", None
        if not book.is_physical:
            return False, "Digital books have unlimited stock", book
        if isinstance(new_stock, bool) or not isinstance(new_stock, int) or new_stock < 0:
            return False, "Stock must be a non-negative integer", book

        for _ in range(self.ADJUST_ATTEMPTS):
            old_stock = self.db.query(Book.stock).filter(Book.bookID == book_id).scalar()
            delta = new_stock - (old_stock or 0)
            if delta == 0:
                self.db.refresh(book)
                return True, "Stock unchanged", book

            updated = (
                self.db.query(Book)
                .filter(Book.bookID == book_id, Book.stock == old_stock)
                .update({Book.stock: new_stock, Book.updated_at: utcnow()}, synchronize_session=False)
            )
            if updated == 1:
                break
            self.db.rollback()
        else:
            self.logger.warning("Stock for book %d kept changing; adjustment abandoned", book_id)
            return False, "Stock changed concurrently, try again", book

        self.db.add(
            StockHistory(
                bookID=book_id,
                kind=StockChangeKind.ADDITION if delta > 0 else StockChangeKind.DEDUCTION,
                change=delta,
                balance=new_stock,
                reason=(reason or "").strip() or "Manual adjustment",
            )
        )
        self.db.commit()
        self.db.refresh(book)
        publish_inventory_update_event(book.bookID, old_stock or 0, new_stock, reason="adjustment")
        self.logger.info(
            "Stock adjusted for book %d: %d -> %d",
            book.bookID,
            old_stock or 0,
            new_stock,
        )
        return True, "Stock updated", book


    def record_creation(self, book: Book) -> None:
        if not book.is_physical:
            return
        book.history.append(
            StockHistory(
                kind=StockChangeKind.CREATION,
                change=book.stock or 0,
                balance=book.stock or 0,
                reason="Initial stock",
            )
        )

    @staticmethod
    def _reserved_minus(quantity: int):
        return case((Book.reserved >= quantity, Book.reserved - quantity), else_=0)

    def _stock(self, book_id: int) -> Optional[int]:
        return self.db.query(Book.stock).filter(Book.bookID == book_id).scalar()

    def _available(self, book_id: int) -> int:
        row = self.db.query(Book.stock, Book.reserved).filter(Book.bookID == book_id).first()
        if row is None or row.stock is None:
            return 0
        return max(0, row.stock - (row.reserved or 0))

    def _already_deducted(self, book_id: int, reason: str) -> bool:
        return (
            self.db.query(StockHistory.entryID)
            .filter(
                StockHistory.bookID == book_id,
                StockHistory.kind == StockChangeKind.DEDUCTION,
                StockHistory.reason == reason,
            )
            .first()
            is not None
        )
