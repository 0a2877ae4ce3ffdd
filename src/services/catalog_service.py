from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.errors import ItemNotFound
from src.models import Book, ItemKind, UNLIMITED_STOCK_LABEL


class CatalogService:
    """Read access to books plus the admin create path."""

    def __init__(self, db_session: Session, inventory=None) -> None:
        from src.services.inventory_service import InventoryService

        self.db = db_session
        self.inventory = inventory or InventoryService(db_session)
        self.logger = logging.getLogger(__name__)

    def find_book(self, book_id: int) -> Optional[Book]:
        return self.db.query(Book).filter_by(bookID=book_id).first()

    def get_book(self, book_id: int) -> Book:
        book = self.find_book(book_id)
        if book is None:
            raise ItemNotFound(book_id)
        return book

    def list_books(self) -> List[Book]:
        return self.db.query(Book).order_by(Book.bookID).all()

    def create_book(
        self,
        sku: str,
        title: str,
        kind: str,
        price: Any,
        stock: Any = None,
        description: Optional[str] = None,
    ) -> Tuple[bool, str, Optional[Book]]:
        sku = (sku or "").strip()
        title = (title or "").strip()
        if not sku or not title:
            return False, "SKU and title are required", None

        try:
            item_kind = ItemKind(str(kind or "").upper())
        except ValueError:
            return False, f"Unknown item kind: {kind}", None

        if isinstance(price, bool) or not isinstance(price, int) or price < 0:
            return False, "Price must be a non-negative integer", None

        if item_kind == ItemKind.PHYSICAL:
            if isinstance(stock, bool) or not isinstance(stock, int) or stock < 0:
                return False, "Stock must be a non-negative integer for physical books", None
        else:
            stock = None

        book = Book(
            sku=sku,
            title=title,
            description=description,
            kind=item_kind,
            price=price,
            stock=stock,
            reserved=0,
        )
        try:
            self.db.add(book)
            self.db.flush()
            self.inventory.record_creation(book)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return False, f"A book with SKU {sku} already exists", None

        self.logger.info(
            "Book created",
            extra={"book_id": book.bookID, "sku": book.sku, "kind": item_kind.value},
        )
        return True, "Book created", book

    def update_book(self, book_id: int, data: Dict[str, Any]) -> Tuple[bool, str, Optional[Book]]:
        """Edit title, description or price; a stock value goes through the inventory audit."""
        book = self.find_book(book_id)
        if book is None:
            return False, "Book not found", None

        title = data.get("title", book.title)
        if not isinstance(title, str) or not title.strip():
            return False, "Title cannot be empty", book
        price = data.get("price", book.price)
        if isinstance(price, bool) or not isinstance(price, int) or price < 0:
            return False, "Price must be a non-negative integer", book

        book.title = title.strip()
        book.price = price
        if "description" in data:
            book.description = data.get("description")
        self.db.commit()

        if "stock" in data and book.is_physical:
            success, message, book = self.inventory.manual_adjust(
                book_id, data.get("stock"), data.get("reason") or "Manual Admin Adjustment"
            )
            if not success:
                return False, message, book

        self.logger.info("Book updated", extra={"book_id": book_id})
        return True, "Book updated", book



def serialize_book(book: Book) -> Dict[str, Any]:
    return {
        "id": book.bookID,
        "sku": book.sku,
        "title": book.title,
        "kind": ItemKind(book.kind).value,
        "price": book.price,
        "stock": book.stock if book.is_physical else UNLIMITED_STOCK_LABEL,
        "reserved": book.reserved or 0,
        "available": book.available_stock if book.is_physical else UNLIMITED_STOCK_LABEL,
        "history": [
            {
                "kind": entry.kind.value if hasattr(entry.kind, "value") else entry.kind,
                "change": entry.change,
                "balance": entry.balance,
                "reason": entry.reason,
                "createdAt": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in book.history
        ],
    }
