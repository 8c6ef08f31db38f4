"""
Учет доступных экземпляров книг.

Счетчик доступных экземпляров меняется только условными UPDATE-запросами,
поэтому два одновременных одобрения последнего экземпляра не могут оба
пройти: один из них увидит ноль затронутых строк.
"""

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import ConflictError, ValidationError
from models import BookInventory

logger = logging.getLogger(__name__)


class InventoryLedger:
    def __init__(self, db: Session):
        self.db = db

    def get(self, book_id: int) -> Optional[BookInventory]:
        return (
            self.db.query(BookInventory)
            .filter(BookInventory.book_id == book_id)
            .populate_existing()
            .first()
        )

    def is_available(self, book_id: int) -> bool:
        """Книга без записи учета считается доступной в одном экземпляре."""
        record = self.get(book_id)
        return record is None or record.available_copies > 0

    def decrement(self, book_id: int) -> bool:
        """
        Резервирует один экземпляр книги.

        Args:
            book_id (int): ID книги.

        Returns:
            bool: True, если экземпляр зарезервирован, False, если свободных нет.
        """
        affected = (
            self.db.query(BookInventory)
            .filter(BookInventory.book_id == book_id, BookInventory.available_copies > 0)
            .update(
                {BookInventory.available_copies: BookInventory.available_copies - 1},
                synchronize_session=False,
            )
        )
        if affected:
            return True
        if self.get(book_id) is not None:
            return False

        # No record yet: the single default copy is being lent out now.
        try:
            with self.db.begin_nested():
                self.db.add(BookInventory(book_id=book_id, total_copies=1, available_copies=0))
        except IntegrityError:
            logger.info("Lost the race materialising inventory for book %s", book_id)
            return False
        return True

    def increment(self, book_id: int) -> bool:
        """
        Возвращает один экземпляр книги в фонд.

        Счетчик никогда не превышает общее количество экземпляров.

        Returns:
            bool: True, если счетчик увеличен.
        """
        affected = (
            self.db.query(BookInventory)
            .filter(
                BookInventory.book_id == book_id,
                BookInventory.available_copies < BookInventory.total_copies,
            )
            .update(
                {BookInventory.available_copies: BookInventory.available_copies + 1},
                synchronize_session=False,
            )
        )
        if not affected:
            logger.warning("Inventory for book %s was not incremented (missing or already full)", book_id)
        return bool(affected)

    def set_copies(self, book_id: int, total_copies: int) -> BookInventory:
        if total_copies < 0:
            raise ValidationError("total_copies must not be negative")
        record = self.get(book_id)
        if record is None:
            record = BookInventory(book_id=book_id, total_copies=total_copies, available_copies=total_copies)
            self.db.add(record)
            self.db.flush()
            return record

        lent_out = record.total_copies - record.available_copies
        if total_copies < lent_out:
            raise ConflictError("Cannot reduce total copies below currently borrowed copies")
        record.available_copies = total_copies - lent_out
        record.total_copies = total_copies
        self.db.flush()
        return record
