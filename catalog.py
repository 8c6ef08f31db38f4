from typing import List, Optional

from sqlalchemy.orm import Session

from errors import NotFoundError
from inventory import InventoryLedger
from models import Book, User


class UserDirectory:
    def __init__(self, db: Session):
        self.db = db

    def resolve(self, user_id: int) -> User:
        user = self.db.query(User).filter(User.id == user_id).first()
        if user is None:
            raise NotFoundError("User not found")
        return user

    def resolve_uuid(self, user_uuid: str) -> User:
        user = self.db.query(User).filter(User.uuid == user_uuid).first()
        if user is None:
            raise NotFoundError("User not found")
        return user

    def find(self, user_id: Optional[int]) -> Optional[User]:
        if user_id is None:
            return None
        return self.db.query(User).filter(User.id == user_id).first()

    def by_username(self, username: str) -> Optional[User]:
        return self.db.query(User).filter(User.username == username).first()


class BookCatalog:
    def __init__(self, db: Session):
        self.db = db

    def resolve(self, book_id: int) -> Book:
        book = self.db.query(Book).filter(Book.id == book_id).first()
        if book is None:
            raise NotFoundError("Book not found")
        return book

    def resolve_uuid(self, book_uuid: str) -> Book:
        book = self.db.query(Book).filter(Book.uuid == book_uuid).first()
        if book is None:
            raise NotFoundError("Book not found")
        return book

    def find(self, book_id: int) -> Optional[Book]:
        return self.db.query(Book).filter(Book.id == book_id).first()

    def list_books(self, skip: int = 0, limit: int = 10) -> List[Book]:
        return self.db.query(Book).order_by(Book.id).offset(skip).limit(limit).all()

    def add_book(
        self,
        title: str,
        author: str,
        isbn: Optional[str] = None,
        published_year: Optional[int] = None,
        total_copies: int = 1,
    ) -> Book:
        """
        Добавляет книгу в каталог вместе с записью учета экземпляров.

        Returns:
            Book: Созданный объект книги.
        """
        book = Book(title=title, author=author, isbn=isbn, published_year=published_year)
        self.db.add(book)
        self.db.flush()
        InventoryLedger(self.db).set_copies(book.id, total_copies)
        self.db.commit()
        self.db.refresh(book)
        return book
