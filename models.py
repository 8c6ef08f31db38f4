import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)

from database import Base
from errors import ConflictError


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_uuid() -> str:
    return str(uuid.uuid4())


class Role(str, enum.Enum):
    STUDENT = "student"
    ADMIN = "admin"


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class LoanStatus(str, enum.Enum):
    ACTIVE = "active"
    OVERDUE = "overdue"
    RETURNED = "returned"


REQUEST_TRANSITIONS = {
    RequestStatus.PENDING: {RequestStatus.APPROVED, RequestStatus.REJECTED, RequestStatus.CANCELLED},
    RequestStatus.APPROVED: set(),
    RequestStatus.REJECTED: set(),
    RequestStatus.CANCELLED: set(),
}

# overdue -> overdue is a fee refresh, not a new state
LOAN_TRANSITIONS = {
    LoanStatus.ACTIVE: {LoanStatus.OVERDUE, LoanStatus.RETURNED},
    LoanStatus.OVERDUE: {LoanStatus.OVERDUE, LoanStatus.RETURNED},
    LoanStatus.RETURNED: set(),
}

OPEN_LOAN_STATUSES = (LoanStatus.ACTIVE, LoanStatus.OVERDUE)


def ensure_transition(table: dict, current: enum.Enum, target: enum.Enum, what: str) -> None:
    """
    Проверяет, что переход между состояниями разрешен таблицей переходов.

    Raises:
        ConflictError: Если переход не разрешен.
    """
    if target not in table[current]:
        raise ConflictError(f"{what} cannot move from {current.value} to {target.value}")


def _values(enum_cls):
    return [member.value for member in enum_cls]


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(String(36), unique=True, nullable=False, default=new_uuid)
    username = Column(String(150), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(
        Enum(Role, name="user_role", values_callable=_values, native_enum=False),
        nullable=False,
        default=Role.STUDENT,
    )


class Book(Base):
    __tablename__ = "books"

    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(String(36), unique=True, nullable=False, default=new_uuid)
    title = Column(String(255), nullable=False, index=True)
    author = Column(String(255), nullable=False)
    isbn = Column(String(32), nullable=True)
    published_year = Column(Integer, nullable=True)


class BookInventory(Base):
    __tablename__ = "book_inventory"

    book_id = Column(Integer, ForeignKey("books.id"), primary_key=True)
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("available_copies >= 0", name="chk_inventory_available_non_negative"),
        CheckConstraint("available_copies <= total_copies", name="chk_inventory_available_le_total"),
        CheckConstraint("total_copies >= 0", name="chk_inventory_total_non_negative"),
    )


class BorrowRequest(Base):
    __tablename__ = "borrow_requests"

    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(String(36), unique=True, nullable=False, default=new_uuid)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False)
    status = Column(
        Enum(RequestStatus, name="request_status", values_callable=_values, native_enum=False),
        nullable=False,
        default=RequestStatus.PENDING,
    )
    requested_days = Column(Float, nullable=False, default=14)
    requested_at = Column(DateTime, nullable=False, default=utcnow)
    processed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    processed_at = Column(DateTime, nullable=True)
    rejection_reason = Column(String(500), nullable=True)

    __table_args__ = (
        Index(
            "uq_borrow_requests_pending",
            "user_id",
            "book_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
        Index("ix_borrow_requests_user_status", "user_id", "status"),
        Index("ix_borrow_requests_status_requested_at", "status", "requested_at"),
    )

    def __repr__(self) -> str:
        return f"<BorrowRequest {self.uuid} - {self.status.value}>"


class Loan(Base):
    __tablename__ = "loans"

    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(String(36), unique=True, nullable=False, default=new_uuid)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False)
    request_id = Column(Integer, ForeignKey("borrow_requests.id"), nullable=True, unique=True)
    borrowed_at = Column(DateTime, nullable=False, default=utcnow)
    due_date = Column(DateTime, nullable=False)
    returned_at = Column(DateTime, nullable=True)
    status = Column(
        Enum(LoanStatus, name="loan_status", values_callable=_values, native_enum=False),
        nullable=False,
        default=LoanStatus.ACTIVE,
    )
    days_overdue = Column(Integer, nullable=False, default=0)
    late_fee_amount = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    late_fee_per_day = Column(Numeric(10, 2), nullable=False, default=Decimal("0.50"))
    borrow_notes = Column(Text, nullable=True)
    return_notes = Column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("days_overdue >= 0", name="chk_loans_days_overdue"),
        CheckConstraint("late_fee_amount >= 0", name="chk_loans_late_fee"),
        Index("ix_loans_user_status", "user_id", "status"),
        Index("ix_loans_status_due_date", "status", "due_date"),
    )

    def __repr__(self) -> str:
        return f"<Loan {self.uuid} - {self.status.value}>"
