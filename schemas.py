from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field


class UserCreate(BaseModel):
    username: str
    password: str


class StaffCreate(UserCreate):
    role: Literal["student", "admin"] = "admin"


class UserInDB(BaseModel):
    id: int
    uuid: str
    username: str
    role: str

    model_config = {
        "from_attributes": True
    }


class Token(BaseModel):
    access_token: str
    token_type: str


class BookCreate(BaseModel):
    title: str
    author: str
    isbn: Optional[str] = None
    published_year: Optional[int] = None
    total_copies: int = Field(default=1, ge=0)


class BookResponse(BaseModel):
    id: int
    uuid: str
    title: str
    author: str
    isbn: Optional[str] = None
    published_year: Optional[int] = None
    total_copies: int
    available_copies: int


class BorrowRequestCreate(BaseModel):
    book_id: str
    requested_days: Optional[float] = Field(default=None, gt=0)


class ProcessRequest(BaseModel):
    action: Literal["approved", "rejected"]
    rejection_reason: Optional[str] = Field(default=None, max_length=500)


class ReturnBook(BaseModel):
    return_notes: Optional[str] = Field(default=None, max_length=500)


class DirectCheckout(BaseModel):
    user_id: str
    book_id: str
    loan_days: Optional[float] = Field(default=None, gt=0)
    notes: Optional[str] = Field(default=None, max_length=500)


class UserSummary(BaseModel):
    id: int
    uuid: str
    username: str
    role: str


class BookSummary(BaseModel):
    id: int
    uuid: str
    title: str
    author: str
    isbn: Optional[str] = None
    published_year: Optional[int] = None


class BorrowRequestView(BaseModel):
    id: int
    uuid: str
    user_id: int
    book_id: int
    status: str
    requested_days: float
    requested_at: datetime
    processed_by: Optional[int] = None
    processed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    user: Optional[UserSummary] = None
    book: Optional[BookSummary] = None
    processor: Optional[UserSummary] = None


class LoanView(BaseModel):
    id: int
    uuid: str
    user_id: int
    book_id: int
    request_id: Optional[int] = None
    borrowed_at: datetime
    due_date: datetime
    returned_at: Optional[datetime] = None
    status: str
    days_overdue: int
    late_fee_amount: Decimal
    late_fee_per_day: Decimal
    borrow_notes: Optional[str] = None
    return_notes: Optional[str] = None
    user: Optional[UserSummary] = None
    book: Optional[BookSummary] = None


class AvailabilityView(BaseModel):
    book_uuid: str
    book_title: str
    is_available: bool
    total_copies: int
    available_copies: int
    active_borrowings: int
    total_borrowings: int
    average_borrow_days: int


class SweepResult(BaseModel):
    updated: int
    failed: int
