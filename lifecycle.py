"""
Сценарии выдачи книг.

Каждый сценарий выполняется в одной транзакции: либо все шаги (решение по
заявке, резерв экземпляра, создание займа) применяются вместе, либо
транзакция откатывается и вызывающий получает ровно одну ошибку.
Экземпляр резервируется до одобрения заявки, поэтому заявка не может
оказаться одобренной без свободного экземпляра.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

from sqlalchemy.orm import Session

from borrow_requests import RequestWorkflow
from catalog import BookCatalog, UserDirectory
from config import LendingPolicy, default_policy
from errors import ConflictError, PermissionDeniedError
from inventory import InventoryLedger
from loans import LoanStateMachine, due_date_for
from models import BorrowRequest, Loan, LoanStatus, RequestStatus, Role, User, utcnow
from schemas import (
    AvailabilityView,
    BookSummary,
    BorrowRequestView,
    LoanView,
    SweepResult,
    UserSummary,
)

logger = logging.getLogger(__name__)

APPROVED_NOTE = "Approved by admin"
CHECKOUT_NOTE = "Checked out by admin"


class LifecycleOrchestrator:
    def __init__(self, db: Session, policy: Optional[LendingPolicy] = None):
        self.db = db
        self.policy = policy or default_policy()
        self.inventory = InventoryLedger(db)
        self.requests = RequestWorkflow(db, self.policy)
        self.loans = LoanStateMachine(db, self.policy)
        self.users = UserDirectory(db)
        self.books = BookCatalog(db)

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        try:
            yield
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    @staticmethod
    def _require_role(actor: User, role: Role) -> None:
        if actor.role is not role:
            raise PermissionDeniedError(f"Access denied: {role.value} role required")

    # ---- student use cases

    def request_borrow(
        self,
        student: User,
        book_uuid: str,
        requested_days: Optional[float] = None,
    ) -> BorrowRequestView:
        """
        Создает заявку студента на книгу.

        Наличие свободного экземпляра здесь не проверяется: оно
        проверяется при одобрении.

        Args:
            student (User): Текущий пользователь, должен быть студентом.
            book_uuid (str): Публичный ID книги.
            requested_days (Optional[float]): Желаемый срок займа.

        Raises:
            PermissionDeniedError: Если пользователь не студент.
            NotFoundError: Если книга не найдена.
            ConflictError: Если книга уже на руках у студента, достигнут лимит
                займов или уже есть заявка на эту книгу.
            ValidationError: Если срок вне допустимого диапазона.

        Returns:
            BorrowRequestView: Созданная заявка.
        """
        self._require_role(student, Role.STUDENT)
        with self._transaction():
            book = self.books.resolve_uuid(book_uuid)
            if self.loans.holds_book(student.id, book.id):
                raise ConflictError("You currently have this book borrowed")
            if len(self.loans.list_active_for_user(student.id)) >= self.policy.max_active_loans:
                raise ConflictError(
                    f"You have reached the maximum limit of {self.policy.max_active_loans} borrowed books"
                )
            request = self.requests.submit(student.id, book.id, requested_days)
        return self.request_view(request)

    def cancel_request(self, student: User, request_uuid: str) -> BorrowRequestView:
        with self._transaction():
            request = self.requests.get_by_uuid(request_uuid)
            self.requests.cancel(student.id, request)
        return self.request_view(request)

    def my_requests(self, user: User) -> List[BorrowRequestView]:
        return [self.request_view(r, with_user=False) for r in self.requests.list_all_for_user(user.id)]

    def my_borrowings(self, user: User, now: Optional[datetime] = None) -> List[LoanView]:
        now = now or utcnow()
        with self._transaction():
            for loan in self.loans.list_active_for_user(user.id):
                if loan.due_date < now:
                    self.loans.compute_late_fee(loan, now)
        return [self.loan_view(loan, with_user=False) for loan in self.loans.list_active_for_user(user.id)]

    def my_history(self, user: User) -> List[LoanView]:
        return [self.loan_view(loan, with_user=False) for loan in self.loans.list_history_for_user(user.id)]

    def loan_details(self, user: User, loan_uuid: str, now: Optional[datetime] = None) -> LoanView:
        loan = self.loans.get_by_uuid(loan_uuid)
        if user.role is not Role.ADMIN and loan.user_id != user.id:
            raise PermissionDeniedError("You can only view your own borrowings")
        if loan.status is not LoanStatus.RETURNED:
            with self._transaction():
                self.loans.compute_late_fee(loan, now)
        return self.loan_view(loan)

    # ---- admin use cases

    def pending_requests(self, admin: User) -> List[BorrowRequestView]:
        self._require_role(admin, Role.ADMIN)
        return [self.request_view(r) for r in self.requests.list_pending()]

    def process_request(
        self,
        admin: User,
        request_uuid: str,
        action: str,
        rejection_reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BorrowRequestView:
        """
        Одобряет или отклоняет заявку.

        При одобрении сначала резервируется экземпляр, и только затем заявка
        помечается одобренной и создается займ. Если свободных экземпляров нет,
        заявка остается в статусе pending.

        Raises:
            NotFoundError: Если заявка не найдена.
            ConflictError: Если заявка уже обработана или книга недоступна.
            ValidationError: Если действие не approved/rejected.
        """
        self._require_role(admin, Role.ADMIN)
        outcome = RequestStatus(action) if action in ("approved", "rejected") else None
        logger.info("Admin %s processing request %s: %s", admin.id, request_uuid, action)
        with self._transaction():
            request = self.requests.get_by_uuid(request_uuid)
            if outcome is RequestStatus.APPROVED:
                self._approve(admin, request, now or utcnow())
            else:
                self.requests.decide(admin.id, request, outcome, rejection_reason)
        return self.request_view(request)

    def _approve(self, admin: User, request: BorrowRequest, now: datetime) -> Loan:
        if request.status is not RequestStatus.PENDING:
            raise ConflictError(f"Request already processed with status: {request.status.value}")
        if not self.inventory.decrement(request.book_id):
            raise ConflictError("Book is no longer available. Please reject this request.")
        self.requests.decide(admin.id, request, RequestStatus.APPROVED)
        return self.loans.open(
            request.user_id,
            request.book_id,
            request.id,
            due_date_for(now, request.requested_days),
            notes=APPROVED_NOTE,
            now=now,
        )

    def direct_checkout(
        self,
        admin: User,
        user_uuid: str,
        book_uuid: str,
        loan_days: Optional[float] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> LoanView:
        self._require_role(admin, Role.ADMIN)
        days = self.requests.validate_days(loan_days)
        now = now or utcnow()
        with self._transaction():
            borrower = self.users.resolve_uuid(user_uuid)
            book = self.books.resolve_uuid(book_uuid)
            if self.loans.holds_book(borrower.id, book.id):
                raise ConflictError("User currently has this book borrowed")
            if not self.inventory.decrement(book.id):
                raise ConflictError("No copies of this book are currently available")
            loan = self.loans.open(
                borrower.id,
                book.id,
                None,
                due_date_for(now, days),
                notes=notes or CHECKOUT_NOTE,
                now=now,
            )
        return self.loan_view(loan)

    def return_loan(
        self,
        admin: User,
        loan_uuid: str,
        return_notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> LoanView:
        """
        Принимает книгу: фиксирует штраф, закрывает займ и возвращает экземпляр.

        Raises:
            NotFoundError: Если займ не найден.
            ConflictError: Если книга уже возвращена.
        """
        self._require_role(admin, Role.ADMIN)
        now = now or utcnow()
        with self._transaction():
            loan = self.loans.get_by_uuid(loan_uuid)
            self.loans.compute_late_fee(loan, now)
            self.loans.close(loan, return_notes, now)
            self.inventory.increment(loan.book_id)
        return self.loan_view(loan)

    def overdue_loans(self, admin: User, now: Optional[datetime] = None) -> List[LoanView]:
        self._require_role(admin, Role.ADMIN)
        now = now or utcnow()
        with self._transaction():
            self.loans.sweep_overdue(now)
        return [self.loan_view(loan) for loan in self.loans.list_overdue(now)]

    def sweep_overdue(self, admin: User, now: Optional[datetime] = None) -> SweepResult:
        self._require_role(admin, Role.ADMIN)
        with self._transaction():
            result = self.loans.sweep_overdue(now)
        return SweepResult(**result)

    def list_loans(
        self,
        admin: User,
        status: Optional[LoanStatus] = None,
        user_uuid: Optional[str] = None,
        book_uuid: Optional[str] = None,
        skip: int = 0,
        limit: int = 10,
    ) -> List[LoanView]:
        self._require_role(admin, Role.ADMIN)
        user_id = self.users.resolve_uuid(user_uuid).id if user_uuid else None
        book_id = self.books.resolve_uuid(book_uuid).id if book_uuid else None
        loans = self.loans.list_loans(status=status, user_id=user_id, book_id=book_id, skip=skip, limit=limit)
        return [self.loan_view(loan) for loan in loans]

    # ---- availability

    def is_available(self, book_uuid: str) -> bool:
        book = self.books.resolve_uuid(book_uuid)
        return self.inventory.is_available(book.id)

    def check_availability(self, book_uuid: str, now: Optional[datetime] = None) -> AvailabilityView:
        book = self.books.resolve_uuid(book_uuid)
        record = self.inventory.get(book.id)
        stats = self.loans.book_stats(book.id, now)
        return AvailabilityView(
            book_uuid=book.uuid,
            book_title=book.title,
            is_available=record is None or record.available_copies > 0,
            total_copies=record.total_copies if record else 1,
            available_copies=record.available_copies if record else 1,
            **stats,
        )

    # ---- projections

    def _user_summary(self, user_id: Optional[int]) -> Optional[UserSummary]:
        user = self.users.find(user_id)
        if user is None:
            return None
        return UserSummary(id=user.id, uuid=user.uuid, username=user.username, role=user.role.value)

    def _book_summary(self, book_id: int) -> Optional[BookSummary]:
        book = self.books.find(book_id)
        if book is None:
            return None
        return BookSummary(
            id=book.id,
            uuid=book.uuid,
            title=book.title,
            author=book.author,
            isbn=book.isbn,
            published_year=book.published_year,
        )

    def request_view(self, request: BorrowRequest, with_user: bool = True) -> BorrowRequestView:
        return BorrowRequestView(
            id=request.id,
            uuid=request.uuid,
            user_id=request.user_id,
            book_id=request.book_id,
            status=request.status.value,
            requested_days=request.requested_days,
            requested_at=request.requested_at,
            processed_by=request.processed_by,
            processed_at=request.processed_at,
            rejection_reason=request.rejection_reason,
            user=self._user_summary(request.user_id) if with_user else None,
            book=self._book_summary(request.book_id),
            processor=self._user_summary(request.processed_by),
        )

    def loan_view(self, loan: Loan, with_user: bool = True) -> LoanView:
        return LoanView(
            id=loan.id,
            uuid=loan.uuid,
            user_id=loan.user_id,
            book_id=loan.book_id,
            request_id=loan.request_id,
            borrowed_at=loan.borrowed_at,
            due_date=loan.due_date,
            returned_at=loan.returned_at,
            status=loan.status.value,
            days_overdue=loan.days_overdue,
            late_fee_amount=loan.late_fee_amount,
            late_fee_per_day=loan.late_fee_per_day,
            borrow_notes=loan.borrow_notes,
            return_notes=loan.return_notes,
            user=self._user_summary(loan.user_id) if with_user else None,
            book=self._book_summary(loan.book_id),
        )
