"""
Жизненный цикл займа: active -> overdue -> returned.

Статус overdue является кэшированной классификацией: его можно пересчитать
в любой момент как "active и срок возврата прошел". Статус returned
окончательный.
"""

import logging
import math
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import DateTime, case, func, literal
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import LendingPolicy
from errors import ConflictError, LendingError, NotFoundError
from models import LOAN_TRANSITIONS, OPEN_LOAN_STATUSES, Loan, LoanStatus, ensure_transition, utcnow

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60
CENT = Decimal("0.01")


def calculate_late_fee(
    due_date: datetime,
    now: datetime,
    fee_per_day: Decimal,
    cap: Decimal,
) -> Tuple[int, Decimal]:
    """
    Считает дни просрочки и штраф.

    Неполный день просрочки считается полным днем.

    Args:
        due_date (datetime): Срок возврата.
        now (datetime): Текущий момент.
        fee_per_day (Decimal): Штраф за день.
        cap (Decimal): Максимальный штраф.

    Returns:
        Tuple[int, Decimal]: Количество дней просрочки и сумма штрафа.
    """
    if now <= due_date:
        return 0, Decimal("0.00")
    days = math.ceil((now - due_date).total_seconds() / SECONDS_PER_DAY)
    fee = min(Decimal(days) * Decimal(fee_per_day), Decimal(cap))
    return days, fee.quantize(CENT, rounding=ROUND_HALF_UP)


def due_date_for(start: datetime, days: float) -> datetime:
    return start + timedelta(days=days)


class LoanStateMachine:
    def __init__(self, db: Session, policy: LendingPolicy):
        self.db = db
        self.policy = policy

    def get_by_uuid(self, loan_uuid: str) -> Loan:
        loan = self.db.query(Loan).filter(Loan.uuid == loan_uuid).populate_existing().first()
        if loan is None:
            raise NotFoundError("Borrowing record not found")
        return loan

    def open(
        self,
        borrower_id: int,
        book_id: int,
        request_id: Optional[int],
        due_date: datetime,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Loan:
        """
        Создает активный займ.

        Экземпляр книги должен быть уже зарезервирован через InventoryLedger.
        """
        loan = Loan(
            user_id=borrower_id,
            book_id=book_id,
            request_id=request_id,
            borrowed_at=now or utcnow(),
            due_date=due_date,
            status=LoanStatus.ACTIVE,
            days_overdue=0,
            late_fee_amount=Decimal("0.00"),
            late_fee_per_day=self.policy.late_fee_per_day,
            borrow_notes=notes,
        )
        self.db.add(loan)
        self.db.flush()
        logger.info("Loan %s opened for user %s, book %s, due %s", loan.uuid, borrower_id, book_id, due_date)
        return loan

    def compute_late_fee(self, loan: Loan, now: Optional[datetime] = None) -> Decimal:
        """
        Пересчитывает штраф займа и сохраняет его вместе со статусом overdue.

        Для возвращенного займа ничего не меняет и возвращает итоговый штраф.
        Штраф не уменьшается, пока займ открыт.

        Args:
            loan (Loan): Займ.
            now (Optional[datetime]): Момент расчета, по умолчанию текущее время.

        Returns:
            Decimal: Сумма штрафа.
        """
        now = now or utcnow()
        if loan.status is LoanStatus.RETURNED:
            return loan.late_fee_amount

        days, fee = calculate_late_fee(loan.due_date, now, loan.late_fee_per_day, self.policy.late_fee_cap)
        if days == 0:
            return Decimal("0.00")
        ensure_transition(LOAN_TRANSITIONS, loan.status, LoanStatus.OVERDUE, "Loan")

        days = max(days, loan.days_overdue or 0)
        fee = max(fee, loan.late_fee_amount or Decimal("0.00"))
        (
            self.db.query(Loan)
            .filter(Loan.id == loan.id, Loan.status.in_(OPEN_LOAN_STATUSES))
            .update(
                {
                    Loan.days_overdue: days,
                    Loan.late_fee_amount: fee,
                    Loan.status: LoanStatus.OVERDUE,
                },
                synchronize_session=False,
            )
        )
        self.db.refresh(loan)
        return loan.late_fee_amount

    def close(self, loan: Loan, return_notes: Optional[str] = None, now: Optional[datetime] = None) -> Loan:
        """
        Завершает займ, сохраняя последний рассчитанный штраф.

        Raises:
            ConflictError: Если книга уже возвращена.
        """
        if loan.status is LoanStatus.RETURNED:
            raise ConflictError("This book has already been returned")
        ensure_transition(LOAN_TRANSITIONS, loan.status, LoanStatus.RETURNED, "Loan")

        affected = (
            self.db.query(Loan)
            .filter(Loan.id == loan.id, Loan.status.in_(OPEN_LOAN_STATUSES))
            .update(
                {
                    Loan.status: LoanStatus.RETURNED,
                    Loan.returned_at: now or utcnow(),
                    Loan.return_notes: return_notes,
                },
                synchronize_session=False,
            )
        )
        self.db.refresh(loan)
        if not affected:
            raise ConflictError("This book has already been returned")
        logger.info("Loan %s returned with late fee %s", loan.uuid, loan.late_fee_amount)
        return loan

    def sweep_overdue(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Переводит все просроченные займы в overdue и обновляет штрафы.

        Займы обрабатываются от самого старого срока возврата, каждый в своей
        точке сохранения: ошибка по одному займу не прерывает обход.

        Returns:
            Dict[str, int]: Количество обновленных и неудачных займов.
        """
        now = now or utcnow()
        loans = (
            self.db.query(Loan)
            .filter(Loan.status.in_(OPEN_LOAN_STATUSES), Loan.due_date < now)
            .order_by(Loan.due_date.asc(), Loan.id.asc())
            .all()
        )
        updated = 0
        failed = 0
        for loan in loans:
            try:
                with self.db.begin_nested():
                    self.compute_late_fee(loan, now)
                updated += 1
            except (LendingError, SQLAlchemyError):
                failed += 1
                logger.exception("Failed to update overdue status for loan %s", loan.uuid)
        logger.info("Overdue sweep updated %d loans, %d failed", updated, failed)
        return {"updated": updated, "failed": failed}

    def list_active_for_user(self, user_id: int) -> List[Loan]:
        return (
            self.db.query(Loan)
            .filter(Loan.user_id == user_id, Loan.status.in_(OPEN_LOAN_STATUSES))
            .order_by(Loan.due_date.asc())
            .all()
        )

    def list_history_for_user(self, user_id: int) -> List[Loan]:
        return (
            self.db.query(Loan)
            .filter(Loan.user_id == user_id, Loan.status == LoanStatus.RETURNED)
            .order_by(Loan.returned_at.desc())
            .all()
        )

    def list_overdue(self, now: Optional[datetime] = None) -> List[Loan]:
        now = now or utcnow()
        return (
            self.db.query(Loan)
            .filter(
                (Loan.status == LoanStatus.OVERDUE)
                | ((Loan.status == LoanStatus.ACTIVE) & (Loan.due_date < now))
            )
            .order_by(Loan.due_date.asc())
            .all()
        )

    def list_loans(
        self,
        status: Optional[LoanStatus] = None,
        user_id: Optional[int] = None,
        book_id: Optional[int] = None,
        skip: int = 0,
        limit: int = 10,
    ) -> List[Loan]:
        query = self.db.query(Loan)
        if status is not None:
            query = query.filter(Loan.status == status)
        if user_id is not None:
            query = query.filter(Loan.user_id == user_id)
        if book_id is not None:
            query = query.filter(Loan.book_id == book_id)
        return query.order_by(Loan.borrowed_at.desc(), Loan.id.desc()).offset(skip).limit(limit).all()

    def holds_book(self, user_id: int, book_id: int) -> bool:
        return (
            self.db.query(Loan)
            .filter(Loan.user_id == user_id, Loan.book_id == book_id, Loan.status.in_(OPEN_LOAN_STATUSES))
            .first()
            is not None
        )

    def _days_between(self, start, end):
        if self.db.get_bind().dialect.name == "sqlite":
            return func.julianday(end) - func.julianday(start)
        return func.extract("epoch", end - start) / SECONDS_PER_DAY

    def book_stats(self, book_id: int, now: Optional[datetime] = None) -> Dict[str, float]:
        """
        Статистика выдач книги, посчитанная одним агрегирующим запросом.

        Returns:
            Dict[str, float]: Всего займов, открытых займов и средняя
                длительность займа в днях.
        """
        now = now or utcnow()
        ended_at = func.coalesce(Loan.returned_at, literal(now, DateTime))
        total, active, average = (
            self.db.query(
                func.count(Loan.id),
                func.sum(case((Loan.status.in_(OPEN_LOAN_STATUSES), 1), else_=0)),
                func.avg(self._days_between(Loan.borrowed_at, ended_at)),
            )
            .filter(Loan.book_id == book_id)
            .one()
        )
        return {
            "total_borrowings": total or 0,
            "active_borrowings": int(active or 0),
            "average_borrow_days": round(float(average or 0)),
        }
