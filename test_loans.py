from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import NOW
from errors import ConflictError
from loans import calculate_late_fee
from models import Loan, LoanStatus


def open_loan(orchestrator, admin, student, book, days=14, now=NOW):
    view = orchestrator.direct_checkout(admin, student.uuid, book.uuid, loan_days=days, now=now)
    return orchestrator.loans.get_by_uuid(view.uuid)


def test_no_fee_before_due_date():
    assert calculate_late_fee(NOW, NOW, Decimal("2.00"), Decimal("25.00")) == (0, Decimal("0.00"))
    assert calculate_late_fee(NOW, NOW - timedelta(days=3), Decimal("2.00"), Decimal("25.00"))[1] == 0


def test_ten_days_overdue():
    days, fee = calculate_late_fee(NOW - timedelta(days=10), NOW, Decimal("2.00"), Decimal("25.00"))
    assert days == 10
    assert fee == Decimal("20.00")


def test_fee_is_capped():
    days, fee = calculate_late_fee(NOW - timedelta(days=20), NOW, Decimal("2.00"), Decimal("25.00"))
    assert days == 20
    assert fee == Decimal("25.00")


def test_partial_day_counts_as_full_day():
    days, fee = calculate_late_fee(NOW, NOW + timedelta(hours=1), Decimal("0.50"), Decimal("25.00"))
    assert days == 1
    assert fee == Decimal("0.50")


def test_fee_is_monotonic():
    due = NOW - timedelta(days=1)
    fees = [
        calculate_late_fee(due, NOW + timedelta(hours=h), Decimal("0.75"), Decimal("25.00"))[1]
        for h in range(0, 24 * 60, 7)
    ]
    assert fees == sorted(fees)
    assert fees[-1] == Decimal("25.00")


def test_compute_late_fee_persists_overdue(db, orchestrator, admin, student, book):
    loan = open_loan(orchestrator, admin, student, book)
    fee = orchestrator.loans.compute_late_fee(loan, NOW + timedelta(days=24))
    db.commit()

    stored = db.query(Loan).filter(Loan.id == loan.id).one()
    assert fee == Decimal("20.00")
    assert stored.status is LoanStatus.OVERDUE
    assert stored.days_overdue == 10
    assert stored.late_fee_amount == Decimal("20.00")
    assert stored.late_fee_per_day == Decimal("2.00")


def test_compute_late_fee_leaves_loan_active_before_due(db, orchestrator, admin, student, book):
    loan = open_loan(orchestrator, admin, student, book)
    assert orchestrator.loans.compute_late_fee(loan, NOW + timedelta(days=5)) == 0
    assert loan.status is LoanStatus.ACTIVE
    assert loan.days_overdue == 0


def test_stored_fee_never_decreases(db, orchestrator, admin, student, book):
    loan = open_loan(orchestrator, admin, student, book)
    orchestrator.loans.compute_late_fee(loan, NOW + timedelta(days=20))
    later = orchestrator.loans.compute_late_fee(loan, NOW + timedelta(days=16))
    assert later == Decimal("12.00")
    assert loan.days_overdue == 6


def test_close_keeps_last_computed_fee(db, orchestrator, admin, student, book):
    loan = open_loan(orchestrator, admin, student, book)
    orchestrator.loans.compute_late_fee(loan, NOW + timedelta(days=16))
    closed = orchestrator.loans.close(loan, "Cover torn", NOW + timedelta(days=19))
    db.commit()

    assert closed.status is LoanStatus.RETURNED
    assert closed.returned_at == NOW + timedelta(days=19)
    assert closed.late_fee_amount == Decimal("4.00")
    assert closed.return_notes == "Cover torn"


def test_close_returned_loan_is_conflict(db, orchestrator, admin, student, book):
    loan = open_loan(orchestrator, admin, student, book)
    orchestrator.loans.close(loan, now=NOW)
    with pytest.raises(ConflictError):
        orchestrator.loans.close(loan, now=NOW)


def test_fee_refresh_after_return_does_not_reopen_loan(db, orchestrator, admin, student, book):
    loan = open_loan(orchestrator, admin, student, book)
    orchestrator.return_loan(admin, loan.uuid, now=NOW + timedelta(days=2))
    fee = orchestrator.loans.compute_late_fee(loan, NOW + timedelta(days=40))
    assert fee == Decimal("0.00")
    assert loan.status is LoanStatus.RETURNED


def test_sweep_updates_past_due_loans_oldest_first(db, orchestrator, admin, student, other_student):
    books = [orchestrator.books.add_book(f"Book {i}", "Author", total_copies=1) for i in range(3)]
    newest = open_loan(orchestrator, admin, student, books[0], days=10)
    oldest = open_loan(orchestrator, admin, other_student, books[1], days=7)
    not_due = open_loan(orchestrator, admin, student, books[2], days=30)

    seen = []
    compute = orchestrator.loans.compute_late_fee

    def recording(loan, now=None):
        seen.append(loan.uuid)
        return compute(loan, now)

    orchestrator.loans.compute_late_fee = recording
    result = orchestrator.sweep_overdue(admin, now=NOW + timedelta(days=12))

    assert result.updated == 2
    assert result.failed == 0
    assert seen == [oldest.uuid, newest.uuid]
    db.expire_all()
    assert oldest.status is LoanStatus.OVERDUE
    assert oldest.days_overdue == 5
    assert newest.days_overdue == 2
    assert not_due.status is LoanStatus.ACTIVE


def test_sweep_counts_failures_and_continues(db, orchestrator, admin, student, other_student):
    first = orchestrator.books.add_book("First", "Author", total_copies=1)
    second = orchestrator.books.add_book("Second", "Author", total_copies=1)
    broken = open_loan(orchestrator, admin, student, first, days=7)
    healthy = open_loan(orchestrator, admin, other_student, second, days=8)

    compute = orchestrator.loans.compute_late_fee

    def flaky(loan, now=None):
        if loan.id == broken.id:
            raise ConflictError("simulated failure")
        return compute(loan, now)

    orchestrator.loans.compute_late_fee = flaky
    result = orchestrator.sweep_overdue(admin, now=NOW + timedelta(days=10))

    assert result.updated == 1
    assert result.failed == 1
    db.expire_all()
    assert healthy.status is LoanStatus.OVERDUE
    assert broken.status is LoanStatus.ACTIVE


def test_sweep_skips_returned_loans(db, orchestrator, admin, student, book):
    loan = open_loan(orchestrator, admin, student, book, days=7)
    orchestrator.return_loan(admin, loan.uuid, now=NOW + timedelta(days=1))
    result = orchestrator.sweep_overdue(admin, now=NOW + timedelta(days=30))
    assert result.updated == 0
    db.expire_all()
    assert loan.status is LoanStatus.RETURNED
