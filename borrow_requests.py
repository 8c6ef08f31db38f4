import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import LendingPolicy
from errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from models import REQUEST_TRANSITIONS, BorrowRequest, RequestStatus, ensure_transition, utcnow

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 500
CANCELLED_BY_USER = "Cancelled by user"


class RequestWorkflow:
    """
    Заявки студентов на выдачу книг: создание, просмотр, решение и отмена.

    Заявка не резервирует экземпляр: доступность проверяется только
    в момент одобрения.
    """

    def __init__(self, db: Session, policy: LendingPolicy):
        self.db = db
        self.policy = policy

    def get_by_uuid(self, request_uuid: str) -> BorrowRequest:
        request = (
            self.db.query(BorrowRequest)
            .filter(BorrowRequest.uuid == request_uuid)
            .populate_existing()
            .first()
        )
        if request is None:
            raise NotFoundError("Request not found")
        return request

    def validate_days(self, requested_days: Optional[float]) -> float:
        if requested_days is None:
            return self.policy.default_days
        if not self.policy.min_days <= requested_days <= self.policy.max_days:
            raise ValidationError(
                f"requested_days must be between {self.policy.min_days:g} and {self.policy.max_days:g}"
            )
        return requested_days

    def submit(self, student_id: int, book_id: int, requested_days: Optional[float] = None) -> BorrowRequest:
        """
        Создает заявку в статусе pending.

        Args:
            student_id (int): ID студента.
            book_id (int): ID книги.
            requested_days (Optional[float]): Желаемый срок займа в днях.

        Raises:
            ValidationError: Если срок вне допустимого диапазона.
            ConflictError: Если у студента уже есть заявка на эту книгу.

        Returns:
            BorrowRequest: Созданная заявка.
        """
        days = self.validate_days(requested_days)
        duplicate = (
            self.db.query(BorrowRequest)
            .filter(
                BorrowRequest.user_id == student_id,
                BorrowRequest.book_id == book_id,
                BorrowRequest.status == RequestStatus.PENDING,
            )
            .first()
        )
        if duplicate is not None:
            raise ConflictError("You already have a pending request for this book")

        request = BorrowRequest(
            user_id=student_id,
            book_id=book_id,
            requested_days=days,
            status=RequestStatus.PENDING,
            requested_at=utcnow(),
        )
        self.db.add(request)
        try:
            self.db.flush()
        except IntegrityError:
            raise ConflictError("You already have a pending request for this book")
        logger.info("User %s requested book %s for %g days (%s)", student_id, book_id, days, request.uuid)
        return request

    def list_pending(self) -> List[BorrowRequest]:
        return (
            self.db.query(BorrowRequest)
            .filter(BorrowRequest.status == RequestStatus.PENDING)
            .order_by(BorrowRequest.requested_at.asc(), BorrowRequest.id.asc())
            .all()
        )

    def list_pending_for_user(self, user_id: int) -> List[BorrowRequest]:
        return (
            self.db.query(BorrowRequest)
            .filter(BorrowRequest.user_id == user_id, BorrowRequest.status == RequestStatus.PENDING)
            .order_by(BorrowRequest.requested_at.desc(), BorrowRequest.id.desc())
            .all()
        )

    def list_all_for_user(self, user_id: int) -> List[BorrowRequest]:
        return (
            self.db.query(BorrowRequest)
            .filter(BorrowRequest.user_id == user_id)
            .order_by(BorrowRequest.requested_at.desc(), BorrowRequest.id.desc())
            .all()
        )

    def decide(
        self,
        admin_id: int,
        request: BorrowRequest,
        outcome: RequestStatus,
        reason: Optional[str] = None,
    ) -> BorrowRequest:
        """
        Переводит заявку из pending в approved или rejected.

        Обновление условное (WHERE status = 'pending'), поэтому из двух
        администраторов, решающих одну заявку одновременно, успеет один.

        Raises:
            ValidationError: Если решение не approved/rejected или причина слишком длинная.
            ConflictError: Если заявка уже обработана.
        """
        if outcome not in (RequestStatus.APPROVED, RequestStatus.REJECTED):
            raise ValidationError("action must be either approved or rejected")
        if outcome is RequestStatus.APPROVED:
            reason = None
        return self._transition(admin_id, request, outcome, reason)

    def cancel(self, student_id: int, request: BorrowRequest) -> BorrowRequest:
        if request.user_id != student_id:
            raise PermissionDeniedError("You can only cancel your own requests")
        return self._transition(student_id, request, RequestStatus.CANCELLED, CANCELLED_BY_USER)

    def _transition(
        self,
        actor_id: int,
        request: BorrowRequest,
        target: RequestStatus,
        reason: Optional[str],
    ) -> BorrowRequest:
        if reason is not None and len(reason) > MAX_REASON_LENGTH:
            raise ValidationError(f"reason must be at most {MAX_REASON_LENGTH} characters")
        ensure_transition(REQUEST_TRANSITIONS, request.status, target, "Request")

        affected = (
            self.db.query(BorrowRequest)
            .filter(BorrowRequest.id == request.id, BorrowRequest.status == RequestStatus.PENDING)
            .update(
                {
                    BorrowRequest.status: target,
                    BorrowRequest.processed_by: actor_id,
                    BorrowRequest.processed_at: utcnow(),
                    BorrowRequest.rejection_reason: reason,
                },
                synchronize_session=False,
            )
        )
        self.db.refresh(request)
        if not affected:
            raise ConflictError(f"Request already processed with status: {request.status.value}")
        logger.info("Request %s moved to %s by user %s", request.uuid, target.value, actor_id)
        return request
