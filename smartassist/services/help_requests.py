"""Help requests between students and teachers.

A request is created pending and becomes responded when a teacher answers.
The response fields are written in a single update, so a reader never sees
a response without its teacher or timestamp. Responding again overwrites
the previous answer (last write wins) unless the caller passes the
``updated_at`` it last saw, in which case a concurrent answer makes the
write fail with ``ConflictError``.
"""
from datetime import datetime
from typing import Callable, List, Optional

from smartassist.core.errors import ConflictError, NotFoundError, ValidationError
from smartassist.core.logging import get_logger
from smartassist.domain.dashboard import Table
from smartassist.domain.student import HelpRequest, HelpStatus
from smartassist.domain.user import utcnow
from smartassist.infrastructure.store import TableStore

logger = get_logger(__name__)


class HelpRequestChannel:

    def __init__(self, store: TableStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    async def create(self, student_id: str, message: str) -> HelpRequest:
        """Open a pending request.

        Raises:
            ValidationError: If the message is blank
        """
        if not message or not message.strip():
            raise ValidationError("Please enter a help message")
        now = self.clock()
        request = HelpRequest(
            student_id=student_id,
            message=message.strip(),
            created_at=now,
            updated_at=now,
        )
        row = await self.store.insert(Table.HELP_REQUESTS, request.model_dump())
        logger.info("Help request created", extra={"student_id": student_id})
        return HelpRequest.model_validate(row)

    async def respond(
        self,
        request_id: str,
        teacher_id: str,
        response_text: str,
        expected_updated_at: Optional[datetime] = None,
    ) -> HelpRequest:
        """Answer a request.

        Args:
            request_id: Help request row id
            teacher_id: Responding teacher's user id
            response_text: The answer shown to the student
            expected_updated_at: Optional ``updated_at`` the teacher last saw;
                when given, the write only lands if nobody changed the row since

        Raises:
            ValidationError: If the response is blank
            NotFoundError: If the request does not exist
            ConflictError: If ``expected_updated_at`` no longer matches
        """
        if not response_text or not response_text.strip():
            raise ValidationError("Please enter a response message")

        now = self.clock()
        filters = {"id": request_id}
        if expected_updated_at is not None:
            filters["updated_at"] = expected_updated_at

        updated = await self.store.update(
            Table.HELP_REQUESTS,
            filters,
            {
                "response": response_text.strip(),
                "teacher_id": teacher_id,
                "status": HelpStatus.RESPONDED.value,
                "responded_at": now,
                "updated_at": now,
            },
        )
        if not updated:
            existing = await self.store.select_one(Table.HELP_REQUESTS, {"id": request_id}, required=False)
            if existing is None:
                raise NotFoundError("Help request not found", detail=request_id)
            raise ConflictError(
                "Help request was answered by someone else",
                detail=f"updated_at is now {existing.get('updated_at')}"
            )

        logger.info(
            "Help request answered",
            extra={"teacher_id": teacher_id, "student_id": updated[0].get("student_id")}
        )
        return HelpRequest.model_validate(updated[0])

    async def get(self, request_id: str) -> HelpRequest:
        row = await self.store.select_one(Table.HELP_REQUESTS, {"id": request_id})
        return HelpRequest.model_validate(row)

    async def for_student(self, student_id: str) -> List[HelpRequest]:
        """A student's own requests, newest first."""
        rows = await self.store.select(
            Table.HELP_REQUESTS, {"student_id": student_id}, order_by="created_at", descending=True
        )
        return [HelpRequest.model_validate(row) for row in rows]

    async def all(self) -> List[HelpRequest]:
        rows = await self.store.select(Table.HELP_REQUESTS, order_by="created_at", descending=True)
        return [HelpRequest.model_validate(row) for row in rows]

    async def pending(self) -> List[HelpRequest]:
        rows = await self.store.select(
            Table.HELP_REQUESTS, {"status": HelpStatus.PENDING.value}, order_by="created_at"
        )
        return [HelpRequest.model_validate(row) for row in rows]
