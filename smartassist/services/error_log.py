"""Client-side error reports from student editors."""
from typing import Any, Dict, List, Optional

from smartassist.core.logging import get_logger
from smartassist.domain.dashboard import Table
from smartassist.domain.student import ErrorLog

logger = get_logger(__name__)


class ErrorLogService:

    def __init__(self, store):
        self.store = store

    async def log(
        self,
        student_id: str,
        message: str,
        stack: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[ErrorLog]:
        """Record an error report. Never raises; returns None if it could not be stored."""
        entry = ErrorLog(
            student_id=student_id,
            error_message=message,
            error_stack=stack,
            context=context or {},
        )
        try:
            row = await self.store.insert(Table.ERROR_LOGS, entry.model_dump())
        except Exception as exc:
            logger.error(f"Failed to log error: {exc}", extra={"student_id": student_id})
            return None
        return ErrorLog.model_validate(row)

    async def list(self, student_id: Optional[str] = None) -> List[ErrorLog]:
        filters = {"student_id": student_id} if student_id else None
        rows = await self.store.select(Table.ERROR_LOGS, filters, order_by="created_at", descending=True)
        return [ErrorLog.model_validate(row) for row in rows]
