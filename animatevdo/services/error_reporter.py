"""Persistent error log.

Every stage failure is copied into ``error_logs`` with its code, service and
technical details so support can look at failures across projects. Writing
the log is best-effort: a failure here is logged and never replaces the
error being reported.
"""

from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from animatevdo.exceptions import ServiceError
from animatevdo.models import ErrorLog
from animatevdo.utils.logging import get_logger

log = get_logger(__name__)


class ErrorReporter:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def report(
        self,
        error: ServiceError,
        service: str | None = None,
        project_id: UUID | None = None,
        user_id: UUID | None = None,
    ) -> None:
        try:
            async with self.session_factory() as db, db.begin():
                db.add(
                    ErrorLog(
                        error_code=error.code.value,
                        error_message=error.message,
                        service=service,
                        project_id=project_id,
                        user_id=user_id,
                        technical_details={
                            **(error.technical_details or {}),
                            "retryable": error.retryable,
                            "user_message": error.user_message,
                        },
                    )
                )
        except Exception as e:
            log.error("error_report_failed", error_code=error.code.value, error=str(e))
