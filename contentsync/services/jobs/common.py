from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentsync.core.errors import JobRunStateError
from contentsync.services.job_ledger import complete_failure


logger = logging.getLogger(__name__)


async def record_failure(
    session_factory: async_sessionmaker[AsyncSession],
    job_id: str,
    error_code: str,
    exc: BaseException,
) -> None:
    # Best-effort ledger write; a run that cannot be marked failed shows up in list_stale_running.
    message = str(exc) or exc.__class__.__name__
    cause = repr(exc.__cause__) if exc.__cause__ is not None else None
    try:
        async with session_factory() as session:
            await complete_failure(
                session,
                job_id,
                error_code,
                message,
                cause=cause,
                context={"exception": exc.__class__.__name__},
            )
    except (JobRunStateError, SQLAlchemyError):
        logger.exception("job_failure_not_recorded job_id=%s code=%s", job_id, error_code)
