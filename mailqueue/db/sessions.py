"""
Worker session repository.
Durable record of worker liveness used to keep a single active worker.
"""

import logging
from datetime import datetime
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mailqueue.constants import (
    ACTIVE_SESSION_STATUSES,
    SWEEPABLE_SESSION_STATUSES,
    TERMINAL_SESSION_STATUSES,
    SessionStatus,
)
from mailqueue.db.models import WorkerSession, utcnow

logger = logging.getLogger(__name__)


class WorkerSessionRepository:
    """
    Repository for worker session rows.

    Every write touches last_heartbeat_at, so any bookkeeping update also
    counts as a liveness signal.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def mark_stale_sessions(self, stale_before: datetime) -> int:
        """
        Mark live-looking sessions with an old heartbeat as CRASHED.

        Args:
            stale_before: Sessions whose last heartbeat is older than this are stale.

        Returns:
            Number of sessions marked as crashed.
        """
        stmt = (
            update(WorkerSession)
            .where(
                and_(
                    WorkerSession.status.in_(list(SWEEPABLE_SESSION_STATUSES)),
                    WorkerSession.last_heartbeat_at < stale_before,
                )
            )
            .values(status=SessionStatus.CRASHED, stopped_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def get_active_sessions(self) -> Sequence[WorkerSession]:
        """
        Get sessions in STARTING or RUNNING, most recently started first.
        """
        stmt = (
            select(WorkerSession)
            .where(WorkerSession.status.in_(list(ACTIVE_SESSION_STATUSES)))
            .order_by(WorkerSession.started_at.desc())
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def create_session(
        self,
        instance_id: str,
        hostname: str,
        pid: int,
        environment: dict[str, Any],
    ) -> WorkerSession:
        """Insert a new session in STARTING."""
        now = utcnow()
        worker_session = WorkerSession(
            instance_id=instance_id,
            hostname=hostname,
            pid=pid,
            status=SessionStatus.STARTING,
            last_heartbeat_at=now,
            started_at=now,
            jobs_processed=0,
            jobs_failed=0,
            environment=environment,
        )
        self._session.add(worker_session)
        await self._session.flush()
        return worker_session

    async def get_session(self, session_id: UUID) -> WorkerSession | None:
        """Get a session by ID, always reading the current row."""
        stmt = (
            select(WorkerSession)
            .where(WorkerSession.id == session_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def update_session(self, session_id: UUID, **values: Any) -> bool:
        """
        Update a live session and refresh its heartbeat.

        Stopped and crashed sessions are never written, so a worker whose
        session was swept cannot bring it back.

        Args:
            session_id: The session UUID.
            **values: Column values to set.

        Returns:
            True if a live session row was updated.
        """
        values.setdefault("last_heartbeat_at", utcnow())
        stmt = (
            update(WorkerSession)
            .where(
                and_(
                    WorkerSession.id == session_id,
                    WorkerSession.status.not_in(list(TERMINAL_SESSION_STATUSES)),
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def increment_counter(self, session_id: UUID, success: bool) -> bool:
        """Increment jobs_processed or jobs_failed by one."""
        if success:
            values = {"jobs_processed": WorkerSession.jobs_processed + 1}
        else:
            values = {"jobs_failed": WorkerSession.jobs_failed + 1}
        return await self.update_session(session_id, **values)
