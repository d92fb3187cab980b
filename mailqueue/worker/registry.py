"""
Worker session registry.

Keeps at most one live worker. On startup a worker first reclaims sessions
whose heartbeat went stale, then refuses to start while another session is
starting or running, and finally registers its own session. After startup
all bookkeeping is best effort: a failed write is logged and the worker
keeps polling, unless the heartbeat finds the session is no longer live.
"""

import logging
import os
import platform
import time
from datetime import timedelta
from typing import Any

from mailqueue.constants import DEFAULT_STALE_THRESHOLD_SECONDS, SessionStatus
from mailqueue.db.connection import Database
from mailqueue.db.models import WorkerSession, utcnow
from mailqueue.db.sessions import WorkerSessionRepository
from mailqueue.errors import DuplicateWorkerError, SessionLostError
from mailqueue.observability.metrics import get_metrics
from mailqueue.types.session import SessionHandle

logger = logging.getLogger(__name__)


def generate_instance_id(hostname: str, pid: int) -> str:
    """Instance id in the form hostname-pid-epoch_ms."""
    return f"{hostname}-{pid}-{int(time.time() * 1000)}"


class SessionRegistry:
    """
    Leadership and liveness protocol for the worker.

    Every method takes the caller's SessionHandle, so the registry itself
    holds no per-worker state.
    """

    def __init__(
        self,
        database: Database,
        stale_threshold_seconds: int = DEFAULT_STALE_THRESHOLD_SECONDS,
        metadata: dict[str, Any] | None = None,
    ):
        """
        Args:
            database: Store handle.
            stale_threshold_seconds: Heartbeat age after which a session is
                considered dead.
            metadata: Extra environment details stored on new sessions.
        """
        self._database = database
        self.stale_threshold = timedelta(seconds=stale_threshold_seconds)
        self._metadata = metadata or {}
        self._metrics = get_metrics()

    def _environment(self) -> dict[str, Any]:
        return {
            "python_version": platform.python_version(),
            "platform": platform.system().lower(),
            "arch": platform.machine(),
            **self._metadata,
        }

    # ------------------------------------------------------------------
    # Startup (fatal on failure)
    # ------------------------------------------------------------------

    async def sweep_stale_sessions(self) -> int:
        """
        Mark sessions whose heartbeat is older than the threshold as CRASHED.

        Returns:
            Number of sessions reclaimed.
        """
        stale_before = utcnow() - self.stale_threshold
        async with self._database.session() as session:
            count = await WorkerSessionRepository(session).mark_stale_sessions(stale_before)

        if count > 0:
            self._metrics.record_stale_sessions(count)
            logger.warning(
                f"Marked {count} stale session(s) as crashed",
                extra={"stale_before": stale_before.isoformat()},
            )
        return count

    async def get_active_sessions(self) -> list[WorkerSession]:
        """Sessions currently starting or running."""
        async with self._database.session() as session:
            return list(await WorkerSessionRepository(session).get_active_sessions())

    async def start_session(self) -> SessionHandle:
        """
        Claim the exclusive worker role.

        Raises:
            DuplicateWorkerError: If another session is starting or running
                within the heartbeat window.
            StoreError: If the store cannot be reached.
        """
        await self.sweep_stale_sessions()

        active = await self.get_active_sessions()
        if active:
            blocking = active[0]
            logger.error(
                "Duplicate worker detected",
                extra={
                    "blocking_session_id": str(blocking.id),
                    "blocking_instance_id": blocking.instance_id,
                    "blocking_hostname": blocking.hostname,
                    "blocking_pid": blocking.pid,
                    "blocking_status": str(blocking.status),
                    "blocking_last_heartbeat_at": str(blocking.last_heartbeat_at),
                },
            )
            raise DuplicateWorkerError(
                session_id=blocking.id,
                instance_id=blocking.instance_id,
                hostname=blocking.hostname,
                pid=blocking.pid,
                status=str(blocking.status),
                started_at=blocking.started_at,
                last_heartbeat_at=blocking.last_heartbeat_at,
            )

        hostname = os.uname().nodename
        pid = os.getpid()
        instance_id = generate_instance_id(hostname, pid)

        async with self._database.session() as session:
            worker_session = await WorkerSessionRepository(session).create_session(
                instance_id=instance_id,
                hostname=hostname,
                pid=pid,
                environment=self._environment(),
            )

        handle = SessionHandle(
            session_id=worker_session.id,
            instance_id=worker_session.instance_id,
            hostname=worker_session.hostname,
            pid=worker_session.pid,
            started_at=worker_session.started_at,
        )
        logger.info(
            "Worker session started",
            extra={
                "session_id": str(handle.session_id),
                "instance_id": handle.instance_id,
                "hostname": handle.hostname,
                "pid": handle.pid,
            },
        )
        return handle

    async def mark_running(self, handle: SessionHandle) -> None:
        """
        Move the session from STARTING to RUNNING.

        Raises:
            StoreError: If the update fails.
            SessionLostError: If the session was swept before it could run.
        """
        async with self._database.session() as session:
            updated = await WorkerSessionRepository(session).update_session(
                handle.session_id,
                status=SessionStatus.RUNNING,
            )
        if not updated:
            raise SessionLostError(handle.session_id)
        logger.info(
            "Worker session marked as running",
            extra={"session_id": str(handle.session_id)},
        )

    # ------------------------------------------------------------------
    # Best-effort bookkeeping
    # ------------------------------------------------------------------

    async def _update(self, handle: SessionHandle, action: str, **values: Any) -> bool:
        try:
            async with self._database.session() as session:
                return await WorkerSessionRepository(session).update_session(
                    handle.session_id, **values
                )
        except Exception:
            logger.exception(
                f"Error {action}",
                extra={"session_id": str(handle.session_id)},
            )
            return False

    async def heartbeat(self, handle: SessionHandle) -> bool:
        """
        Refresh last_heartbeat_at. Called every poll cycle.

        A store failure is logged and reported as False. A write that matches
        no live row means the session was swept as crashed or stopped.

        Raises:
            SessionLostError: If the session is no longer live.
        """
        try:
            async with self._database.session() as session:
                updated = await WorkerSessionRepository(session).update_session(
                    handle.session_id
                )
        except Exception:
            logger.exception(
                "Error updating heartbeat",
                extra={"session_id": str(handle.session_id)},
            )
            return False

        if not updated:
            logger.error(
                "Worker session is no longer live",
                extra={"session_id": str(handle.session_id)},
            )
            raise SessionLostError(handle.session_id)

        self._metrics.record_heartbeat()
        return True

    async def set_current_job(self, handle: SessionHandle, job_id: Any, subject: str) -> bool:
        """Record the job being processed, for operator visibility."""
        updated = await self._update(
            handle,
            "setting current job",
            current_job_id=job_id,
            current_job_subject=subject,
        )
        if updated:
            logger.info(
                "Current job set",
                extra={"session_id": str(handle.session_id), "job_id": str(job_id)},
            )
        return updated

    async def clear_current_job(self, handle: SessionHandle) -> bool:
        """Clear the current job once processing ends."""
        return await self._update(
            handle,
            "clearing current job",
            current_job_id=None,
            current_job_subject=None,
        )

    async def record_job_outcome(self, handle: SessionHandle, success: bool) -> bool:
        """Increment jobs_processed or jobs_failed."""
        try:
            async with self._database.session() as session:
                return await WorkerSessionRepository(session).increment_counter(
                    handle.session_id, success
                )
        except Exception:
            logger.exception(
                "Error incrementing job counter",
                extra={"session_id": str(handle.session_id), "success": success},
            )
            return False

    async def mark_stopping(self, handle: SessionHandle) -> bool:
        """Move the session to STOPPING before shutdown drains."""
        updated = await self._update(
            handle, "marking session as stopping", status=SessionStatus.STOPPING
        )
        if updated:
            logger.info(
                "Worker session marked as stopping",
                extra={"session_id": str(handle.session_id)},
            )
        return updated

    async def stop_session(self, handle: SessionHandle) -> bool:
        """Move the session to STOPPED and clear its current job."""
        updated = await self._update(
            handle,
            "stopping session",
            status=SessionStatus.STOPPED,
            stopped_at=utcnow(),
            current_job_id=None,
            current_job_subject=None,
        )
        if updated:
            logger.info(
                "Worker session stopped",
                extra={"session_id": str(handle.session_id)},
            )
        return updated

    async def get_session(self, handle: SessionHandle) -> WorkerSession | None:
        """Current row for the session (counters, status), or None on failure."""
        try:
            async with self._database.session() as session:
                return await WorkerSessionRepository(session).get_session(handle.session_id)
        except Exception:
            logger.exception(
                "Error getting session stats",
                extra={"session_id": str(handle.session_id)},
            )
            return None
