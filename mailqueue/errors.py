"""
Exception hierarchy for the mail queue.

Job-level failures (ResolutionError, NoRecipientsError and unexpected errors)
are converted into retry/error transitions by the queue and never stop the
worker. DuplicateWorkerError and StoreError raised during startup are fatal;
SessionLostError stops a running worker.
"""

from datetime import datetime
from uuid import UUID


class MailQueueError(Exception):
    """Base class for all mail queue errors."""


class StoreError(MailQueueError):
    """The underlying persistence layer failed."""


class ResolutionError(MailQueueError):
    """Recipients could not be loaded from the store."""


class NoRecipientsError(MailQueueError):
    """A job's distribution lists yielded no active contact with a valid email."""


class DispatchError(MailQueueError):
    """Transport-level send failure; reduces the success count, never aborts a job."""


class InvalidStateError(MailQueueError):
    """A job status transition is not allowed from its current state."""


class JobNotFoundError(MailQueueError):
    """No job exists with the given identifier."""

    def __init__(self, job_id: UUID):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class DuplicateWorkerError(MailQueueError):
    """
    Another worker session is alive.

    Carries the blocking session's identity so an operator can find and stop
    the other process.
    """

    def __init__(
        self,
        session_id: UUID,
        instance_id: str,
        hostname: str,
        pid: int,
        status: str,
        started_at: datetime | None,
        last_heartbeat_at: datetime | None,
    ):
        self.session_id = session_id
        self.instance_id = instance_id
        self.hostname = hostname
        self.pid = pid
        self.status = status
        self.started_at = started_at
        self.last_heartbeat_at = last_heartbeat_at
        super().__init__(
            f"Another worker session is already running: id={session_id} "
            f"instance={instance_id} host={hostname} pid={pid} status={status} "
            f"started={started_at} last_heartbeat={last_heartbeat_at}"
        )


class SessionLostError(MailQueueError):
    """
    The worker's own session is no longer live.

    Raised when a session write matches no live row: the session was swept as
    crashed (or stopped) by someone else, so this worker must stop polling.
    """

    def __init__(self, session_id: UUID):
        super().__init__(f"Worker session {session_id} is no longer live")
        self.session_id = session_id
