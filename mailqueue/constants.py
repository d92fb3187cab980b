"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Newsletter job lifecycle states.

    State transitions:
    - PENDING -> PROCESSING (claimed by the worker)
    - PROCESSING -> PROCESSING (progress update)
    - PROCESSING -> COMPLETED (dispatch finished, possibly with failed recipients)
    - PROCESSING -> PENDING (retry)
    - PROCESSING -> ERROR (max retries reached)
    - PENDING -> CANCELLED (operator)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


class SessionStatus(StrEnum):
    """
    Worker session states.

    Graceful path: STARTING -> RUNNING -> STOPPING -> STOPPED.
    Staleness path: STARTING | RUNNING | STOPPING -> CRASHED, applied by
    another worker's startup sweep, never by the owner.
    """

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    CRASHED = "crashed"


# Allowed source states for each target job status.
# PENDING -> PROCESSING only happens through JobRepository.claim_job.
JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PROCESSING: frozenset({JobStatus.PROCESSING}),
    JobStatus.COMPLETED: frozenset({JobStatus.PROCESSING}),
    JobStatus.ERROR: frozenset({JobStatus.PROCESSING}),
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING}),
    JobStatus.CANCELLED: frozenset({JobStatus.PENDING}),
}

TERMINAL_JOB_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.CANCELLED}
)

# Sessions that block a new worker from starting
ACTIVE_SESSION_STATUSES = frozenset({SessionStatus.STARTING, SessionStatus.RUNNING})

# Sessions the staleness sweep may reclaim
SWEEPABLE_SESSION_STATUSES = frozenset(
    {SessionStatus.STARTING, SessionStatus.RUNNING, SessionStatus.STOPPING}
)

# Sessions that are over; no further writes apply to them
TERMINAL_SESSION_STATUSES = frozenset({SessionStatus.STOPPED, SessionStatus.CRASHED})

# Default values
DEFAULT_MAX_RETRIES = 3
DEFAULT_BATCH_SIZE = 100
DEFAULT_BATCH_DELAY_SECONDS = 0.1
DEFAULT_STALE_THRESHOLD_SECONDS = 120
DEFAULT_JOB_LIST_LIMIT = 50

# Regex used to screen recipient addresses before sending
EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"

# Metrics names
METRIC_JOBS_FINISHED = "newsletter_jobs_finished_total"
METRIC_JOB_DURATION = "newsletter_job_duration_seconds"
METRIC_EMAILS_SENT = "newsletter_emails_total"
METRIC_BATCH_CHUNKS = "newsletter_batch_chunks_total"
METRIC_STALE_SESSIONS = "worker_stale_sessions_reclaimed_total"
METRIC_HEARTBEATS = "worker_heartbeats_total"

# Trace span names
SPAN_PROCESS_JOB = "process_job"
SPAN_RESOLVE_RECIPIENTS = "resolve_recipients"
SPAN_DISPATCH_CHUNK = "dispatch_chunk"
