"""
SQLAlchemy database models.
Defines the newsletter job queue, worker sessions, contacts and distribution lists.
"""

from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from mailqueue.constants import (
    DEFAULT_MAX_RETRIES,
    JobStatus,
    SessionStatus,
)

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _enum_values(enum_cls) -> list[str]:
    return [e.value for e in enum_cls]


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


distribution_list_contacts = Table(
    "distribution_list_contacts",
    Base.metadata,
    Column(
        "list_id",
        Uuid(as_uuid=True),
        ForeignKey("distribution_lists.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "contact_id",
        Integer,
        ForeignKey("contacts.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class Contact(Base):
    """A recipient candidate. Only active contacts are ever resolved."""

    __tablename__ = "contacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    first_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    email: Mapped[str | None] = mapped_column(String(320), nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    lists: Mapped[list["DistributionList"]] = relationship(
        secondary=distribution_list_contacts,
        back_populates="contacts",
    )

    def __repr__(self) -> str:
        return f"Contact(id={self.id}, email={self.email}, active={self.is_active})"


class DistributionList(Base):
    """A named group of contacts that newsletter jobs target."""

    __tablename__ = "distribution_lists"

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    contacts: Mapped[list[Contact]] = relationship(
        secondary=distribution_list_contacts,
        back_populates="lists",
    )

    def __repr__(self) -> str:
        return f"DistributionList(id={self.id}, name={self.name}, active={self.is_active})"


class NewsletterJob(Base):
    """
    A newsletter send request and its progress.

    This is the authoritative source of truth for job state. Status
    transitions follow JOB_TRANSITIONS and are applied with conditional
    updates by JobRepository.

    Key constraints:
    - sent_count + failed_count <= total_recipients once total is known
    - retry_count never exceeds max_retries for a non-terminal job
    """

    __tablename__ = "newsletter_jobs"

    # Primary key
    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
        nullable=False,
    )

    # Content
    subject: Mapped[str] = mapped_column(String(998), nullable=False)
    html_content: Mapped[str] = mapped_column(Text, nullable=False)
    text_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    list_ids: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)

    # Status
    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="newsletter_job_status",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=JobStatus.PENDING,
        index=True,
    )

    # Progress
    total_recipients: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sent_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Retry tracking
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_MAX_RETRIES,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Scheduling and ownership
    scheduled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )

    __table_args__ = (
        # Index for queue polling (oldest pending first)
        Index("ix_newsletter_jobs_queue_poll", "status", "created_at"),
    )

    @property
    def is_retryable(self) -> bool:
        """Check if the job has attempts left."""
        return self.retry_count < self.max_retries

    def __repr__(self) -> str:
        return (
            f"NewsletterJob(id={self.id}, status={self.status}, "
            f"sent={self.sent_count}/{self.total_recipients}, "
            f"retry={self.retry_count}/{self.max_retries})"
        )


class WorkerSession(Base):
    """
    A worker process's lease on the exclusive worker role.

    At most one session in STARTING or RUNNING is expected at any time. A
    session whose last_heartbeat_at goes stale is reclaimed as CRASHED by
    the next worker to start.
    """

    __tablename__ = "worker_sessions"

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
        nullable=False,
    )
    instance_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    hostname: Mapped[str] = mapped_column(String(255), nullable=False)
    pid: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[SessionStatus] = mapped_column(
        Enum(
            SessionStatus,
            name="worker_session_status",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=SessionStatus.STARTING,
        index=True,
    )
    last_heartbeat_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    # Current job attribution (operator visibility only)
    current_job_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    current_job_subject: Mapped[str | None] = mapped_column(String(998), nullable=True)

    # Lifetime counters
    jobs_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    jobs_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    stopped_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # "metadata" is reserved on declarative classes
    environment: Mapped[dict] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
    )

    def __repr__(self) -> str:
        return (
            f"WorkerSession(id={self.id}, instance={self.instance_id}, "
            f"status={self.status}, processed={self.jobs_processed}, failed={self.jobs_failed})"
        )
