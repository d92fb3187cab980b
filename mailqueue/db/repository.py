"""
Repositories for newsletter jobs and recipients.
Implements the data access patterns for the job queue and contact lookup.
"""

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Sequence
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mailqueue.constants import (
    DEFAULT_JOB_LIST_LIMIT,
    DEFAULT_MAX_RETRIES,
    JOB_TRANSITIONS,
    TERMINAL_JOB_STATUSES,
    JobStatus,
)
from mailqueue.db.models import (
    Contact,
    DistributionList,
    NewsletterJob,
    distribution_list_contacts,
    utcnow,
)
from mailqueue.errors import InvalidStateError, JobNotFoundError

logger = logging.getLogger(__name__)


class JobRepository:
    """
    Repository for newsletter job database operations.

    Implements atomic operations for:
    - Job submission
    - Next-job lookup (oldest pending job with retries left)
    - Compare-and-swap claim (PENDING -> PROCESSING)
    - Conditional status transitions (JOB_TRANSITIONS)
    - Retry counting
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    async def create_job(
        self,
        subject: str,
        html_content: str,
        list_ids: Iterable[UUID | str],
        text_content: str | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        scheduled_at: datetime | None = None,
        created_by: str | None = None,
    ) -> NewsletterJob:
        """
        Create a new pending job.

        Args:
            subject: Email subject line.
            html_content: HTML body sent to every recipient.
            list_ids: Target distribution list identifiers.
            text_content: Optional plain-text body.
            max_retries: Attempts allowed before the job becomes ERROR.
            scheduled_at: Optional earliest processing time.
            created_by: Optional submitter identifier.

        Returns:
            The new NewsletterJob.
        """
        job = NewsletterJob(
            subject=subject,
            html_content=html_content,
            text_content=text_content or None,
            list_ids=[str(list_id) for list_id in list_ids],
            status=JobStatus.PENDING,
            total_recipients=0,
            sent_count=0,
            failed_count=0,
            retry_count=0,
            max_retries=max_retries,
            scheduled_at=scheduled_at,
            created_by=created_by,
        )
        self._session.add(job)
        await self._session.flush()

        logger.info(
            "Created newsletter job",
            extra={"job_id": str(job.id), "list_ids": job.list_ids},
        )
        return job

    async def get_job(self, job_id: UUID) -> NewsletterJob | None:
        """
        Get a job by ID, always reading the current row.

        Args:
            job_id: The job UUID.

        Returns:
            The NewsletterJob or None if not found.
        """
        stmt = (
            select(NewsletterJob)
            .where(NewsletterJob.id == job_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        status: JobStatus | None = None,
        limit: int = DEFAULT_JOB_LIST_LIMIT,
    ) -> Sequence[NewsletterJob]:
        """
        List jobs, newest first, with an optional status filter.

        Args:
            status: Optional status filter.
            limit: Maximum number of jobs to return.

        Returns:
            List of jobs.
        """
        stmt = select(NewsletterJob).order_by(NewsletterJob.created_at.desc()).limit(limit)
        if status is not None:
            stmt = stmt.where(NewsletterJob.status == status)

        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def get_next_job(self, now: datetime | None = None) -> NewsletterJob | None:
        """
        Get the oldest pending job that still has retries left.

        This is a point-in-time read, not a lock. The claim is confirmed by
        the conditional PENDING -> PROCESSING transition in update_progress.
        Jobs scheduled in the future are skipped.

        Args:
            now: Reference time for scheduled jobs. Defaults to the current time.

        Returns:
            The next job or None if the queue is empty.
        """
        now = now or utcnow()
        stmt = (
            select(NewsletterJob)
            .where(
                and_(
                    NewsletterJob.status == JobStatus.PENDING,
                    NewsletterJob.retry_count < NewsletterJob.max_retries,
                    or_(
                        NewsletterJob.scheduled_at.is_(None),
                        NewsletterJob.scheduled_at <= now,
                    ),
                )
            )
            .order_by(NewsletterJob.created_at.asc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def claim_job(self, job_id: UUID) -> NewsletterJob:
        """
        Claim a pending job for processing.

        The write is conditional on the job still being PENDING, so of two
        callers holding the same snapshot exactly one wins. Counters are reset
        and started_at is stamped.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidStateError: If the job is no longer pending.
        """
        now = utcnow()
        stmt = (
            update(NewsletterJob)
            .where(
                and_(
                    NewsletterJob.id == job_id,
                    NewsletterJob.status == JobStatus.PENDING,
                )
            )
            .values(
                status=JobStatus.PROCESSING,
                sent_count=0,
                failed_count=0,
                started_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)

        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        if result.rowcount == 0:
            raise InvalidStateError(f"Cannot claim job {job_id}: status is '{job.status}'")

        logger.info("Job claimed", extra={"job_id": str(job_id)})
        return job

    async def update_progress(
        self,
        job_id: UUID,
        status: JobStatus,
        sent_count: int,
        failed_count: int,
        total_recipients: int | None = None,
        error_message: str | None = None,
    ) -> NewsletterJob:
        """
        Set a job's status and counters.

        The update only applies when the current status is a legal source for
        the target status, so progress is only written to a claimed job.
        Moving to a terminal status stamps completed_at.

        Args:
            job_id: The job UUID.
            status: Target status.
            sent_count: Emails accepted by the transport so far.
            failed_count: Emails rejected so far.
            total_recipients: Valid recipient count, once known.
            error_message: Optional error to record on the job.

        Returns:
            The updated job.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidStateError: If the transition is not allowed.
        """
        now = utcnow()
        values: dict = {
            "status": status,
            "sent_count": sent_count,
            "failed_count": failed_count,
            "updated_at": now,
        }

        if total_recipients is not None:
            values["total_recipients"] = total_recipients

        if status in TERMINAL_JOB_STATUSES:
            values["completed_at"] = now

        if error_message:
            values["error_message"] = error_message

        stmt = (
            update(NewsletterJob)
            .where(
                and_(
                    NewsletterJob.id == job_id,
                    NewsletterJob.status.in_(list(JOB_TRANSITIONS[status])),
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)

        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        if result.rowcount == 0:
            raise InvalidStateError(
                f"Cannot move job {job_id} from '{job.status}' to '{status}'"
            )

        logger.info(
            "Job progress updated",
            extra={
                "job_id": str(job_id),
                "status": str(status),
                "sent_count": sent_count,
                "failed_count": failed_count,
            },
        )
        return job

    async def increment_retry_count(self, job_id: UUID) -> int:
        """
        Atomically increment a job's retry count.

        Args:
            job_id: The job UUID.

        Returns:
            The new retry count, re-read from the database.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        stmt = (
            update(NewsletterJob)
            .where(NewsletterJob.id == job_id)
            .values(
                retry_count=NewsletterJob.retry_count + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            raise JobNotFoundError(job_id)

        return await self.get_retry_count(job_id)

    async def get_retry_count(self, job_id: UUID) -> int:
        """
        Read a job's current retry count.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        stmt = select(NewsletterJob.retry_count).where(NewsletterJob.id == job_id)
        result = await self._session.execute(stmt)
        retry_count = result.scalar_one_or_none()
        if retry_count is None:
            raise JobNotFoundError(job_id)
        return retry_count

    async def cancel_job(self, job_id: UUID) -> NewsletterJob:
        """
        Cancel a pending job.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidStateError: If the job is not pending.
        """
        job = await self.update_progress(job_id, JobStatus.CANCELLED, 0, 0)
        logger.info("Job cancelled", extra={"job_id": str(job_id)})
        return job

    async def get_status_counts(self) -> dict[str, int]:
        """
        Get job counts by status.

        Returns:
            Dictionary of status -> count.
        """
        stmt = select(NewsletterJob.status, func.count()).group_by(NewsletterJob.status)
        result = await self._session.execute(stmt)
        return {JobStatus(status).value: count for status, count in result.all()}

    async def get_delivery_totals(self) -> tuple[int, int]:
        """
        Get emails sent and failed across completed jobs.

        Returns:
            Tuple of (sent, failed).
        """
        stmt = select(
            func.coalesce(func.sum(NewsletterJob.sent_count), 0),
            func.coalesce(func.sum(NewsletterJob.failed_count), 0),
        ).where(NewsletterJob.status == JobStatus.COMPLETED)
        result = await self._session.execute(stmt)
        sent, failed = result.one()
        return int(sent), int(failed)


class ContactRepository:
    """Read-only access to contacts through their distribution lists."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_active_contacts_in_lists(
        self,
        list_ids: Sequence[UUID],
    ) -> Sequence[Contact]:
        """
        Get active contacts belonging to the given active lists.

        A contact that belongs to several of the lists is returned once per
        membership; deduplication is left to the caller.

        Args:
            list_ids: Distribution list identifiers.

        Returns:
            Contacts ordered by list creation time, then contact id.
        """
        if not list_ids:
            return []

        stmt = (
            select(Contact)
            .join(
                distribution_list_contacts,
                distribution_list_contacts.c.contact_id == Contact.id,
            )
            .join(
                DistributionList,
                DistributionList.id == distribution_list_contacts.c.list_id,
            )
            .where(
                and_(
                    DistributionList.id.in_(list_ids),
                    DistributionList.is_active.is_(True),
                    Contact.is_active.is_(True),
                )
            )
            .order_by(DistributionList.created_at.asc(), Contact.id.asc())
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()
