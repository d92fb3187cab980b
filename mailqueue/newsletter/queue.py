"""
Newsletter queue operations.

Submission, lookup, cancellation and processing of newsletter jobs. A
processing attempt resolves recipients, dispatches the emails in chunks and
records the outcome; any failure before dispatch completes is converted into
a retry (back to PENDING) or a terminal ERROR once max_retries is reached.
"""

import logging
import time
from typing import Sequence
from uuid import UUID

from mailqueue.constants import (
    DEFAULT_JOB_LIST_LIMIT,
    DEFAULT_MAX_RETRIES,
    SPAN_PROCESS_JOB,
    JobStatus,
)
from mailqueue.db.connection import Database
from mailqueue.db.models import NewsletterJob
from mailqueue.db.repository import JobRepository
from mailqueue.email.dispatcher import BatchDispatcher
from mailqueue.errors import InvalidStateError, JobNotFoundError, NoRecipientsError
from mailqueue.newsletter.resolver import RecipientResolver
from mailqueue.observability.metrics import get_metrics
from mailqueue.observability.tracing import get_tracer
from mailqueue.types.contact import ContactRecord
from mailqueue.types.email import OutboundMessage
from mailqueue.types.job import (
    CreateJobRequest,
    CreateJobResponse,
    JobRecord,
    ProcessJobResult,
    QueueStats,
)

logger = logging.getLogger(__name__)

# Number of recipient errors included in the completion log
ERROR_SAMPLE_SIZE = 5


class NewsletterQueue:
    """
    Core queue operations over the job store.

    The worker loop is the only caller of the processing methods; the
    others back an operator-facing boundary layer.
    """

    def __init__(
        self,
        database: Database,
        resolver: RecipientResolver,
        dispatcher: BatchDispatcher,
        from_address: str | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        """
        Args:
            database: Store handle.
            resolver: Recipient resolver.
            dispatcher: Batch dispatcher.
            from_address: Sender address for newsletter emails.
            max_retries: Attempts given to new jobs unless the request overrides it.
        """
        self._database = database
        self._resolver = resolver
        self._dispatcher = dispatcher
        self._from_address = from_address
        self._max_retries = max_retries
        self._metrics = get_metrics()

    # ------------------------------------------------------------------
    # Submission and lookup
    # ------------------------------------------------------------------

    async def create_job(self, request: CreateJobRequest) -> CreateJobResponse:
        """Queue a newsletter job in PENDING."""
        async with self._database.session() as session:
            job = await JobRepository(session).create_job(
                subject=request.subject,
                html_content=request.html_content,
                text_content=request.text_content,
                list_ids=request.list_ids,
                max_retries=request.max_retries or self._max_retries,
                scheduled_at=request.scheduled_at,
                created_by=request.created_by,
            )
            return CreateJobResponse(id=job.id, status=job.status, created_at=job.created_at)

    async def get_job(self, job_id: UUID) -> JobRecord | None:
        """Get a job by ID."""
        async with self._database.session() as session:
            job = await JobRepository(session).get_job(job_id)
            return JobRecord.model_validate(job) if job is not None else None

    async def list_jobs(
        self,
        status: JobStatus | None = None,
        limit: int = DEFAULT_JOB_LIST_LIMIT,
    ) -> Sequence[JobRecord]:
        """List jobs newest first, optionally filtered by status."""
        async with self._database.session() as session:
            jobs = await JobRepository(session).list_jobs(status=status, limit=limit)
            return [JobRecord.model_validate(job) for job in jobs]

    async def get_stats(self) -> QueueStats:
        """Job counts by status plus email totals across completed jobs."""
        async with self._database.session() as session:
            repo = JobRepository(session)
            counts = await repo.get_status_counts()
            sent, failed = await repo.get_delivery_totals()

        return QueueStats(
            pending=counts.get(JobStatus.PENDING.value, 0),
            processing=counts.get(JobStatus.PROCESSING.value, 0),
            completed=counts.get(JobStatus.COMPLETED.value, 0),
            error=counts.get(JobStatus.ERROR.value, 0),
            cancelled=counts.get(JobStatus.CANCELLED.value, 0),
            emails_sent=sent,
            emails_failed=failed,
        )

    async def cancel_job(self, job_id: UUID) -> bool:
        """
        Cancel a pending job.

        Returns:
            True if the job was cancelled, False if it does not exist.

        Raises:
            InvalidStateError: If the job is not pending.
        """
        try:
            async with self._database.session() as session:
                await JobRepository(session).cancel_job(job_id)
        except JobNotFoundError:
            return False
        return True

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def get_next_job(self) -> NewsletterJob | None:
        """Oldest pending job with retries left, or None."""
        async with self._database.session() as session:
            return await JobRepository(session).get_next_job()

    async def process_next(self) -> ProcessJobResult | None:
        """
        Claim and process the next pending job.

        Returns:
            The processing result, or None if the queue is empty.
        """
        job = await self.get_next_job()
        if job is None:
            return None
        return await self.process_job(job)

    async def process_job_by_id(self, job_id: UUID) -> ProcessJobResult:
        """
        Process a specific job now.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidStateError: If the job is not pending.
        """
        async with self._database.session() as session:
            job = await JobRepository(session).get_job(job_id)

        if job is None:
            raise JobNotFoundError(job_id)
        if job.status != JobStatus.PENDING:
            raise InvalidStateError(
                f"Only pending jobs can be processed; job {job_id} is '{job.status}'"
            )
        return await self.process_job(job)

    async def process_job(self, job: NewsletterJob) -> ProcessJobResult:
        """
        Run one processing attempt for a job.

        Partial recipient failures still complete the job; only failures
        before dispatch finishes (store errors, no recipients, unexpected
        exceptions) count as a failed attempt.
        """
        started = time.monotonic()
        logger.info(
            "Processing job",
            extra={
                "job_id": str(job.id),
                "list_ids": job.list_ids,
                "retry_count": job.retry_count,
            },
        )

        with get_tracer().start_as_current_span(SPAN_PROCESS_JOB) as span:
            span.set_attribute("job_id", str(job.id))
            span.set_attribute("retry_count", job.retry_count)

            try:
                async with self._database.session() as session:
                    await JobRepository(session).claim_job(job.id)
            except InvalidStateError as e:
                # Lost the claim; not an attempt
                logger.warning(
                    "Job is no longer pending, skipping",
                    extra={"job_id": str(job.id), "error": str(e)},
                )
                self._metrics.record_job_finished("skipped", time.monotonic() - started)
                return ProcessJobResult(success=False, job_id=job.id, error=str(e), skipped=True)

            try:
                result = await self._run(job)
            except Exception as e:
                span.record_exception(e)
                return await self._handle_failure(job, e, started)

        self._metrics.record_job_finished("completed", time.monotonic() - started)
        return result

    async def _run(self, job: NewsletterJob) -> ProcessJobResult:
        recipients = await self._resolver.resolve(job.list_ids)
        if not recipients:
            raise NoRecipientsError(
                "No active contacts with valid email addresses found in selected distribution lists"
            )

        total = len(recipients)
        logger.info(
            "Found valid recipients",
            extra={"job_id": str(job.id), "total": total},
        )
        await self._update(job.id, JobStatus.PROCESSING, 0, 0, total_recipients=total)

        messages = [self._build_message(job, recipient) for recipient in recipients]

        async def persist_progress(successful: int, failed: int) -> None:
            try:
                await self._update(job.id, JobStatus.PROCESSING, successful, failed)
            except Exception:
                logger.exception(
                    "Failed to persist job progress",
                    extra={"job_id": str(job.id)},
                )

        outcome = await self._dispatcher.send_batch(messages, on_progress=persist_progress)

        await self._update(
            job.id,
            JobStatus.COMPLETED,
            outcome.successful,
            outcome.failed,
            total_recipients=total,
        )

        logger.info(
            "Job completed",
            extra={
                "job_id": str(job.id),
                "successful": outcome.successful,
                "failed": outcome.failed,
            },
        )
        if outcome.errors:
            logger.warning(
                "Errors found during sending",
                extra={
                    "job_id": str(job.id),
                    "count": len(outcome.errors),
                    "samples": [
                        {"email": err.email, "error": err.error}
                        for err in outcome.errors[:ERROR_SAMPLE_SIZE]
                    ],
                },
            )

        return ProcessJobResult(
            success=True,
            job_id=job.id,
            sent=outcome.successful,
            failed=outcome.failed,
            total=total,
        )

    async def _handle_failure(
        self,
        job: NewsletterJob,
        error: Exception,
        started: float,
    ) -> ProcessJobResult:
        """Count the failed attempt and move the job to PENDING or ERROR."""
        logger.error(
            "Error processing job",
            exc_info=error,
            extra={"job_id": str(job.id), "error": str(error)},
        )
        error_message = str(error) or type(error).__name__

        async with self._database.session() as session:
            repo = JobRepository(session)
            retry_count = await repo.increment_retry_count(job.id)
            current = await repo.get_job(job.id)

            if not current.is_retryable:
                await repo.update_progress(
                    job.id, JobStatus.ERROR, 0, 0, error_message=error_message
                )
                outcome = "error"
                logger.error(
                    "Job marked as error (max retries reached)",
                    extra={"job_id": str(job.id), "retry_count": retry_count},
                )
            else:
                await repo.update_progress(
                    job.id, JobStatus.PENDING, 0, 0, error_message=error_message
                )
                outcome = "retry"
                logger.info(
                    "Job will retry",
                    extra={
                        "job_id": str(job.id),
                        "attempt": retry_count + 1,
                        "max_retries": job.max_retries,
                    },
                )

        self._metrics.record_job_finished(outcome, time.monotonic() - started)
        return ProcessJobResult(success=False, job_id=job.id, error=error_message)

    async def _update(
        self,
        job_id: UUID,
        status: JobStatus,
        sent_count: int,
        failed_count: int,
        total_recipients: int | None = None,
    ) -> None:
        async with self._database.session() as session:
            await JobRepository(session).update_progress(
                job_id,
                status,
                sent_count,
                failed_count,
                total_recipients=total_recipients,
            )

    def _build_message(self, job: NewsletterJob, recipient: ContactRecord) -> OutboundMessage:
        return OutboundMessage(
            to=recipient.email,
            subject=job.subject,
            html=job.html_content,
            text=job.text_content or None,
            from_address=self._from_address,
        )
