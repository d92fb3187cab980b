"""
Worker process for sending newsletter jobs.

The worker claims the exclusive session, then polls the queue on a fixed
interval and processes one job at a time. Jobs are never run concurrently:
email side effects must not be duplicated.
"""

import asyncio
import logging
import signal
import sys
import time

from mailqueue.config import Settings, get_settings
from mailqueue.db import Database
from mailqueue.email import BatchDispatcher, ResendTransport
from mailqueue.email.transport import EmailTransport
from mailqueue.errors import DuplicateWorkerError, SessionLostError, StoreError
from mailqueue.newsletter.queue import NewsletterQueue
from mailqueue.newsletter.resolver import RecipientResolver
from mailqueue.observability.logging import bind_context, setup_logging, unbind_context
from mailqueue.observability.metrics import setup_metrics, start_metrics_server
from mailqueue.observability.tracing import instrument_sqlalchemy, setup_tracing
from mailqueue.types.job import ProcessJobResult
from mailqueue.types.session import SessionHandle
from mailqueue.worker.registry import SessionRegistry

logger = logging.getLogger(__name__)


class Worker:
    """
    Single-writer newsletter worker.

    Features:
    - Exclusive session with heartbeat on every poll cycle
    - One job in flight at a time (idle event)
    - Cancellable poll timer
    - Bounded graceful shutdown on SIGTERM/SIGINT
    """

    def __init__(
        self,
        queue: NewsletterQueue,
        registry: SessionRegistry,
        poll_interval: float = 10.0,
        shutdown_timeout: float = 60.0,
    ):
        """
        Initialize the worker.

        Args:
            queue: Queue operations used to claim and process jobs.
            registry: Session registry for exclusivity and liveness.
            poll_interval: Seconds between poll cycles.
            shutdown_timeout: Longest wait for an in-flight job on shutdown.
        """
        self.queue = queue
        self.registry = registry
        self.poll_interval = poll_interval
        self.shutdown_timeout = shutdown_timeout

        self.session: SessionHandle | None = None
        self.session_lost = False
        self._stop_event = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._poll_task: asyncio.Task | None = None

    @property
    def is_processing(self) -> bool:
        """True while a job is in flight."""
        return not self._idle.is_set()

    async def start(self) -> None:
        """
        Claim the worker session and run until stop() is called.

        Raises:
            DuplicateWorkerError: If another worker is alive.
            StoreError: If the store cannot be reached during startup.
            SessionLostError: If the new session was swept before it ran.
        """
        self.session = await self.registry.start_session()
        await self.registry.mark_running(self.session)
        bind_context(worker_session_id=str(self.session.session_id))

        logger.info(
            "Worker started",
            extra={
                "instance_id": self.session.instance_id,
                "poll_interval": self.poll_interval,
            },
        )

        self._poll_task = asyncio.create_task(self._poll_loop())
        await self._stop_event.wait()
        await self._drain()

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        if self._stop_event.is_set():
            return

        logger.info("Worker stopping")
        if self.session is not None:
            await self.registry.mark_stopping(self.session)
        self._stop_event.set()

    async def _poll_loop(self) -> None:
        """Run a poll cycle, then wait for the interval or a stop signal."""
        while not self._stop_event.is_set():
            try:
                await self.poll_once()
            except Exception as e:
                logger.exception(f"Error in worker poll cycle: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except TimeoutError:
                pass

    async def poll_once(self) -> ProcessJobResult | None:
        """
        One poll cycle: heartbeat, then claim and process the next job.

        A lost session stops the worker instead of processing. A job that
        was claimed elsewhere first is skipped and not counted.

        Returns:
            The processing result, or None if no job was processed.
        """
        if self.session is None:
            raise RuntimeError("Worker session not started")

        try:
            await self.registry.heartbeat(self.session)
        except SessionLostError:
            logger.error("Worker session lost, shutting down")
            self.session_lost = True
            await self.stop()
            return None

        if self.is_processing:
            return None

        self._idle.clear()
        try:
            job = await self.queue.get_next_job()
            if job is None:
                logger.debug("No pending jobs in queue")
                return None

            logger.info(
                "Found pending job",
                extra={
                    "job_id": str(job.id),
                    "subject": job.subject,
                    "list_count": len(job.list_ids),
                    "retry_count": job.retry_count,
                },
            )
            await self.registry.set_current_job(self.session, job.id, job.subject)

            try:
                result = await self.queue.process_job(job)
            finally:
                await self.registry.clear_current_job(self.session)

            if result.skipped:
                return result

            await self.registry.record_job_outcome(self.session, result.success)

            if result.success:
                logger.info(
                    "Job completed successfully",
                    extra={
                        "job_id": str(result.job_id),
                        "sent": result.sent,
                        "failed": result.failed,
                        "total": result.total,
                    },
                )
            else:
                logger.error(
                    "Job processing failed",
                    extra={"job_id": str(result.job_id), "error": result.error},
                )
            return result
        finally:
            self._idle.set()

    async def _drain(self) -> None:
        """Wait (bounded) for the in-flight job, then release the session."""
        if self.is_processing:
            logger.info("Waiting for current job to finish")
            started = time.monotonic()
            try:
                await asyncio.wait_for(self._idle.wait(), timeout=self.shutdown_timeout)
                logger.info(
                    "Current job completed",
                    extra={"waited_seconds": round(time.monotonic() - started, 2)},
                )
            except TimeoutError:
                logger.warning(
                    f"Job still processing after {self.shutdown_timeout}s, forcing shutdown"
                )

        if self._poll_task is not None:
            self._poll_task.cancel()
            await asyncio.gather(self._poll_task, return_exceptions=True)

        if self.session is not None:
            await self.registry.stop_session(self.session)
            unbind_context("worker_session_id")

        logger.info("Worker stopped")


def create_transport(settings: Settings) -> EmailTransport:
    """Build the email transport from settings."""
    if not settings.resend_configured:
        logger.warning("Resend is not fully configured (RESEND_API_KEY / RESEND_FROM_EMAIL)")
    return ResendTransport(
        api_key=settings.resend_api_key,
        default_from=settings.resend_from_email,
    )


def build_worker(
    settings: Settings,
    database: Database,
    transport: EmailTransport,
) -> Worker:
    """
    Wire the worker and its collaborators.

    Everything is constructed here once and passed down explicitly.
    """
    dispatcher = BatchDispatcher(
        transport,
        chunk_size=settings.max_batch_size,
        chunk_delay_seconds=settings.batch_delay_seconds,
    )
    queue = NewsletterQueue(
        database=database,
        resolver=RecipientResolver(database),
        dispatcher=dispatcher,
        from_address=settings.resend_from_email,
        max_retries=settings.max_retries,
    )
    registry = SessionRegistry(
        database,
        stale_threshold_seconds=settings.session_stale_threshold_seconds,
        metadata={
            "environment": settings.environment,
            "poll_interval": settings.worker_poll_interval_seconds,
        },
    )
    return Worker(
        queue=queue,
        registry=registry,
        poll_interval=settings.worker_poll_interval_seconds,
        shutdown_timeout=settings.worker_shutdown_timeout_seconds,
    )


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()
    setup_logging(settings)
    setup_metrics()
    setup_tracing()
    if settings.prometheus_port:
        start_metrics_server(settings.prometheus_port)

    logger.info(
        "Newsletter worker starting",
        extra={
            "environment": settings.environment,
            "poll_interval": settings.worker_poll_interval_seconds,
            "max_retries": settings.max_retries,
            "max_batch_size": settings.max_batch_size,
        },
    )

    database = Database.from_settings(settings)
    if settings.otel_exporter_otlp_endpoint:
        instrument_sqlalchemy(database.engine)

    try:
        await database.ping()
        worker = build_worker(settings, database, create_transport(settings))

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda: asyncio.create_task(worker.stop()),
            )

        await worker.start()
        if worker.session_lost:
            raise SessionLostError(worker.session.session_id)
    finally:
        await database.dispose()


def run() -> None:
    """Run the worker; exit non-zero when startup fails or the session is lost."""
    try:
        asyncio.run(run_async())
    except DuplicateWorkerError as e:
        logger.error(
            "Another worker session is already running. Stop it before starting a new one.",
            extra={"blocking_session_id": str(e.session_id), "blocking_host": e.hostname},
        )
        sys.exit(1)
    except StoreError as e:
        logger.error("Failed to start worker", extra={"error": str(e)})
        sys.exit(1)
    except SessionLostError as e:
        logger.error(
            "Worker session was taken over; exiting",
            extra={"session_id": str(e.session_id)},
        )
        sys.exit(1)


if __name__ == "__main__":
    run()
