"""
Integration tests for worker functionality.
"""

import asyncio
from collections.abc import Sequence

import pytest
from sqlalchemy import update

from mailqueue.config import Settings
from mailqueue.constants import JobStatus, SessionStatus
from mailqueue.db import Database, WorkerSession
from mailqueue.email import BatchDispatcher, ResendTransport
from mailqueue.errors import DuplicateWorkerError
from mailqueue.newsletter.queue import NewsletterQueue
from mailqueue.types.email import BatchItemResult, BatchSendResponse, OutboundMessage
from mailqueue.types.job import CreateJobRequest
from mailqueue.worker.main import Worker, build_worker, create_transport
from mailqueue.worker.registry import SessionRegistry


class GatedTransport:
    """Transport that signals when a batch starts and holds it until released."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def send_one(self, message: OutboundMessage):
        raise NotImplementedError

    async def send_batch(self, messages: Sequence[OutboundMessage]) -> BatchSendResponse:
        self.started.set()
        await self.release.wait()
        return BatchSendResponse(items=[BatchItemResult(message_id="gated") for _ in messages])


async def wait_for_status(queue: NewsletterQueue, job_id, status: JobStatus, timeout: float = 5.0):
    async def _poll():
        while True:
            job = await queue.get_job(job_id)
            if job.status == status:
                return job
            await asyncio.sleep(0.02)

    return await asyncio.wait_for(_poll(), timeout=timeout)


async def submit(queue: NewsletterQueue, list_id, subject: str = "Product update"):
    return await queue.create_job(
        CreateJobRequest(subject=subject, html_content="<p>News</p>", list_ids=[list_id])
    )


async def mark_session(database: Database, session_id, status: SessionStatus) -> None:
    async with database.session() as session:
        await session.execute(
            update(WorkerSession).where(WorkerSession.id == session_id).values(status=status)
        )


class TestWorkerPolling:
    """Tests for single poll cycles."""

    @pytest.fixture
    def worker(self, queue: NewsletterQueue, registry: SessionRegistry) -> Worker:
        return Worker(queue, registry, poll_interval=0.05, shutdown_timeout=1)

    async def test_poll_requires_session(self, worker: Worker):
        with pytest.raises(RuntimeError):
            await worker.poll_once()

    async def test_poll_empty_queue(self, worker: Worker, registry: SessionRegistry):
        worker.session = await registry.start_session()

        assert await worker.poll_once() is None
        assert worker.is_processing is False

    async def test_poll_processes_one_job(
        self,
        worker: Worker,
        queue: NewsletterQueue,
        registry: SessionRegistry,
        make_contact,
        make_list,
    ):
        """Jobs are processed oldest first, one per cycle."""
        list_id = await make_list([await make_contact("a@example.com")])
        first = await submit(queue, list_id, "First")
        second = await submit(queue, list_id, "Second")
        worker.session = await registry.start_session()
        await registry.mark_running(worker.session)

        result = await worker.poll_once()

        assert result.job_id == first.id
        assert (await queue.get_job(first.id)).status == JobStatus.COMPLETED
        assert (await queue.get_job(second.id)).status == JobStatus.PENDING

        row = await registry.get_session(worker.session)
        assert row.jobs_processed == 1
        assert row.jobs_failed == 0
        assert row.current_job_id is None
        assert worker.is_processing is False

    async def test_failed_attempt_counts_against_session(
        self,
        worker: Worker,
        queue: NewsletterQueue,
        registry: SessionRegistry,
        make_list,
    ):
        await submit(queue, await make_list([]))
        worker.session = await registry.start_session()

        result = await worker.poll_once()

        assert result.success is False
        row = await registry.get_session(worker.session)
        assert row.jobs_processed == 0
        assert row.jobs_failed == 1


    async def test_lost_session_does_not_process(
        self,
        database: Database,
        worker: Worker,
        queue: NewsletterQueue,
        registry: SessionRegistry,
        transport,
        make_contact,
        make_list,
    ):
        """Once the heartbeat finds the session crashed, no job is taken."""
        created = await submit(queue, await make_list([await make_contact("a@example.com")]))
        worker.session = await registry.start_session()
        await registry.mark_running(worker.session)
        await mark_session(database, worker.session.session_id, SessionStatus.CRASHED)

        assert await worker.poll_once() is None

        assert worker.session_lost is True
        assert transport.batch_calls == []
        assert (await queue.get_job(created.id)).status == JobStatus.PENDING
        row = await registry.get_session(worker.session)
        assert row.status == SessionStatus.CRASHED
        assert row.current_job_id is None

    async def test_skipped_claim_is_not_counted(
        self,
        worker: Worker,
        queue: NewsletterQueue,
        registry: SessionRegistry,
        transport,
        make_contact,
        make_list,
        monkeypatch,
    ):
        """A job cancelled between read and claim is neither a success nor a failure."""
        created = await submit(queue, await make_list([await make_contact("a@example.com")]))
        read_next = queue.get_next_job

        async def get_then_cancel():
            job = await read_next()
            await queue.cancel_job(job.id)
            return job

        monkeypatch.setattr(queue, "get_next_job", get_then_cancel)
        worker.session = await registry.start_session()

        result = await worker.poll_once()

        assert result.job_id == created.id
        assert result.skipped is True
        assert transport.batch_calls == []
        row = await registry.get_session(worker.session)
        assert row.jobs_processed == 0
        assert row.jobs_failed == 0
        assert row.current_job_id is None
        assert worker.is_processing is False


class TestWorkerLifecycle:
    """Tests for start, stop and shutdown draining."""

    async def test_processes_queue_until_stopped(
        self,
        test_settings: Settings,
        database: Database,
        transport,
        make_contact,
        make_list,
    ):
        worker = build_worker(test_settings, database, transport)
        list_id = await make_list([await make_contact(f"user{i}@example.com") for i in range(5)])
        created = await submit(worker.queue, list_id)

        task = asyncio.create_task(worker.start())
        job = await wait_for_status(worker.queue, created.id, JobStatus.COMPLETED)
        await worker.stop()
        await asyncio.wait_for(task, timeout=5)

        assert job.sent_count == 5
        assert len(transport.batch_calls) == 3

        row = await worker.registry.get_session(worker.session)
        assert row.status == SessionStatus.STOPPED
        assert row.stopped_at is not None
        assert row.jobs_processed == 1

    async def test_second_worker_refused(
        self,
        test_settings: Settings,
        database: Database,
        transport,
    ):
        first = build_worker(test_settings, database, transport)
        task = asyncio.create_task(first.start())
        await asyncio.sleep(0.1)

        second = build_worker(test_settings, database, transport)
        with pytest.raises(DuplicateWorkerError) as exc_info:
            await second.start()
        assert exc_info.value.session_id == first.session.session_id

        await first.stop()
        await asyncio.wait_for(task, timeout=5)

        replacement = build_worker(test_settings, database, transport)
        task = asyncio.create_task(replacement.start())
        await asyncio.sleep(0.1)
        await replacement.stop()
        await asyncio.wait_for(task, timeout=5)

    async def test_stop_is_idempotent(self, test_settings: Settings, database: Database, transport):
        worker = build_worker(test_settings, database, transport)
        task = asyncio.create_task(worker.start())
        await asyncio.sleep(0.1)

        await worker.stop()
        await worker.stop()
        await asyncio.wait_for(task, timeout=5)

    async def test_shutdown_waits_for_current_job(
        self,
        database: Database,
        queue: NewsletterQueue,
        registry: SessionRegistry,
        make_contact,
        make_list,
    ):
        """An in-flight job finishes before the session is released."""
        transport = GatedTransport()
        queue._dispatcher = BatchDispatcher(transport, chunk_size=10, chunk_delay_seconds=0)
        worker = Worker(queue, registry, poll_interval=0.05, shutdown_timeout=5)
        created = await submit(queue, await make_list([await make_contact("a@example.com")]))

        task = asyncio.create_task(worker.start())
        await asyncio.wait_for(transport.started.wait(), timeout=5)
        assert worker.is_processing is True

        stop = asyncio.create_task(worker.stop())
        await asyncio.sleep(0.1)
        assert not task.done()
        transport.release.set()
        await stop
        await asyncio.wait_for(task, timeout=5)

        assert (await queue.get_job(created.id)).status == JobStatus.COMPLETED
        row = await registry.get_session(worker.session)
        assert row.status == SessionStatus.STOPPED
        assert row.jobs_processed == 1

    async def test_shutdown_timeout_abandons_job(
        self,
        database: Database,
        queue: NewsletterQueue,
        registry: SessionRegistry,
        make_contact,
        make_list,
    ):
        """Past the shutdown timeout the job is left processing and the session stops."""
        transport = GatedTransport()
        queue._dispatcher = BatchDispatcher(transport, chunk_size=10, chunk_delay_seconds=0)
        worker = Worker(queue, registry, poll_interval=0.05, shutdown_timeout=0.1)
        created = await submit(queue, await make_list([await make_contact("a@example.com")]))

        task = asyncio.create_task(worker.start())
        await asyncio.wait_for(transport.started.wait(), timeout=5)
        await worker.stop()
        await asyncio.wait_for(task, timeout=5)

        assert (await queue.get_job(created.id)).status == JobStatus.PROCESSING
        row = await registry.get_session(worker.session)
        assert row.status == SessionStatus.STOPPED


    async def test_lost_session_stops_worker(self, test_settings: Settings, database: Database, transport):
        """A running worker whose session was swept as crashed shuts itself down."""
        worker = build_worker(test_settings, database, transport)
        task = asyncio.create_task(worker.start())
        await asyncio.sleep(0.1)

        await mark_session(database, worker.session.session_id, SessionStatus.CRASHED)
        await asyncio.wait_for(task, timeout=5)

        assert worker.session_lost is True
        row = await worker.registry.get_session(worker.session)
        assert row.status == SessionStatus.CRASHED
        assert row.stopped_at is None


class TestWiring:
    """Tests for building the worker from settings."""

    def test_build_worker_uses_settings(self, test_settings: Settings, database: Database, transport):
        worker = build_worker(test_settings, database, transport)

        assert worker.poll_interval == test_settings.worker_poll_interval_seconds
        assert worker.shutdown_timeout == test_settings.worker_shutdown_timeout_seconds
        assert worker.queue._dispatcher.chunk_size == test_settings.max_batch_size
        assert worker.registry.stale_threshold.total_seconds() == test_settings.session_stale_threshold_seconds

    def test_create_transport(self, test_settings: Settings):
        transport = create_transport(test_settings)

        assert isinstance(transport, ResendTransport)
        assert transport._default_from == "newsletter@example.com"
