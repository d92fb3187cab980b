"""
Unit tests for chunked email dispatch.
"""

import asyncio
import math

import pytest

from mailqueue.email.dispatcher import BatchDispatcher, chunk_messages
from mailqueue.types.email import (
    BatchItemResult,
    BatchSendResponse,
    OutboundMessage,
    SendResult,
)


def make_messages(count: int) -> list[OutboundMessage]:
    return [
        OutboundMessage(
            to=f"user{i}@example.com",
            subject="Weekly digest",
            html="<p>Hello</p>",
        )
        for i in range(count)
    ]


class TestChunkMessages:
    """Tests for chunk_messages."""

    def test_partitions_in_order(self):
        messages = make_messages(5)

        chunks = chunk_messages(messages, 2)

        assert [len(c) for c in chunks] == [2, 2, 1]
        assert [m for chunk in chunks for m in chunk] == messages

    def test_empty_input(self):
        assert chunk_messages([], 100) == []

    def test_rejects_non_positive_size(self):
        with pytest.raises(ValueError):
            chunk_messages(make_messages(1), 0)


class TestBatchDispatcher:
    """Tests for BatchDispatcher.send_batch."""

    @pytest.mark.parametrize(
        "count,chunk_size",
        [(1, 1), (5, 2), (100, 100), (101, 100), (250, 100)],
    )
    async def test_one_call_per_chunk(self, transport, count: int, chunk_size: int):
        """ceil(N / C) transport calls, and every message is accounted for."""
        dispatcher = BatchDispatcher(transport, chunk_size=chunk_size, chunk_delay_seconds=0)

        result = await dispatcher.send_batch(make_messages(count))

        assert len(transport.batch_calls) == math.ceil(count / chunk_size)
        assert all(len(call) <= chunk_size for call in transport.batch_calls)
        assert result.successful + result.failed == count
        assert result.successful == count

    async def test_chunk_size_override(self, transport):
        dispatcher = BatchDispatcher(transport, chunk_size=100, chunk_delay_seconds=0)

        await dispatcher.send_batch(make_messages(7), chunk_size=3)

        assert [len(call) for call in transport.batch_calls] == [3, 3, 1]

    async def test_empty_batch_makes_no_calls(self, dispatcher: BatchDispatcher, transport):
        result = await dispatcher.send_batch([])

        assert transport.batch_calls == []
        assert result.total == 0

    async def test_rejected_chunk_only_fails_its_messages(
        self,
        dispatcher: BatchDispatcher,
        transport,
    ):
        """A provider error on one chunk does not stop later chunks."""
        transport.batch_responses = [BatchSendResponse(error="rate limited")]

        result = await dispatcher.send_batch(make_messages(5))

        assert len(transport.batch_calls) == 3
        assert result.failed == 2
        assert result.successful == 3
        assert {e.email for e in result.errors} == {"user0@example.com", "user1@example.com"}
        assert all(e.error == "rate limited" for e in result.errors)

    async def test_raised_exception_fails_chunk(
        self,
        dispatcher: BatchDispatcher,
        transport,
    ):
        transport.batch_responses = [
            BatchSendResponse(items=[BatchItemResult(message_id="a"), BatchItemResult(message_id="b")]),
            ConnectionError("connection reset"),
        ]

        result = await dispatcher.send_batch(make_messages(4))

        assert result.successful == 2
        assert result.failed == 2
        assert [e.error for e in result.errors] == ["connection reset", "connection reset"]

    async def test_exception_without_message(self, dispatcher: BatchDispatcher, transport):
        transport.batch_responses = [RuntimeError()]

        result = await dispatcher.send_batch(make_messages(1))

        assert result.errors[0].error == "Unexpected error"

    async def test_per_item_failures(self, dispatcher: BatchDispatcher, transport):
        transport.batch_responses = [
            BatchSendResponse(
                items=[
                    BatchItemResult(message_id="ok-1"),
                    BatchItemResult(error="invalid recipient"),
                ]
            )
        ]

        result = await dispatcher.send_batch(make_messages(2))

        assert result.successful == 1
        assert result.failed == 1
        assert result.errors[0].email == "user1@example.com"
        assert result.errors[0].error == "invalid recipient"

    async def test_accepted_without_items(self, dispatcher: BatchDispatcher, transport):
        """A chunk accepted without per-item details counts as sent."""
        transport.batch_responses = [BatchSendResponse()]

        result = await dispatcher.send_batch(make_messages(2))

        assert result.successful == 2
        assert result.email_ids == []

    async def test_collects_message_ids(self, dispatcher: BatchDispatcher):
        result = await dispatcher.send_batch(make_messages(3))

        assert [(r.email, r.message_id) for r in result.email_ids] == [
            ("user0@example.com", "msg-1"),
            ("user1@example.com", "msg-2"),
            ("user2@example.com", "msg-3"),
        ]

    async def test_progress_reported_after_each_chunk(self, dispatcher: BatchDispatcher, transport):
        transport.batch_responses = [
            BatchSendResponse(items=[BatchItemResult(message_id="1"), BatchItemResult(message_id="2")]),
            BatchSendResponse(error="boom"),
        ]
        progress: list[tuple[int, int]] = []

        async def on_progress(successful: int, failed: int) -> None:
            progress.append((successful, failed))

        await dispatcher.send_batch(make_messages(5), on_progress=on_progress)

        assert progress == [(2, 0), (2, 2), (3, 2)]

    async def test_delay_between_chunks_only(self, transport, monkeypatch):
        """The rate-limit pause happens between chunks, not after the last."""
        delays: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            delays.append(seconds)

        monkeypatch.setattr(asyncio, "sleep", fake_sleep)
        dispatcher = BatchDispatcher(transport, chunk_size=2, chunk_delay_seconds=0.1)

        await dispatcher.send_batch(make_messages(5))

        assert delays == [0.1, 0.1]

    def test_rejects_non_positive_chunk_size(self, transport):
        with pytest.raises(ValueError):
            BatchDispatcher(transport, chunk_size=0)


class TestSendOne:
    """Tests for BatchDispatcher.send_one."""

    async def test_success(self, dispatcher: BatchDispatcher, transport):
        result = await dispatcher.send_one(make_messages(1)[0])

        assert result.success is True
        assert result.message_id == "msg-1"
        assert len(transport.single_calls) == 1

    async def test_provider_error(self, dispatcher: BatchDispatcher, transport):
        transport.single_responses = [SendResult(success=False, error="domain not verified")]

        result = await dispatcher.send_one(make_messages(1)[0])

        assert result.success is False
        assert result.error == "domain not verified"

    async def test_exception_becomes_failed_result(self, dispatcher: BatchDispatcher, transport):
        transport.single_responses = [TimeoutError("timed out")]

        result = await dispatcher.send_one(make_messages(1)[0])

        assert result.success is False
        assert result.error == "timed out"
