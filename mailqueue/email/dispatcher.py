"""
Batch dispatcher.

Splits outbound messages into provider-sized chunks, sends each chunk
through an EmailTransport and aggregates per-recipient outcomes. A failing
chunk only marks its own messages as failed; dispatch always runs to the
last chunk.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence

from mailqueue.constants import (
    DEFAULT_BATCH_DELAY_SECONDS,
    DEFAULT_BATCH_SIZE,
    SPAN_DISPATCH_CHUNK,
)
from mailqueue.email.transport import EmailTransport
from mailqueue.observability.metrics import get_metrics
from mailqueue.observability.tracing import get_tracer
from mailqueue.types.email import (
    BatchEmailResult,
    BatchSendResponse,
    OutboundMessage,
    SendResult,
)

logger = logging.getLogger(__name__)

# Called after every chunk with running (successful, failed) totals
ProgressCallback = Callable[[int, int], Awaitable[None]]


def chunk_messages(
    messages: Sequence[OutboundMessage],
    chunk_size: int,
) -> list[Sequence[OutboundMessage]]:
    """
    Partition messages into contiguous chunks of at most chunk_size.

    Raises:
        ValueError: If chunk_size is not positive.
    """
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    return [messages[i:i + chunk_size] for i in range(0, len(messages), chunk_size)]


class BatchDispatcher:
    """Sends messages through a transport in fixed-size chunks."""

    def __init__(
        self,
        transport: EmailTransport,
        chunk_size: int = DEFAULT_BATCH_SIZE,
        chunk_delay_seconds: float = DEFAULT_BATCH_DELAY_SECONDS,
    ):
        """
        Args:
            transport: Email provider client.
            chunk_size: Default messages per batch call (provider limit).
            chunk_delay_seconds: Pause between chunks to respect rate limits.
        """
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self._transport = transport
        self.chunk_size = chunk_size
        self.chunk_delay_seconds = chunk_delay_seconds
        self._metrics = get_metrics()

    async def send_one(self, message: OutboundMessage) -> SendResult:
        """
        Send a single message without chunking.

        Provider-reported errors and raised exceptions both come back as a
        failed SendResult.
        """
        try:
            result = await self._transport.send_one(message)
        except Exception as e:
            logger.exception(
                "Unexpected error sending email",
                extra={"recipient": message.recipient},
            )
            self._metrics.record_emails(0, 1)
            return SendResult(success=False, error=str(e) or "Unknown error sending email")

        self._metrics.record_emails(int(result.success), int(not result.success))
        return result

    async def send_batch(
        self,
        messages: Sequence[OutboundMessage],
        chunk_size: int | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> BatchEmailResult:
        """
        Send messages in chunks and aggregate the outcome.

        Args:
            messages: Messages in dispatch order.
            chunk_size: Messages per batch call. Defaults to the dispatcher's.
            on_progress: Optional coroutine awaited after each chunk with the
                running successful and failed totals.

        Returns:
            BatchEmailResult where successful + failed == len(messages).
        """
        chunks = chunk_messages(messages, chunk_size or self.chunk_size)
        result = BatchEmailResult()

        logger.info(
            "Starting batch email send",
            extra={"emails": len(messages), "chunks": len(chunks)},
        )

        for index, chunk in enumerate(chunks):
            with get_tracer().start_as_current_span(SPAN_DISPATCH_CHUNK) as span:
                span.set_attribute("chunk_index", index)
                span.set_attribute("chunk_size", len(chunk))
                await self._send_chunk(index, chunk, result)

            if on_progress is not None:
                await on_progress(result.successful, result.failed)

            if index < len(chunks) - 1:
                logger.debug(
                    "Batch progress",
                    extra={"processed": result.total, "emails": len(messages)},
                )
                await asyncio.sleep(self.chunk_delay_seconds)

        logger.info(
            "Batch send completed",
            extra={"successful": result.successful, "failed": result.failed},
        )
        return result

    async def _send_chunk(
        self,
        index: int,
        chunk: Sequence[OutboundMessage],
        result: BatchEmailResult,
    ) -> None:
        """Send one chunk and fold its outcome into result."""
        successful_before, failed_before = result.successful, result.failed

        try:
            response = await self._transport.send_batch(chunk)
        except Exception as e:
            logger.exception(
                "Unexpected error in batch",
                extra={"chunk": index + 1, "error": str(e)},
            )
            self._fail_chunk(chunk, str(e) or "Unexpected error", result)
            outcome = "exception"
        else:
            outcome = self._apply_response(index, chunk, response, result)

        self._metrics.record_chunk(outcome)
        self._metrics.record_emails(
            result.successful - successful_before,
            result.failed - failed_before,
        )

    def _apply_response(
        self,
        index: int,
        chunk: Sequence[OutboundMessage],
        response: BatchSendResponse,
        result: BatchEmailResult,
    ) -> str:
        if response.error is not None:
            logger.error(
                "Batch rejected by provider",
                extra={"chunk": index + 1, "error": response.error},
            )
            self._fail_chunk(chunk, response.error or "Batch error", result)
            return "rejected"

        items = response.items or []
        failures = 0
        for position, message in enumerate(chunk):
            item = items[position] if position < len(items) else None
            if item is not None and not item.success:
                result.record_failure(message.recipient, item.error or "Unknown error")
                failures += 1
            else:
                result.record_success(message.recipient, item.message_id if item else None)

        if failures:
            logger.warning(
                "Batch partially rejected",
                extra={"chunk": index + 1, "failed": failures, "size": len(chunk)},
            )
            return "partial"
        return "ok"

    @staticmethod
    def _fail_chunk(
        chunk: Sequence[OutboundMessage],
        error: str,
        result: BatchEmailResult,
    ) -> None:
        for message in chunk:
            result.record_failure(message.recipient, error)
