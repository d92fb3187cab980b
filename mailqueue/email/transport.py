"""
Email transports.

A transport sends already-built messages to an email provider. It returns
provider-reported failures as data and raises only for failures it cannot
attribute to the provider's answer.
"""

import asyncio
import logging
from typing import Any, Protocol, Sequence

import resend
from resend.exceptions import ResendError

from mailqueue.errors import DispatchError
from mailqueue.types.email import (
    BatchItemResult,
    BatchSendResponse,
    OutboundMessage,
    SendResult,
)

logger = logging.getLogger(__name__)


class EmailTransport(Protocol):
    """Batch-capable email provider."""

    async def send_one(self, message: OutboundMessage) -> SendResult:
        """Send one message."""
        ...

    async def send_batch(self, messages: Sequence[OutboundMessage]) -> BatchSendResponse:
        """Send up to the provider's batch limit of messages in one call."""
        ...


def _error_message(exc: Exception, fallback: str) -> str:
    return getattr(exc, "message", None) or str(exc) or fallback


class ResendTransport:
    """
    Transport backed by the Resend API.

    The Resend SDK is synchronous, so calls run in a worker thread to keep
    the event loop responsive.
    """

    def __init__(self, api_key: str, default_from: str):
        """
        Args:
            api_key: Resend API key.
            default_from: Sender used when a message has no from_address.
        """
        resend.api_key = api_key
        self._default_from = default_from

    def _to_params(self, message: OutboundMessage) -> dict[str, Any]:
        params: dict[str, Any] = {
            "from": message.from_address or self._default_from,
            "to": message.to if isinstance(message.to, list) else [message.to],
            "subject": message.subject,
            "html": message.html,
        }
        if message.text:
            params["text"] = message.text
        if message.cc:
            params["cc"] = message.cc
        if message.bcc:
            params["bcc"] = message.bcc
        if message.reply_to:
            params["reply_to"] = message.reply_to
        if message.tags:
            params["tags"] = [tag.model_dump() for tag in message.tags]
        return params

    async def send_one(self, message: OutboundMessage) -> SendResult:
        try:
            response = await asyncio.to_thread(resend.Emails.send, self._to_params(message))
        except ResendError as e:
            logger.error(
                "Resend rejected email",
                extra={"recipient": message.recipient, "error": _error_message(e, "")},
            )
            return SendResult(
                success=False,
                error=_error_message(e, "Unknown error sending email"),
            )

        message_id = response.get("id") if isinstance(response, dict) else getattr(response, "id", None)
        return SendResult(success=True, message_id=message_id)

    async def send_batch(self, messages: Sequence[OutboundMessage]) -> BatchSendResponse:
        params = [self._to_params(message) for message in messages]
        try:
            response = await asyncio.to_thread(resend.Batch.send, params)
        except ResendError as e:
            return BatchSendResponse(error=_error_message(e, "Batch error"))

        data = response.get("data") if isinstance(response, dict) else getattr(response, "data", None)
        if data is None:
            return BatchSendResponse()
        if not isinstance(data, list):
            raise DispatchError(f"Unexpected batch response from Resend: {type(data).__name__}")

        items = []
        for entry in data:
            message_id = entry.get("id") if isinstance(entry, dict) else getattr(entry, "id", None)
            items.append(BatchItemResult(message_id=message_id))
        return BatchSendResponse(items=items)
