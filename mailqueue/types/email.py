"""
Email type definitions shared by the dispatcher and transports.
"""

from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict


class EmailTag(BaseModel):
    """Name/value tag attached to an email for provider-side analytics."""

    name: str
    value: str


class OutboundMessage(BaseModel):
    """
    One email to hand to the transport.

    When `to` holds several addresses the first one identifies the message
    in results.
    """

    model_config = ConfigDict(frozen=True)

    to: str | list[str]
    subject: str
    html: str
    text: str | None = None
    from_address: str | None = None
    cc: list[str] | None = None
    bcc: list[str] | None = None
    reply_to: str | list[str] | None = None
    tags: list[EmailTag] | None = None

    @property
    def recipient(self) -> str:
        """Primary recipient address."""
        if isinstance(self.to, list):
            return self.to[0] if self.to else ""
        return self.to


class SendResult(BaseModel):
    """Outcome of a single-message send."""

    success: bool
    message_id: str | None = None
    error: str | None = None


class BatchItemResult(BaseModel):
    """Transport outcome for one message inside a chunk."""

    message_id: str | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None


class BatchSendResponse(BaseModel):
    """
    Transport outcome for one chunk.

    Either `error` is set (the whole chunk was rejected) or `items` holds one
    entry per message, in order. `items=None` with no error means the chunk
    was accepted without per-item details.
    """

    items: list[BatchItemResult] | None = None
    error: str | None = None


@dataclass
class RecipientError:
    """A recipient the transport did not accept."""

    email: str
    error: str


@dataclass
class RecipientMessageId:
    """Provider message id for an accepted recipient, for webhook correlation."""

    email: str
    message_id: str


@dataclass
class BatchEmailResult:
    """
    Aggregated outcome of a dispatch call.

    successful + failed always equals the number of messages dispatched.
    """

    successful: int = 0
    failed: int = 0
    errors: list[RecipientError] = field(default_factory=list)
    email_ids: list[RecipientMessageId] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.successful + self.failed

    def record_success(self, email: str, message_id: str | None) -> None:
        self.successful += 1
        if message_id:
            self.email_ids.append(RecipientMessageId(email=email, message_id=message_id))

    def record_failure(self, email: str, error: str) -> None:
        self.failed += 1
        self.errors.append(RecipientError(email=email, error=error))
