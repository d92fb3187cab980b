"""
Type definitions for the mail queue.
Contains input/output type definitions for all functions, grouped by module.
"""

from mailqueue.types.contact import ContactRecord
from mailqueue.types.email import (
    BatchEmailResult,
    BatchItemResult,
    BatchSendResponse,
    EmailTag,
    OutboundMessage,
    RecipientError,
    RecipientMessageId,
    SendResult,
)
from mailqueue.types.job import (
    CreateJobRequest,
    CreateJobResponse,
    JobRecord,
    ProcessJobResult,
    QueueStats,
)
from mailqueue.types.session import SessionHandle

__all__ = [
    # Contact types
    "ContactRecord",
    # Email types
    "OutboundMessage",
    "EmailTag",
    "SendResult",
    "BatchItemResult",
    "BatchSendResponse",
    "BatchEmailResult",
    "RecipientError",
    "RecipientMessageId",
    # Job types
    "CreateJobRequest",
    "CreateJobResponse",
    "JobRecord",
    "ProcessJobResult",
    "QueueStats",
    # Session types
    "SessionHandle",
]
