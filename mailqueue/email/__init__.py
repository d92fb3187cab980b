"""
Email module.
Contains the transport abstraction, the Resend transport and the batch dispatcher.
"""

from mailqueue.email.dispatcher import BatchDispatcher, chunk_messages
from mailqueue.email.transport import EmailTransport, ResendTransport

__all__ = [
    "BatchDispatcher",
    "chunk_messages",
    "EmailTransport",
    "ResendTransport",
]
