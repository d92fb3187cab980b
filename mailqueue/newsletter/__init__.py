"""
Newsletter module.
Contains recipient resolution and the job queue operations.
"""

from mailqueue.newsletter.queue import NewsletterQueue
from mailqueue.newsletter.resolver import (
    RecipientResolver,
    is_valid_email,
    validate_contacts,
)

__all__ = [
    "NewsletterQueue",
    "RecipientResolver",
    "is_valid_email",
    "validate_contacts",
]
