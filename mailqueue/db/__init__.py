"""
Database module.
Contains database connection, models, and repository implementations.
"""

from mailqueue.db.connection import Database, create_engine_from_settings
from mailqueue.db.models import (
    Base,
    Contact,
    DistributionList,
    NewsletterJob,
    WorkerSession,
    distribution_list_contacts,
    utcnow,
)

__all__ = [
    "Database",
    "create_engine_from_settings",
    "Base",
    "Contact",
    "DistributionList",
    "NewsletterJob",
    "WorkerSession",
    "distribution_list_contacts",
    "utcnow",
]
