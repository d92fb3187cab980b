"""
Recipient resolver.

Turns a job's distribution list ids into the deduplicated set of active
contacts with a usable email address. Read-only.
"""

import logging
import re
from collections.abc import Iterable
from uuid import UUID

from mailqueue.constants import EMAIL_PATTERN, SPAN_RESOLVE_RECIPIENTS
from mailqueue.db.connection import Database
from mailqueue.db.repository import ContactRepository
from mailqueue.errors import ResolutionError, StoreError
from mailqueue.observability.tracing import get_tracer
from mailqueue.types.contact import ContactRecord

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(EMAIL_PATTERN)


def is_valid_email(email: str) -> bool:
    """Check for local-part@domain with a dot in the domain. Not full RFC validation."""
    return bool(_EMAIL_RE.match(email))


def validate_contacts(contacts: Iterable[ContactRecord]) -> list[ContactRecord]:
    """
    Drop contacts with a missing or malformed email address.

    Each rejection is logged; rejections never fail the resolution.
    """
    valid = []
    for contact in contacts:
        if not contact.email:
            logger.warning("Contact missing email", extra={"contact_id": contact.id})
            continue

        if not is_valid_email(contact.email):
            logger.warning(
                "Invalid email format",
                extra={"contact_id": contact.id, "email": contact.email},
            )
            continue

        valid.append(contact)
    return valid


def _dedupe_key(email: str) -> str:
    return email.strip().lower()


class RecipientResolver:
    """Resolves distribution lists to sendable contacts."""

    def __init__(self, database: Database):
        self._database = database

    async def fetch_active_contacts(self, list_ids: Iterable[UUID | str]) -> list[ContactRecord]:
        """
        Load active contacts of the active lists, once per contact.

        A contact that belongs to several of the lists is returned once.
        Addresses are not checked here.

        Raises:
            ResolutionError: If the store cannot be read.
        """
        try:
            ids = [UUID(str(list_id)) for list_id in list_ids]
        except ValueError as e:
            raise ResolutionError(f"Invalid distribution list id: {e}") from e

        try:
            async with self._database.session() as session:
                rows = await ContactRepository(session).get_active_contacts_in_lists(ids)
                contacts = [ContactRecord.model_validate(row) for row in rows]
        except StoreError as e:
            logger.error(
                "Error fetching contacts from lists",
                extra={"list_ids": [str(i) for i in ids], "error": str(e)},
            )
            raise ResolutionError("Failed to fetch contacts from distribution lists") from e

        return list({contact.id: contact for contact in contacts}.values())

    async def resolve(self, list_ids: Iterable[UUID | str]) -> list[ContactRecord]:
        """
        Resolve list ids to unique, active contacts with valid email addresses.

        Contacts are validated before deduplication, so a malformed variant
        of an address never displaces a valid one. Among valid contacts
        sharing an address the last occurrence wins.

        An empty result is not an error here; the caller decides whether zero
        recipients is fatal.

        Raises:
            ResolutionError: If the store cannot be read.
        """
        list_ids = list(list_ids)
        with get_tracer().start_as_current_span(SPAN_RESOLVE_RECIPIENTS) as span:
            span.set_attribute("list_count", len(list_ids))

            logger.info(
                "Fetching contacts from distribution lists",
                extra={"list_ids": [str(i) for i in list_ids]},
            )
            contacts = await self.fetch_active_contacts(list_ids)
            valid = validate_contacts(contacts)

            by_email: dict[str, ContactRecord] = {}
            for contact in valid:
                by_email[_dedupe_key(contact.email)] = contact
            recipients = list(by_email.values())
            span.set_attribute("recipient_count", len(recipients))

        logger.info(
            "Resolved recipients",
            extra={
                "contacts": len(contacts),
                "valid": len(valid),
                "unique": len(recipients),
            },
        )
        return recipients
