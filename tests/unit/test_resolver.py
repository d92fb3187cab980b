"""
Unit tests for recipient resolution.
"""

from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from mailqueue.db import Database
from mailqueue.errors import ResolutionError
from mailqueue.newsletter.resolver import (
    RecipientResolver,
    is_valid_email,
    validate_contacts,
)
from mailqueue.types.contact import ContactRecord


class TestEmailValidation:
    """Tests for is_valid_email and validate_contacts."""

    @pytest.mark.parametrize(
        "email",
        ["alice@example.com", "a.b+tag@mail.example.org", "x@y.co"],
    )
    def test_valid_addresses(self, email: str):
        assert is_valid_email(email) is True

    @pytest.mark.parametrize(
        "email",
        ["", "not-an-email", "missing@tld", "@example.com", "two words@example.com", "a@b@c.com"],
    )
    def test_invalid_addresses(self, email: str):
        assert is_valid_email(email) is False

    def test_validate_contacts_drops_missing_and_malformed(self):
        """Contacts without a usable address are filtered out, not fatal."""
        contacts = [
            ContactRecord(id=1, first_name="A", last_name="One", email="a@example.com", is_active=True),
            ContactRecord(id=2, first_name="B", last_name="Two", email=None, is_active=True),
            ContactRecord(id=3, first_name="C", last_name="Three", email="broken", is_active=True),
            ContactRecord(id=4, first_name="D", last_name="Four", email="d@example.com", is_active=True),
        ]

        valid = validate_contacts(contacts)

        assert [c.id for c in valid] == [1, 4]


class TestRecipientResolver:
    """Tests for RecipientResolver against the store."""

    async def test_resolves_active_contacts(self, resolver: RecipientResolver, make_contact, make_list):
        """Inactive contacts and malformed addresses are excluded."""
        ids = [
            await make_contact("one@example.com"),
            await make_contact("two@example.com"),
            await make_contact("three@example.com"),
            await make_contact("inactive@example.com", is_active=False),
            await make_contact("not-an-email"),
            await make_contact(None),
        ]
        list_id = await make_list(ids)

        recipients = await resolver.resolve([list_id])

        assert sorted(r.email for r in recipients) == [
            "one@example.com",
            "three@example.com",
            "two@example.com",
        ]

    async def test_inactive_list_is_ignored(self, resolver: RecipientResolver, make_contact, make_list):
        active = await make_list([await make_contact("kept@example.com")], name="Active")
        inactive = await make_list(
            [await make_contact("dropped@example.com")],
            name="Archived",
            is_active=False,
        )

        recipients = await resolver.resolve([active, inactive])

        assert [r.email for r in recipients] == ["kept@example.com"]

    async def test_deduplicates_across_lists(self, resolver: RecipientResolver, make_contact, make_list):
        """The same address in two lists is sent to once."""
        shared = await make_contact("shared@example.com")
        list_a = await make_list([shared, await make_contact("a@example.com")], name="A")
        list_b = await make_list([shared, await make_contact("b@example.com")], name="B")

        recipients = await resolver.resolve([list_a, list_b])

        emails = [r.email for r in recipients]
        assert len(emails) == 3
        assert emails.count("shared@example.com") == 1

    async def test_deduplicates_case_insensitively(self, resolver: RecipientResolver, make_contact, make_list):
        list_id = await make_list([
            await make_contact("Jane@Example.com"),
            await make_contact("jane@example.com"),
        ])

        recipients = await resolver.resolve([list_id])

        assert len(recipients) == 1

    async def test_malformed_variant_does_not_hide_valid_address(
        self,
        resolver: RecipientResolver,
        make_contact,
        make_list,
    ):
        """A padded duplicate of an address is dropped without dropping the valid one."""
        for emails in (["ann@example.com", "ann@example.com "], ["ann@example.com ", "ann@example.com"]):
            ids = [await make_contact(email) for email in emails]
            valid_id = ids[emails.index("ann@example.com")]
            list_id = await make_list(ids)

            recipients = await resolver.resolve([list_id])

            assert [(r.id, r.email) for r in recipients] == [(valid_id, "ann@example.com")]

    async def test_unknown_lists_resolve_to_nothing(self, resolver: RecipientResolver):
        assert await resolver.resolve([uuid4()]) == []

    async def test_invalid_list_id_raises(self, resolver: RecipientResolver):
        with pytest.raises(ResolutionError):
            await resolver.resolve(["not-a-uuid"])

    async def test_store_failure_raises_resolution_error(self, tmp_path):
        """An unreachable store is reported as a resolution failure."""
        url = f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'nowhere.db'}"
        database = Database(create_async_engine(url, poolclass=NullPool))
        resolver = RecipientResolver(database)

        try:
            with pytest.raises(ResolutionError, match="Failed to fetch contacts"):
                await resolver.resolve([uuid4()])
        finally:
            await database.dispose()
