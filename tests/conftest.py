"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import AsyncGenerator, Sequence
from pathlib import Path
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from mailqueue.config import Settings
from mailqueue.db import Contact, Database, DistributionList, distribution_list_contacts
from mailqueue.email.dispatcher import BatchDispatcher
from mailqueue.newsletter.queue import NewsletterQueue
from mailqueue.newsletter.resolver import RecipientResolver
from mailqueue.types.email import (
    BatchItemResult,
    BatchSendResponse,
    OutboundMessage,
    SendResult,
)
from mailqueue.worker.registry import SessionRegistry

# Optional external database (e.g. postgresql+asyncpg://...); defaults to a
# per-test SQLite file
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")

# Keep get_settings() away from a real deployment's database
os.environ.setdefault("DATABASE_URL", TEST_DATABASE_URL or "sqlite+aiosqlite:///:memory:")


class FakeTransport:
    """
    Scripted EmailTransport.

    Each queued response is consumed by one call; an Exception instance is
    raised instead of returned. With nothing queued every message is accepted.
    """

    def __init__(self):
        self.batch_calls: list[list[OutboundMessage]] = []
        self.single_calls: list[OutboundMessage] = []
        self.batch_responses: list[BatchSendResponse | Exception] = []
        self.single_responses: list[SendResult | Exception] = []
        self._next_id = 0

    def _message_id(self) -> str:
        self._next_id += 1
        return f"msg-{self._next_id}"

    async def send_one(self, message: OutboundMessage) -> SendResult:
        self.single_calls.append(message)
        if self.single_responses:
            response = self.single_responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return SendResult(success=True, message_id=self._message_id())

    async def send_batch(self, messages: Sequence[OutboundMessage]) -> BatchSendResponse:
        self.batch_calls.append(list(messages))
        if self.batch_responses:
            response = self.batch_responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return BatchSendResponse(
            items=[BatchItemResult(message_id=self._message_id()) for _ in messages]
        )

    @property
    def sent_to(self) -> list[str]:
        return [message.recipient for call in self.batch_calls for message in call]


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """Get the test database URL."""
    return TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'mailqueue.db'}"


@pytest_asyncio.fixture
async def database(database_url: str) -> AsyncGenerator[Database]:
    """Database handle with a freshly created schema."""
    engine = create_async_engine(database_url, poolclass=NullPool)
    db = Database(engine)
    await db.drop_all()
    await db.create_all()

    yield db

    await db.dispose()


@pytest.fixture
def test_settings(database_url: str) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=database_url,
        resend_api_key="re_test",
        resend_from_email="newsletter@example.com",
        max_batch_size=2,
        batch_delay_seconds=0,
        max_retries=3,
        worker_poll_interval_seconds=0.05,
        worker_shutdown_timeout_seconds=1,
        log_level="DEBUG",
        log_format="console",
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def dispatcher(transport: FakeTransport) -> BatchDispatcher:
    """Dispatcher with small chunks and no delay between them."""
    return BatchDispatcher(transport, chunk_size=2, chunk_delay_seconds=0)


@pytest.fixture
def resolver(database: Database) -> RecipientResolver:
    return RecipientResolver(database)


@pytest.fixture
def queue(
    database: Database,
    resolver: RecipientResolver,
    dispatcher: BatchDispatcher,
) -> NewsletterQueue:
    """Queue wired to the fake transport."""
    return NewsletterQueue(
        database=database,
        resolver=resolver,
        dispatcher=dispatcher,
        from_address="newsletter@example.com",
        max_retries=3,
    )


@pytest.fixture
def registry(database: Database) -> SessionRegistry:
    return SessionRegistry(database, stale_threshold_seconds=120)


@pytest.fixture
def make_contact(database: Database):
    """Factory that inserts a contact and returns its id."""

    async def _make_contact(
        email: str | None,
        is_active: bool = True,
        first_name: str = "Test",
        last_name: str = "Contact",
    ) -> int:
        async with database.session() as session:
            contact = Contact(
                first_name=first_name,
                last_name=last_name,
                email=email,
                is_active=is_active,
            )
            session.add(contact)
            await session.flush()
            return contact.id

    return _make_contact


@pytest.fixture
def make_list(database: Database):
    """Factory that inserts a distribution list with the given members."""

    async def _make_list(
        contact_ids: Sequence[int],
        name: str = "Subscribers",
        is_active: bool = True,
    ) -> UUID:
        async with database.session() as session:
            distribution_list = DistributionList(name=name, is_active=is_active)
            session.add(distribution_list)
            await session.flush()
            if contact_ids:
                await session.execute(
                    insert(distribution_list_contacts),
                    [
                        {"list_id": distribution_list.id, "contact_id": contact_id}
                        for contact_id in contact_ids
                    ],
                )
            return distribution_list.id

    return _make_list
