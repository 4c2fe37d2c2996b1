"""
Test configuration and fixtures.

Provides:
- A fresh SQLite database per test with every table created
- Seed helpers for campaigns, templates, sender profiles and recipient lists
- A recording transport that can fail or slow down chosen recipients
- Queue and registry factories with short timings, torn down after each test
"""
import asyncio
import os
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Generator

import pytest
import pytest_asyncio
from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

os.environ["ENV"] = "test"
os.environ["EMAIL_TRANSPORT"] = "dry_run"

from campaign_dispatch.db.base import Base
from campaign_dispatch.db.enums import CampaignStatus
from campaign_dispatch.db.models import (
    Campaign,
    CampaignLog,
    EmailTemplate,
    Recipient,
    RecipientList,
    SenderProfile,
    SentEmail,
)
from campaign_dispatch.db.session import build_engine, build_session_factory
from campaign_dispatch.services.batch_writer import BatchWriter
from campaign_dispatch.services.campaign_queue import CampaignQueue, HealthPolicy, QueueTimings
from campaign_dispatch.services.email_transport import SendReceipt, TransportError
from campaign_dispatch.services.queue_registry import QueueRegistry
from campaign_dispatch.utils.normalization import utcnow

USER_ID = "00000000-0000-0000-0000-000000000001"


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so separate sessions see each other's commits."""
    engine = build_engine(f"sqlite:///{tmp_path / 'dispatch.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return build_session_factory(engine)


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def read_campaign(session_factory) -> Callable[[str], Campaign]:
    """Read a campaign through a fresh session (never a cached identity)."""

    def _read(campaign_id: str) -> Campaign:
        with session_factory() as session:
            return session.get(Campaign, campaign_id)

    return _read


@pytest.fixture
def records_for(session_factory) -> Callable[[str], list[SentEmail]]:
    def _records(campaign_id: str) -> list[SentEmail]:
        with session_factory() as session:
            return list(
                session.scalars(
                    select(SentEmail)
                    .where(SentEmail.campaign_id == campaign_id)
                    .order_by(SentEmail.created_at)
                ).all()
            )

    return _records


@pytest.fixture
def logs_for(session_factory) -> Callable[[str], list[CampaignLog]]:
    def _logs(campaign_id: str) -> list[CampaignLog]:
        with session_factory() as session:
            return list(
                session.scalars(
                    select(CampaignLog)
                    .where(CampaignLog.campaign_id == campaign_id)
                    .order_by(CampaignLog.id)
                ).all()
            )

    return _logs


@pytest.fixture
def update_campaign(session_factory) -> Callable[..., None]:
    def _update(campaign_id: str, **values) -> None:
        with session_factory() as session:
            session.execute(update(Campaign).where(Campaign.id == campaign_id).values(**values))
            session.commit()

    return _update


# =============================================================================
# Seed Data
# =============================================================================

@dataclass
class SeededCampaign:
    id: str
    emails: list[str] = field(default_factory=list)
    template_id: str | None = None
    sender_profile_id: str | None = None
    recipient_list_id: str | None = None


@pytest.fixture
def make_campaign(session_factory) -> Callable[..., SeededCampaign]:
    """
    Seed a list-sourced campaign with ``count`` recipients.

    Recipients are user0@example.com ... in insertion order; ``created_at`` is
    spaced one second apart so enumeration order is deterministic.
    """

    def _make(
        count: int = 5,
        *,
        interval: float = 0.0,
        status: CampaignStatus = CampaignStatus.DRAFT,
        with_template: bool = True,
        sender_active: bool = True,
        **overrides,
    ) -> SeededCampaign:
        with session_factory() as session:
            template = None
            if with_template:
                template = EmailTemplate(
                    user_id=USER_ID,
                    name="Welcome",
                    subject="Hello {{name}}",
                    html_content="<p>{{greeting}}, {{name}} ({{email}})</p>",
                )
                session.add(template)
            profile = SenderProfile(
                user_id=USER_ID,
                email="sender@example.com",
                nickname="Sender",
                smtp_host="smtp.example.com",
                is_active=sender_active,
            )
            recipient_list = RecipientList(user_id=USER_ID, name="Customers")
            session.add_all([profile, recipient_list])
            session.flush()

            base = utcnow() - timedelta(days=1)
            emails = []
            for index in range(count):
                email = f"user{index}@example.com"
                emails.append(email)
                session.add(
                    Recipient(
                        user_id=USER_ID,
                        list_id=recipient_list.id,
                        email=email,
                        name=f"User {index}",
                        fields={},
                        created_at=base + timedelta(seconds=index),
                    )
                )

            values = dict(
                user_id=USER_ID,
                name="Launch",
                status=status.value,
                template_id=template.id if template else None,
                sender_profile_id=profile.id,
                recipient_list_id=recipient_list.id,
                send_interval_seconds=interval,
            )
            values.update(overrides)
            campaign = Campaign(**values)
            session.add(campaign)
            session.commit()
            return SeededCampaign(
                id=campaign.id,
                emails=emails,
                template_id=template.id if template else None,
                sender_profile_id=profile.id,
                recipient_list_id=recipient_list.id,
            )

    return _make


# =============================================================================
# Transport
# =============================================================================

class RecordingTransport:
    """Records every attempt; raises TransportError for recipients in ``fail_on``."""

    key = "recording"

    def __init__(self, *, fail_on=(), delay: float = 0.0) -> None:
        self.fail_on = set(fail_on)
        self.delay = delay
        self.sent: list[str] = []
        self.attempts: list[tuple[str, float]] = []
        self.idempotency_keys: list[str | None] = []

    async def send(
        self,
        sender,
        recipient_email,
        recipient_name,
        subject,
        html,
        *,
        idempotency_key=None,
    ) -> SendReceipt:
        self.attempts.append((recipient_email, time.monotonic()))
        self.idempotency_keys.append(idempotency_key)
        if self.delay:
            await asyncio.sleep(self.delay)
        if recipient_email in self.fail_on:
            raise TransportError("550 mailbox unavailable", code=550)
        self.sent.append(recipient_email)
        return SendReceipt(message_id=f"msg-{idempotency_key}")


@pytest.fixture
def make_transport() -> Callable[..., RecordingTransport]:
    return RecordingTransport


# =============================================================================
# Engine components
# =============================================================================

@pytest.fixture
def timings() -> QueueTimings:
    return QueueTimings(
        max_wait_slice=0.05,
        idle_poll=0.01,
        add_cooldown=0.0,
        reload_after=60.0,
        completion_cooldown=0.0,
        recent_activity_window=300.0,
        halt_grace=1.0,
    )


@pytest.fixture
def policy() -> HealthPolicy:
    # Health ticks every 60s, so they never fire inside a test unless called directly
    return HealthPolicy(check_min_seconds=60.0, check_max_seconds=60.0)


@pytest.fixture
def writer(session_factory) -> BatchWriter:
    return BatchWriter(session_factory, batch_size=50, batch_timeout=0.05)


@pytest_asyncio.fixture
async def make_queue(session_factory, writer, policy, timings):
    queues: list[CampaignQueue] = []

    def _make(campaign_id: str, transport, **kwargs) -> CampaignQueue:
        kwargs.setdefault("policy", policy)
        kwargs.setdefault("timings", timings)
        queue = CampaignQueue(
            campaign_id,
            session_factory=session_factory,
            writer=writer,
            transport=transport,
            **kwargs,
        )
        queues.append(queue)
        return queue

    yield _make

    for queue in queues:
        await queue.stop()
    await writer.close()


@pytest_asyncio.fixture
async def make_registry(session_factory, policy, timings):
    """Each registry stands in for one worker process; all share the database."""
    registries: list[QueueRegistry] = []

    def _make(transport, **kwargs) -> QueueRegistry:
        writer = BatchWriter(session_factory, batch_size=50, batch_timeout=0.05)
        kwargs.setdefault("policy", policy)
        kwargs.setdefault("timings", timings)
        registry = QueueRegistry(session_factory, writer, transport, **kwargs)
        registries.append(registry)
        return registry

    yield _make

    for registry in registries:
        await registry.stop_all()
        await registry.writer.close()


@pytest.fixture
def wait_until():
    async def _wait(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                pytest.fail(f"Condition not met within {timeout}s")
            await asyncio.sleep(interval)

    return _wait
