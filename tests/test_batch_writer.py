"""Tests for batched persistence of records, logs and counters."""
import asyncio

import pytest

from campaign_dispatch.db.enums import CampaignStatus, LogLevel, SentEmailStatus
from campaign_dispatch.services import campaign_store
from campaign_dispatch.services.batch_writer import BatchWriter, SentEmailRecord, StatsDelta
from campaign_dispatch.utils.normalization import utcnow


@pytest.mark.asyncio
async def test_stats_updates_merge_per_campaign(make_campaign, session_factory, read_campaign):
    seeded = make_campaign(0, status=CampaignStatus.SENDING)
    writer = BatchWriter(session_factory, batch_size=100, batch_timeout=60)
    latest = utcnow()

    writer.add_stats_update(StatsDelta(campaign_id=seeded.id, sent=1))
    writer.add_stats_update(StatsDelta(campaign_id=seeded.id, sent=1, last_sent_at=latest))
    writer.add_stats_update(StatsDelta(campaign_id=seeded.id, failed=1))

    assert writer.get_stats().pending_stats_updates == 1
    assert await writer.force_flush() == 1

    campaign = read_campaign(seeded.id)
    assert campaign.sent_count == 2
    assert campaign.failed_count == 1
    assert campaign.last_sent_at is not None
    await writer.close()


@pytest.mark.asyncio
async def test_flushes_when_batch_size_is_reached(make_campaign, session_factory, logs_for):
    seeded = make_campaign(0)
    writer = BatchWriter(session_factory, batch_size=3, batch_timeout=60)

    for index in range(3):
        writer.log(seeded.id, LogLevel.INFO, f"line {index}")
    for _ in range(50):
        if writer.get_stats().flush_count:
            break
        await asyncio.sleep(0.01)

    assert writer.get_stats().flush_count == 1
    assert [log.message for log in logs_for(seeded.id)] == ["line 0", "line 1", "line 2"]
    await writer.close()


@pytest.mark.asyncio
async def test_flushes_after_timeout(make_campaign, session_factory, logs_for):
    seeded = make_campaign(0)
    writer = BatchWriter(session_factory, batch_size=100, batch_timeout=0.05)

    writer.log(seeded.id, LogLevel.WARNING, "slow lane", {"attempt": 1})
    assert logs_for(seeded.id) == []
    await asyncio.sleep(0.2)

    logs = logs_for(seeded.id)
    assert len(logs) == 1
    assert logs[0].level == LogLevel.WARNING.value
    assert logs[0].details == {"attempt": 1}
    await writer.close()


@pytest.mark.asyncio
async def test_duplicate_sent_record_is_ignored(make_campaign, session_factory, records_for):
    seeded = make_campaign(1)
    with session_factory() as db:
        campaign_store.claim_send(
            db,
            task_id="claimed",
            campaign_id=seeded.id,
            recipient_email=seeded.emails[0],
            recipient_name=None,
            subject="s",
            body="b",
        )
    writer = BatchWriter(session_factory, batch_size=100, batch_timeout=60)
    writer.add_sent_email(
        SentEmailRecord(
            task_id="late-duplicate",
            campaign_id=seeded.id,
            recipient_email=seeded.emails[0],
            status=SentEmailStatus.SENT,
        )
    )

    await writer.force_flush()

    records = records_for(seeded.id)
    assert [r.id for r in records] == ["claimed"]
    assert writer.get_stats().failed_flush_count == 0
    await writer.close()


@pytest.mark.asyncio
async def test_failed_flush_drops_buffers(make_campaign, session_factory, logs_for, monkeypatch):
    seeded = make_campaign(0)
    writer = BatchWriter(session_factory, batch_size=100, batch_timeout=60)
    writer.log(seeded.id, LogLevel.INFO, "lost")
    writer.add_stats_update(StatsDelta(campaign_id=seeded.id, sent=1))

    def _boom(*_args, **_kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(campaign_store, "apply_counter_delta", _boom)
    assert await writer.force_flush() == 0

    stats = writer.get_stats()
    assert stats.failed_flush_count == 1
    assert stats.dropped_items == 2
    assert writer.pending_count == 0
    # The log insert ran in the rolled-back transaction
    assert logs_for(seeded.id) == []
    await writer.close()


@pytest.mark.asyncio
async def test_close_flushes_remaining_items(make_campaign, session_factory, logs_for):
    seeded = make_campaign(0)
    writer = BatchWriter(session_factory, batch_size=100, batch_timeout=60)
    writer.log(seeded.id, LogLevel.INFO, "bye")

    await writer.close()

    assert [log.message for log in logs_for(seeded.id)] == ["bye"]
    assert writer.get_stats().last_flush_at is not None


def test_batch_defaults_follow_environment(session_factory, monkeypatch):
    from campaign_dispatch.core import config

    monkeypatch.setattr(config.settings, "ENV", "production")
    writer = BatchWriter(session_factory)
    assert writer.batch_size == 30
    assert writer.batch_timeout == 10.0

    monkeypatch.setattr(config.settings, "ENV", "dev")
    writer = BatchWriter(session_factory)
    assert writer.batch_size == 50
    assert writer.batch_timeout == 5.0
