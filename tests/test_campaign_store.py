"""Tests for store primitives: start lease, claims, counters and listings."""
from datetime import timedelta

import pytest

from campaign_dispatch.db.enums import CampaignStatus, SentEmailStatus
from campaign_dispatch.services import campaign_store
from campaign_dispatch.utils.normalization import utcnow


def _claim(db, campaign_id, email, task_id):
    return campaign_store.claim_send(
        db,
        task_id=task_id,
        campaign_id=campaign_id,
        recipient_email=email,
        recipient_name="Someone",
        subject="Subject",
        body="<p>Body</p>",
    )


# =============================================================================
# Start lease
# =============================================================================

def test_lease_is_exclusive_until_released(make_campaign, db):
    seeded = make_campaign(1)

    assert campaign_store.try_acquire_lease(db, seeded.id, "first", 120) is True
    assert campaign_store.try_acquire_lease(db, seeded.id, "second", 120) is False

    assert campaign_store.release_lease(db, seeded.id, "second") is False
    assert campaign_store.release_lease(db, seeded.id, "first") is True
    assert campaign_store.try_acquire_lease(db, seeded.id, "second", 120) is True


def test_expired_lease_can_be_taken_over(make_campaign, db):
    seeded = make_campaign(1)
    assert campaign_store.try_acquire_lease(db, seeded.id, "crashed", 120)

    later = utcnow() + timedelta(seconds=121)
    assert campaign_store.try_acquire_lease(db, seeded.id, "next", 120, now=later) is True


def test_lease_refused_while_sending_unless_reattaching(make_campaign, db):
    seeded = make_campaign(1, status=CampaignStatus.SENDING)

    assert campaign_store.try_acquire_lease(db, seeded.id, "starter", 120) is False
    assert campaign_store.try_acquire_lease(db, seeded.id, "recovery", 120, allow_sending=True) is True


def test_force_release_clears_any_owner(make_campaign, db, read_campaign):
    seeded = make_campaign(1)
    campaign_store.try_acquire_lease(db, seeded.id, "stuck", 120)

    assert campaign_store.force_release_lease(db, seeded.id) is True
    assert campaign_store.force_release_lease(db, seeded.id) is False
    assert read_campaign(seeded.id).recovery_token is None


# =============================================================================
# Status
# =============================================================================

def test_set_status_stamps_started_at_once(make_campaign, db, read_campaign):
    seeded = make_campaign(1)
    first = utcnow() - timedelta(hours=1)

    campaign_store.set_status(db, seeded.id, CampaignStatus.SENDING, now=first)
    started_at = read_campaign(seeded.id).started_at
    campaign_store.set_status(db, seeded.id, CampaignStatus.PAUSED, is_paused=True)
    campaign_store.set_status(db, seeded.id, CampaignStatus.SENDING, is_paused=False)

    campaign = read_campaign(seeded.id)
    assert campaign.status == CampaignStatus.SENDING.value
    assert campaign.is_paused is False
    assert campaign.started_at == started_at


def test_set_status_with_allowed_sources_leaves_other_statuses(make_campaign, db, read_campaign):
    completed = make_campaign(1, status=CampaignStatus.COMPLETED)
    sending = make_campaign(1, status=CampaignStatus.SENDING)
    allowed = {CampaignStatus.SENDING.value}

    assert campaign_store.set_status(
        db, completed.id, CampaignStatus.PAUSED, is_paused=True, from_statuses=allowed
    ) is False
    assert campaign_store.set_status(
        db, sending.id, CampaignStatus.PAUSED, is_paused=True, from_statuses=allowed
    ) is True

    assert read_campaign(completed.id).status == CampaignStatus.COMPLETED.value
    assert read_campaign(completed.id).is_paused is False
    assert read_campaign(sending.id).status == CampaignStatus.PAUSED.value


def test_mark_completed_only_from_sending(make_campaign, db, read_campaign):
    stopped = make_campaign(1, status=CampaignStatus.STOPPED)
    sending = make_campaign(1, status=CampaignStatus.SENDING)

    assert campaign_store.mark_completed(db, stopped.id) is False
    assert campaign_store.mark_completed(db, sending.id) is True
    assert read_campaign(stopped.id).status == CampaignStatus.STOPPED.value
    assert read_campaign(sending.id).status == CampaignStatus.COMPLETED.value


def test_read_counts(make_campaign, db):
    seeded = make_campaign(1, status=CampaignStatus.SENDING, total_recipients=10, sent_count=6, failed_count=2)

    counts = campaign_store.read_counts(db, seeded.id)

    assert counts.status == CampaignStatus.SENDING.value
    assert counts.total == 10
    assert counts.processed == 8
    assert campaign_store.read_counts(db, "missing") is None


def test_list_due_scheduled_and_stale_sending(make_campaign, db, update_campaign):
    now = utcnow()
    due = make_campaign(1, status=CampaignStatus.SCHEDULED, scheduled_at=now - timedelta(minutes=5))
    make_campaign(1, status=CampaignStatus.SCHEDULED, scheduled_at=now + timedelta(minutes=5))
    stale = make_campaign(1, status=CampaignStatus.SENDING)
    fresh = make_campaign(1, status=CampaignStatus.SENDING)
    update_campaign(stale.id, last_sent_at=now - timedelta(hours=2))
    update_campaign(fresh.id, last_sent_at=now)

    assert [c.id for c in campaign_store.list_due_scheduled(db, now)] == [due.id]
    assert [c.id for c in campaign_store.list_stale_sending(db, now - timedelta(hours=1))] == [stale.id]


# =============================================================================
# Claims
# =============================================================================

def test_claim_is_unique_per_recipient(make_campaign, db):
    seeded = make_campaign(1)
    email = seeded.emails[0]

    assert _claim(db, seeded.id, email, "task-1") is True
    assert _claim(db, seeded.id, email, "task-2") is False
    # The session stays usable after the rejected insert
    assert campaign_store.existing_recipient_emails(db, seeded.id, [email]) == {email}


def test_finalize_claim_moves_processing_once(make_campaign, db, records_for):
    seeded = make_campaign(1)
    _claim(db, seeded.id, seeded.emails[0], "task-1")

    assert campaign_store.finalize_claim(db, "task-1", SentEmailStatus.SENT, message_id="abc") is True
    assert campaign_store.finalize_claim(db, "task-1", SentEmailStatus.FAILED, error_message="late") is False

    [record] = records_for(seeded.id)
    assert record.status == SentEmailStatus.SENT.value
    assert record.message_id == "abc"
    assert record.sent_at is not None


def test_finalize_truncates_error_message(make_campaign, db, records_for):
    seeded = make_campaign(1)
    _claim(db, seeded.id, seeded.emails[0], "task-1")

    campaign_store.finalize_claim(db, "task-1", SentEmailStatus.FAILED, error_message="x" * 2000)

    [record] = records_for(seeded.id)
    assert len(record.error_message) == campaign_store.ERROR_MESSAGE_MAX_LENGTH


def test_existing_recipient_emails_returns_subset(make_campaign, db):
    seeded = make_campaign(3)
    _claim(db, seeded.id, seeded.emails[0], "task-1")
    _claim(db, seeded.id, seeded.emails[2], "task-3")

    found = campaign_store.existing_recipient_emails(db, seeded.id, seeded.emails + ["nobody@example.com"])

    assert found == {seeded.emails[0], seeded.emails[2]}
    assert campaign_store.count_records_by_status(db, seeded.id) == {"processing": 2}


def test_reap_stale_claims_fails_old_rows_and_counts_them(make_campaign, db, read_campaign, records_for):
    seeded = make_campaign(3, status=CampaignStatus.SENDING)
    for index, email in enumerate(seeded.emails):
        _claim(db, seeded.id, email, f"task-{index}")
    campaign_store.finalize_claim(db, "task-0", SentEmailStatus.SENT)

    reaped = campaign_store.reap_stale_claims(
        db, older_than=utcnow() + timedelta(minutes=1), exclude_task_ids={"task-2"}
    )

    assert reaped == {seeded.id: 1}
    statuses = {r.id: r.status for r in records_for(seeded.id)}
    assert statuses == {"task-0": "sent", "task-1": "failed", "task-2": "processing"}
    assert read_campaign(seeded.id).failed_count == 1


def test_reap_ignores_recent_claims(make_campaign, db):
    seeded = make_campaign(1)
    _claim(db, seeded.id, seeded.emails[0], "task-0")

    assert campaign_store.reap_stale_claims(db, older_than=utcnow() - timedelta(minutes=15)) == {}


@pytest.mark.parametrize("message,expected", [(None, None), ("short", "short")])
def test_truncate_error_passthrough(message, expected):
    assert campaign_store.truncate_error(message) == expected
