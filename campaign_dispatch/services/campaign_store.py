"""
Persistent store primitives used by the dispatch engine.

Every function takes an open Session. Functions that end a unit of work
commit themselves; the ``bulk_*``/``apply_*`` helpers leave the commit to the
caller so the batched writer can group them into one transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Sequence

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from campaign_dispatch.db.enums import CampaignStatus, LogLevel, SentEmailStatus
from campaign_dispatch.db.models import Campaign, CampaignLog, SentEmail
from campaign_dispatch.utils.normalization import as_utc, utcnow

logger = logging.getLogger(__name__)

ERROR_MESSAGE_MAX_LENGTH = 500
EXISTENCE_CHECK_CHUNK = 500
INTERRUPTED_ERROR = "interrupted before completion"


@dataclass(frozen=True)
class CampaignCounts:
    """Authoritative counters read back from the store."""

    status: str
    total: int
    sent: int
    failed: int
    last_sent_at: datetime | None

    @property
    def processed(self) -> int:
        return self.sent + self.failed


def truncate_error(message: str | None) -> str | None:
    if message is None:
        return None
    return message[:ERROR_MESSAGE_MAX_LENGTH]


# =============================================================================
# Start lease
# =============================================================================


def try_acquire_lease(
    db: Session,
    campaign_id: str,
    token: str,
    ttl_seconds: int,
    *,
    allow_sending: bool = False,
    now: datetime | None = None,
) -> bool:
    """
    Compare-and-set the campaign's start lease.

    Succeeds only when no live token exists and, unless ``allow_sending`` is
    set (recovery reattaching a crashed campaign), the campaign is not
    already sending. Returns True when this caller now holds the lease.
    """
    now = now or utcnow()
    conditions = [
        Campaign.id == campaign_id,
        or_(
            Campaign.recovery_token.is_(None),
            Campaign.recovery_expires_at.is_(None),
            Campaign.recovery_expires_at < now,
        ),
    ]
    if not allow_sending:
        conditions.append(Campaign.status != CampaignStatus.SENDING.value)

    result = db.execute(
        update(Campaign)
        .where(and_(*conditions))
        .values(
            recovery_token=token,
            recovery_expires_at=now + timedelta(seconds=ttl_seconds),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def release_lease(db: Session, campaign_id: str, token: str) -> bool:
    """Clear the lease if ``token`` still owns it."""
    result = db.execute(
        update(Campaign)
        .where(Campaign.id == campaign_id, Campaign.recovery_token == token)
        .values(recovery_token=None, recovery_expires_at=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def force_release_lease(db: Session, campaign_id: str) -> bool:
    """Clear any lease regardless of owner (operator override)."""
    result = db.execute(
        update(Campaign)
        .where(Campaign.id == campaign_id, Campaign.recovery_token.is_not(None))
        .values(recovery_token=None, recovery_expires_at=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


# =============================================================================
# Campaign reads and status
# =============================================================================


def get_campaign(db: Session, campaign_id: str) -> Campaign | None:
    return db.get(Campaign, campaign_id)


def read_counts(db: Session, campaign_id: str) -> CampaignCounts | None:
    row = db.execute(
        select(
            Campaign.status,
            Campaign.total_recipients,
            Campaign.sent_count,
            Campaign.failed_count,
            Campaign.last_sent_at,
        ).where(Campaign.id == campaign_id)
    ).one_or_none()
    if row is None:
        return None
    return CampaignCounts(
        status=row.status,
        total=row.total_recipients or 0,
        sent=row.sent_count or 0,
        failed=row.failed_count or 0,
        last_sent_at=as_utc(row.last_sent_at),
    )


def set_status(
    db: Session,
    campaign_id: str,
    status: CampaignStatus,
    *,
    is_paused: bool | None = None,
    from_statuses: Iterable[str] | None = None,
    now: datetime | None = None,
) -> bool:
    """
    Persist a control transition. SENDING stamps ``started_at`` once.

    With ``from_statuses`` the row is only updated while its current status
    is one of them; returns False otherwise.
    """
    now = now or utcnow()
    values: dict[str, Any] = {"status": status.value, "updated_at": now}
    if is_paused is not None:
        values["is_paused"] = is_paused
    if status == CampaignStatus.SENDING:
        values["started_at"] = func.coalesce(Campaign.started_at, now)
    stmt = update(Campaign).where(Campaign.id == campaign_id)
    if from_statuses is not None:
        stmt = stmt.where(Campaign.status.in_(list(from_statuses)))
    result = db.execute(
        stmt
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def mark_completed(db: Session, campaign_id: str, now: datetime | None = None) -> bool:
    """Move a sending campaign to COMPLETED. No-op for any other status."""
    now = now or utcnow()
    result = db.execute(
        update(Campaign)
        .where(
            Campaign.id == campaign_id,
            Campaign.status == CampaignStatus.SENDING.value,
        )
        .values(
            status=CampaignStatus.COMPLETED.value,
            completed_at=now,
            is_paused=False,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def update_total_recipients(db: Session, campaign_id: str, total: int) -> None:
    db.execute(
        update(Campaign)
        .where(Campaign.id == campaign_id, Campaign.total_recipients != total)
        .values(total_recipients=total)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def list_campaigns_by_status(db: Session, status: CampaignStatus) -> Sequence[Campaign]:
    return db.scalars(
        select(Campaign).where(Campaign.status == status.value).order_by(Campaign.created_at)
    ).all()


def list_due_scheduled(db: Session, now: datetime | None = None) -> Sequence[Campaign]:
    now = now or utcnow()
    return db.scalars(
        select(Campaign)
        .where(
            Campaign.status == CampaignStatus.SCHEDULED.value,
            Campaign.scheduled_at.is_not(None),
            Campaign.scheduled_at <= now,
        )
        .order_by(Campaign.scheduled_at)
    ).all()


def list_stale_sending(db: Session, cutoff: datetime) -> Sequence[Campaign]:
    """SENDING campaigns whose last activity (last send, else start) predates ``cutoff``."""
    last_activity = func.coalesce(Campaign.last_sent_at, Campaign.started_at, Campaign.updated_at)
    return db.scalars(
        select(Campaign)
        .where(
            Campaign.status == CampaignStatus.SENDING.value,
            last_activity < cutoff,
        )
        .order_by(Campaign.created_at)
    ).all()


def write_log(
    db: Session,
    campaign_id: str,
    level: LogLevel,
    message: str,
    details: dict[str, Any] | None = None,
) -> None:
    """Write a campaign log line immediately (outside the batched writer)."""
    db.add(
        CampaignLog(
            campaign_id=campaign_id,
            level=level.value,
            message=message,
            details=details,
        )
    )
    db.commit()


# =============================================================================
# Delivery records
# =============================================================================


def claim_send(
    db: Session,
    *,
    task_id: str,
    campaign_id: str,
    recipient_email: str,
    recipient_name: str | None,
    subject: str | None,
    body: str | None,
    user_id: str | None = None,
    sender_profile_id: str | None = None,
) -> bool:
    """
    Insert the ``processing`` marker for a (campaign, recipient) pair.

    Returns False when the pair is already claimed or finished; the unique
    constraint is the arbiter across workers and processes.
    """
    db.add(
        SentEmail(
            id=task_id,
            campaign_id=campaign_id,
            user_id=user_id,
            sender_profile_id=sender_profile_id,
            recipient_email=recipient_email,
            recipient_name=recipient_name,
            subject=subject,
            body=body,
            status=SentEmailStatus.PROCESSING.value,
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True


def finalize_claim(
    db: Session,
    task_id: str,
    status: SentEmailStatus,
    *,
    message_id: str | None = None,
    error_message: str | None = None,
    now: datetime | None = None,
) -> bool:
    """Move a ``processing`` row to its terminal state. False if the row is gone."""
    result = db.execute(
        update(SentEmail)
        .where(
            SentEmail.id == task_id,
            SentEmail.status == SentEmailStatus.PROCESSING.value,
        )
        .values(
            status=status.value,
            message_id=message_id,
            error_message=truncate_error(error_message),
            sent_at=now or utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def existing_recipient_emails(
    db: Session, campaign_id: str, emails: Iterable[str]
) -> set[str]:
    """Return the subset of ``emails`` that already have a record in any state."""
    wanted = list(dict.fromkeys(email for email in emails if email))
    found: set[str] = set()
    for start in range(0, len(wanted), EXISTENCE_CHECK_CHUNK):
        chunk = wanted[start : start + EXISTENCE_CHECK_CHUNK]
        found.update(
            db.scalars(
                select(SentEmail.recipient_email).where(
                    SentEmail.campaign_id == campaign_id,
                    SentEmail.recipient_email.in_(chunk),
                )
            ).all()
        )
    return found


def count_records_by_status(db: Session, campaign_id: str) -> dict[str, int]:
    rows = db.execute(
        select(SentEmail.status, func.count())
        .where(SentEmail.campaign_id == campaign_id)
        .group_by(SentEmail.status)
    ).all()
    return {status: count for status, count in rows}


def reap_stale_claims(
    db: Session,
    *,
    older_than: datetime,
    exclude_task_ids: Iterable[str] = (),
    now: datetime | None = None,
) -> dict[str, int]:
    """
    Fail ``processing`` rows abandoned by a crashed worker.

    Rows created before ``older_than`` and not in ``exclude_task_ids`` become
    ``failed`` and their campaigns' failed counters are incremented so
    completion can close. Returns reaped counts per campaign.
    """
    now = now or utcnow()
    excluded = set(exclude_task_ids)
    rows = db.execute(
        select(SentEmail.id, SentEmail.campaign_id).where(
            SentEmail.status == SentEmailStatus.PROCESSING.value,
            SentEmail.created_at < older_than,
        )
    ).all()
    stale = [(task_id, campaign_id) for task_id, campaign_id in rows if task_id not in excluded]
    if not stale:
        return {}

    reaped: dict[str, int] = {}
    for task_id, campaign_id in stale:
        result = db.execute(
            update(SentEmail)
            .where(
                SentEmail.id == task_id,
                SentEmail.status == SentEmailStatus.PROCESSING.value,
            )
            .values(
                status=SentEmailStatus.FAILED.value,
                error_message=INTERRUPTED_ERROR,
                sent_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            reaped[campaign_id] = reaped.get(campaign_id, 0) + 1

    for campaign_id, count in reaped.items():
        apply_counter_delta(db, campaign_id, failed=count)
    db.commit()
    return reaped


# =============================================================================
# Batched writer helpers (caller commits)
# =============================================================================


def _insert_ignoring_duplicates(db: Session, model: type):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model).on_conflict_do_nothing()
    if dialect == "sqlite":
        return sqlite_insert(model).on_conflict_do_nothing()
    raise ValueError(f"Unsupported dialect for duplicate-tolerant insert: {dialect}")


def bulk_insert_sent_emails(db: Session, rows: list[dict[str, Any]]) -> None:
    if not rows:
        return
    db.execute(_insert_ignoring_duplicates(db, SentEmail), rows)


def bulk_insert_logs(db: Session, rows: list[dict[str, Any]]) -> None:
    if not rows:
        return
    db.execute(_insert_ignoring_duplicates(db, CampaignLog), rows)


def apply_counter_delta(
    db: Session,
    campaign_id: str,
    *,
    sent: int = 0,
    failed: int = 0,
    last_sent_at: datetime | None = None,
) -> None:
    """Atomically increment campaign counters in the current transaction."""
    if not sent and not failed and last_sent_at is None:
        return
    values: dict[str, Any] = {
        "sent_count": Campaign.sent_count + sent,
        "failed_count": Campaign.failed_count + failed,
    }
    if last_sent_at is not None:
        values["last_sent_at"] = last_sent_at
    db.execute(
        update(Campaign)
        .where(Campaign.id == campaign_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
