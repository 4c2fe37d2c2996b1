"""
Batched persistence for delivery records, campaign logs and counters.

Writes are buffered in memory and flushed in one transaction when the
combined buffer reaches ``batch_size`` or ``batch_timeout`` elapses. A failed
flush drops its buffers and logs the error rather than retrying.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.orm import Session

from campaign_dispatch.core.config import settings
from campaign_dispatch.core.structured_logging import build_log_context
from campaign_dispatch.db.enums import LogLevel, SentEmailStatus
from campaign_dispatch.schemas.dispatch import WriterStats
from campaign_dispatch.services import campaign_store
from campaign_dispatch.utils.normalization import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SentEmailRecord:
    """Terminal delivery record written without a prior claim row."""

    task_id: str
    campaign_id: str
    recipient_email: str
    status: SentEmailStatus
    recipient_name: str | None = None
    subject: str | None = None
    body: str | None = None
    user_id: str | None = None
    sender_profile_id: str | None = None
    message_id: str | None = None
    error_message: str | None = None
    sent_at: datetime = field(default_factory=utcnow)

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.task_id,
            "campaign_id": self.campaign_id,
            "user_id": self.user_id,
            "sender_profile_id": self.sender_profile_id,
            "recipient_email": self.recipient_email,
            "recipient_name": self.recipient_name,
            "subject": self.subject,
            "body": self.body,
            "status": self.status.value,
            "message_id": self.message_id,
            "error_message": campaign_store.truncate_error(self.error_message),
            "sent_at": self.sent_at,
            "created_at": self.sent_at,
        }


@dataclass
class LogEntry:
    campaign_id: str
    level: LogLevel
    message: str
    details: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=utcnow)

    def to_row(self) -> dict[str, Any]:
        return {
            "campaign_id": self.campaign_id,
            "level": self.level.value,
            "message": self.message,
            "details": self.details,
            "created_at": self.created_at,
        }


@dataclass
class StatsDelta:
    """Counter increments for one campaign; merged by campaign id."""

    campaign_id: str
    sent: int = 0
    failed: int = 0
    last_sent_at: datetime | None = None

    def merge(self, other: "StatsDelta") -> None:
        self.sent += other.sent
        self.failed += other.failed
        if other.last_sent_at is not None and (
            self.last_sent_at is None or other.last_sent_at > self.last_sent_at
        ):
            self.last_sent_at = other.last_sent_at


class BatchWriter:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        batch_size: int | None = None,
        batch_timeout: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.batch_size = batch_size or settings.batch_size
        self.batch_timeout = batch_timeout or settings.batch_timeout_seconds

        self._sent_emails: list[SentEmailRecord] = []
        self._logs: list[LogEntry] = []
        self._stats: dict[str, StatsDelta] = {}

        self._lock = asyncio.Lock()
        self._timer: asyncio.Task | None = None
        self._size_flush: asyncio.Task | None = None
        self._closed = False

        self._flush_count = 0
        self._failed_flush_count = 0
        self._dropped_items = 0
        self._last_flush_at: datetime | None = None

    @property
    def pending_count(self) -> int:
        return len(self._sent_emails) + len(self._logs) + len(self._stats)

    # ------------------------------------------------------------------
    # Buffering
    # ------------------------------------------------------------------

    def add_sent_email(self, record: SentEmailRecord) -> None:
        self._sent_emails.append(record)
        self._after_add()

    def add_log(self, entry: LogEntry) -> None:
        self._logs.append(entry)
        self._after_add()

    def log(
        self,
        campaign_id: str,
        level: LogLevel,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.add_log(LogEntry(campaign_id=campaign_id, level=level, message=message, details=details))

    def add_stats_update(self, delta: StatsDelta) -> None:
        existing = self._stats.get(delta.campaign_id)
        if existing is None:
            self._stats[delta.campaign_id] = StatsDelta(
                campaign_id=delta.campaign_id,
                sent=delta.sent,
                failed=delta.failed,
                last_sent_at=delta.last_sent_at,
            )
        else:
            existing.merge(delta)
        self._after_add()

    def _after_add(self) -> None:
        if self._closed:
            return
        if self.pending_count >= self.batch_size:
            if self._size_flush is None or self._size_flush.done():
                self._size_flush = asyncio.create_task(self.flush(reason="size"))
            return
        if self._timer is None or self._timer.done():
            self._timer = asyncio.create_task(self._flush_after_timeout())

    async def _flush_after_timeout(self) -> None:
        await asyncio.sleep(self.batch_timeout)
        await self.flush(reason="timeout")

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    async def force_flush(self) -> int:
        """Flush everything buffered now; callers needing exact counts use this."""
        await self._cancel_timer()
        return await self.flush(reason="forced")

    async def flush(self, *, reason: str = "manual") -> int:
        async with self._lock:
            sent_emails, self._sent_emails = self._sent_emails, []
            logs, self._logs = self._logs, []
            stats, self._stats = self._stats, {}
            item_count = len(sent_emails) + len(logs) + len(stats)
            if item_count == 0:
                return 0

            with self._session_factory() as db:
                try:
                    campaign_store.bulk_insert_sent_emails(db, [r.to_row() for r in sent_emails])
                    campaign_store.bulk_insert_logs(db, [e.to_row() for e in logs])
                    for delta in stats.values():
                        campaign_store.apply_counter_delta(
                            db,
                            delta.campaign_id,
                            sent=delta.sent,
                            failed=delta.failed,
                            last_sent_at=delta.last_sent_at,
                        )
                    db.commit()
                except Exception:
                    db.rollback()
                    self._failed_flush_count += 1
                    self._dropped_items += item_count
                    logger.exception(
                        "Batched flush failed; dropped %d buffered items",
                        item_count,
                        extra=build_log_context(source="batch_writer", action=reason),
                    )
                    return 0

            self._flush_count += 1
            self._last_flush_at = utcnow()
            logger.debug(
                "Flushed %d records, %d logs, %d counter updates",
                len(sent_emails),
                len(logs),
                len(stats),
                extra=build_log_context(source="batch_writer", action=reason),
            )
            return item_count

    async def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is None or timer.done() or timer is asyncio.current_task():
            return
        timer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await timer

    async def close(self) -> None:
        """Flush what remains and stop scheduling new flushes."""
        await self.force_flush()
        self._closed = True
        if self._size_flush is not None and not self._size_flush.done():
            with contextlib.suppress(asyncio.CancelledError):
                await self._size_flush

    def get_stats(self) -> WriterStats:
        return WriterStats(
            pending_sent_emails=len(self._sent_emails),
            pending_logs=len(self._logs),
            pending_stats_updates=len(self._stats),
            flush_count=self._flush_count,
            failed_flush_count=self._failed_flush_count,
            dropped_items=self._dropped_items,
            last_flush_at=self._last_flush_at,
            batch_size=self.batch_size,
            batch_timeout_seconds=self.batch_timeout,
        )
