"""
Per-campaign send queue.

One CampaignQueue drives one campaign: an in-memory FIFO of rendered tasks,
exactly one worker loop sending serially at the campaign's configured pace,
and a health monitor that escalates refresh -> force-progress -> consumer
restart when the queue stops making progress.

At-most-once delivery rests on the ``processing`` claim row: the unique
(campaign, recipient) constraint rejects a second claim from any worker or
process, and the claim is never retried after a transport failure.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Sequence

from sqlalchemy.orm import Session

from campaign_dispatch.core.async_utils import PeriodicTicker
from campaign_dispatch.core.config import settings
from campaign_dispatch.core.structured_logging import build_log_context, mask_email
from campaign_dispatch.db.enums import CampaignStatus, LogLevel, SentEmailStatus
from campaign_dispatch.db.models import Campaign, EmailTemplate, SenderProfile
from campaign_dispatch.schemas.dispatch import QueueStats
from campaign_dispatch.services import campaign_store
from campaign_dispatch.services.batch_writer import BatchWriter, SentEmailRecord, StatsDelta
from campaign_dispatch.services.email_transport import EmailTransport, SendReceipt, SenderIdentity
from campaign_dispatch.services.greeting_service import load_greeting_pool, pick_greeting
from campaign_dispatch.services.recipient_source import (
    RecipientRef,
    RecipientSourceError,
    load_recipients,
)
from campaign_dispatch.services.template_renderer import (
    MessageTemplate,
    RenderedMessage,
    render_message,
)
from campaign_dispatch.utils.normalization import as_utc, utcnow

logger = logging.getLogger(__name__)

Renderer = Callable[..., RenderedMessage]
CompletionCallback = Callable[[str], Awaitable[None]]


# =============================================================================
# Tasks and results
# =============================================================================


@dataclass
class EmailTask:
    """In-memory unit of work; ``id`` doubles as the sent-record primary key."""

    campaign_id: str
    recipient_email: str
    recipient_name: str | None
    subject: str
    body: str
    sender: SenderIdentity
    user_id: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    retry_count: int = 0
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class AddTasksResult:
    success: bool
    added: int = 0
    skipped_existing: int = 0
    total_recipients: int = 0
    start_index: int = 0
    deferred: bool = False
    error: str | None = None


@dataclass
class QueueCounters:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0


# =============================================================================
# Pacing and health policy
# =============================================================================


@dataclass(frozen=True)
class RateConfig:
    """Inter-send delay: fixed, or uniform in [random_min, random_max]."""

    fixed_interval: float
    random_enabled: bool = False
    random_min: float = 0.0
    random_max: float = 0.0

    @classmethod
    def from_campaign(cls, campaign: Campaign | None) -> "RateConfig":
        default = settings.DEFAULT_SEND_INTERVAL_SECONDS
        if campaign is None:
            return cls(fixed_interval=default)
        fixed = float(campaign.send_interval_seconds) if campaign.send_interval_seconds is not None else default
        if campaign.enable_random_interval:
            low = float(campaign.random_interval_min or 0)
            high = float(campaign.random_interval_max or 0)
            if high < low:
                low, high = high, low
            if high > 0:
                return cls(fixed_interval=fixed, random_enabled=True, random_min=low, random_max=high)
        return cls(fixed_interval=max(fixed, 0.0))

    @property
    def max_interval(self) -> float:
        return self.random_max if self.random_enabled else self.fixed_interval

    def next_delay(self, rng: random.Random) -> float:
        if self.random_enabled:
            return rng.uniform(self.random_min, self.random_max)
        return self.fixed_interval


class HealthAction(str, Enum):
    NONE = "none"
    REFRESH = "refresh"
    FORCE_PROGRESS = "force_progress"
    RESTART = "restart"


@dataclass(frozen=True)
class HealthThresholds:
    refresh: float
    force_progress: float
    restart: float


@dataclass(frozen=True)
class HealthPolicy:
    """
    Self-healing thresholds, all derived from the campaign's max send interval.

    The check runs every ``max_interval / 2`` clamped to [check_min, check_max].
    Refresh fires after ``refresh_multiplier`` intervals of inactivity (never
    below ``refresh_floor_seconds``); force-progress and restart follow at the
    remaining multiplier gaps on top of that.
    """

    check_min_seconds: float = 30.0
    check_max_seconds: float = 120.0
    refresh_multiplier: float = 3.0
    force_progress_multiplier: float = 5.0
    restart_multiplier: float = 8.0
    refresh_floor_seconds: float = 90.0

    @classmethod
    def from_settings(cls) -> "HealthPolicy":
        return cls(
            check_min_seconds=settings.HEALTH_CHECK_MIN_SECONDS,
            check_max_seconds=settings.HEALTH_CHECK_MAX_SECONDS,
            refresh_multiplier=settings.HEALTH_REFRESH_MULTIPLIER,
            force_progress_multiplier=settings.HEALTH_FORCE_PROGRESS_MULTIPLIER,
            restart_multiplier=settings.HEALTH_RESTART_MULTIPLIER,
            refresh_floor_seconds=settings.HEALTH_REFRESH_FLOOR_SECONDS,
        )

    def check_interval(self, max_interval: float) -> float:
        return min(max(max_interval / 2, self.check_min_seconds), self.check_max_seconds)

    def thresholds(self, max_interval: float) -> HealthThresholds:
        refresh = max(self.refresh_multiplier * max_interval, self.refresh_floor_seconds)
        force_progress = refresh + (self.force_progress_multiplier - self.refresh_multiplier) * max_interval
        restart = force_progress + (self.restart_multiplier - self.force_progress_multiplier) * max_interval
        return HealthThresholds(refresh=refresh, force_progress=force_progress, restart=restart)

    def classify(self, idle_seconds: float, max_interval: float) -> HealthAction:
        limits = self.thresholds(max_interval)
        if idle_seconds >= limits.restart:
            return HealthAction.RESTART
        if idle_seconds >= limits.force_progress:
            return HealthAction.FORCE_PROGRESS
        if idle_seconds >= limits.refresh:
            return HealthAction.REFRESH
        return HealthAction.NONE


@dataclass(frozen=True)
class QueueTimings:
    """Guard intervals for enumeration, completion checks and waits (seconds)."""

    max_wait_slice: float = 60.0
    idle_poll: float = 1.0
    add_cooldown: float = 5.0
    reload_after: float = 60.0
    completion_cooldown: float = 30.0
    recent_activity_window: float = 300.0
    halt_grace: float = 5.0

    @classmethod
    def from_settings(cls) -> "QueueTimings":
        return cls(
            max_wait_slice=settings.MAX_WAIT_SLICE_SECONDS,
            idle_poll=settings.IDLE_POLL_SECONDS,
            add_cooldown=settings.TASK_ADD_COOLDOWN_SECONDS,
            reload_after=settings.TASK_RELOAD_AFTER_SECONDS,
            completion_cooldown=settings.COMPLETION_CHECK_COOLDOWN_SECONDS,
            recent_activity_window=settings.RECENT_ACTIVITY_SECONDS,
        )


# =============================================================================
# Queue
# =============================================================================


class CampaignQueue:
    def __init__(
        self,
        campaign_id: str,
        *,
        session_factory: Callable[[], Session],
        writer: BatchWriter,
        transport: EmailTransport,
        on_complete: CompletionCallback | None = None,
        policy: HealthPolicy | None = None,
        timings: QueueTimings | None = None,
        renderer: Renderer = render_message,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        self.campaign_id = campaign_id
        self._session_factory = session_factory
        self.writer = writer
        self.transport = transport
        self._on_complete = on_complete
        self.policy = policy or HealthPolicy.from_settings()
        self.timings = timings or QueueTimings.from_settings()
        self._render = renderer
        self._clock = clock
        self._rng = rng or random.Random()

        self._tasks: deque[EmailTask] = deque()
        self._in_flight: set[str] = set()
        self._running = False
        self._paused = False
        self._delivering = False
        self._completed = False

        self._worker: asyncio.Task | None = None
        self._active_consumers = 0
        self.max_active_consumers = 0
        self._wake = asyncio.Event()
        self._health_ticker: PeriodicTicker | None = None

        self._rate = RateConfig(fixed_interval=settings.DEFAULT_SEND_INTERVAL_SECONDS)
        self._bypass_rate_once = False
        self._last_send_monotonic: float | None = None
        self._last_send_at: datetime | None = None
        self._last_activity_monotonic = time.monotonic()
        self._last_activity_at: datetime = clock()
        self._last_refresh_at: datetime | None = None

        self._adding_tasks = False
        self._last_add_monotonic: float | None = None
        self._last_completion_check: float | None = None
        self._last_counts: campaign_store.CampaignCounts | None = None

        self.counters = QueueCounters()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_completed(self) -> bool:
        return self._completed

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    @property
    def active_consumers(self) -> int:
        return self._active_consumers

    @property
    def has_pending_work(self) -> bool:
        return bool(self._tasks or self._in_flight)

    @property
    def in_flight_ids(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    @property
    def rate(self) -> RateConfig:
        return self._rate

    def seconds_since_activity(self) -> float:
        return time.monotonic() - self._last_activity_monotonic

    def _touch(self) -> None:
        self._last_activity_monotonic = time.monotonic()
        self._last_activity_at = self._clock()

    def _log_context(self, action: str | None = None, task_id: str | None = None) -> dict:
        return build_log_context(
            campaign_id=self.campaign_id, task_id=task_id, source="campaign_queue", action=action
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, concurrency: int = 1) -> None:
        """Start the single worker and the health monitor; no-op when already running."""
        if self._running and self._active_consumers > 0:
            return
        if concurrency != 1:
            logger.info(
                "Requested concurrency %d ignored; campaigns send serially",
                concurrency,
                extra=self._log_context("start"),
            )
        self._rate = self._load_rate_config()
        self._running = True
        self._paused = False
        self._completed = False
        self._touch()
        self._spawn_worker()
        self._start_health_monitor()
        logger.info(
            "Campaign queue started with %d pending tasks (max interval %.1fs)",
            len(self._tasks),
            self._rate.max_interval,
            extra=self._log_context("start"),
        )

    async def stop(self) -> None:
        """Hard stop: discard pending tasks and halt the worker."""
        self._running = False
        self._paused = False
        dropped = len(self._tasks)
        self._tasks.clear()
        self._in_flight.clear()
        await self._stop_health_monitor()
        await self._halt_worker()
        logger.info(
            "Campaign queue stopped (%d pending tasks discarded)",
            dropped,
            extra=self._log_context("stop"),
        )

    async def pause(self) -> None:
        """Soft stop: keep pending tasks for ``resume``."""
        if self._paused:
            return
        self._paused = True
        self._running = False
        self._in_flight.clear()
        await self._stop_health_monitor()
        await self._halt_worker()
        logger.info(
            "Campaign queue paused with %d pending tasks",
            len(self._tasks),
            extra=self._log_context("pause"),
        )

    async def resume(self) -> None:
        if self._running and not self._paused:
            return
        self._rate = self._load_rate_config()
        self._paused = False
        self._running = True
        self._touch()
        self._spawn_worker()
        self._start_health_monitor()
        logger.info(
            "Campaign queue resumed with %d pending tasks",
            len(self._tasks),
            extra=self._log_context("resume"),
        )

    def clear_queue(self) -> int:
        dropped = len(self._tasks)
        self._tasks.clear()
        self._in_flight.clear()
        return dropped

    def _spawn_worker(self) -> None:
        # The consumer counter, not the task handle, decides: a worker that is
        # finishing a delivery after pause/stop keeps the slot until it exits.
        if self._active_consumers > 0:
            return
        self._active_consumers += 1
        self.max_active_consumers = max(self.max_active_consumers, self._active_consumers)
        self._worker = asyncio.create_task(
            self._worker_loop(), name=f"campaign-worker-{self.campaign_id}"
        )

    async def _halt_worker(self) -> None:
        self._wake.set()
        worker = self._worker
        if worker is None or worker.done() or worker is asyncio.current_task():
            return
        if self._delivering:
            # Exits on its own once the outcome is recorded
            return
        done, _ = await asyncio.wait({worker}, timeout=self.timings.halt_grace)
        if not done:
            worker.cancel()

    def _start_health_monitor(self) -> None:
        interval = self.policy.check_interval(self._rate.max_interval)
        if self._health_ticker is not None and self._health_ticker.is_running:
            if self._health_ticker.interval == interval:
                return
        self._health_ticker = PeriodicTicker(
            interval, self._health_tick, name=f"campaign-health-{self.campaign_id}"
        )
        self._health_ticker.start()

    async def _stop_health_monitor(self) -> None:
        ticker, self._health_ticker = self._health_ticker, None
        if ticker is not None:
            await ticker.stop()

    def _load_rate_config(self) -> RateConfig:
        with self._session_factory() as db:
            return RateConfig.from_campaign(campaign_store.get_campaign(db, self.campaign_id))

    # ------------------------------------------------------------------
    # Enumeration
    # ------------------------------------------------------------------

    async def add_tasks(self, *, force: bool = False) -> AddTasksResult:
        """
        Enumerate unprocessed recipients into tasks.

        Resumes at index ``sent + failed`` and skips recipients that already
        have a record in any state. Concurrent or rapid repeat calls are
        deferred; ``force`` bypasses only the cooldown.
        """
        if self._adding_tasks:
            return AddTasksResult(success=True, deferred=True)
        now_monotonic = time.monotonic()
        if (
            not force
            and self._last_add_monotonic is not None
            and now_monotonic - self._last_add_monotonic < self.timings.add_cooldown
        ):
            return AddTasksResult(success=True, deferred=True)

        self._adding_tasks = True
        self._last_add_monotonic = now_monotonic
        try:
            # Counters must be current to compute the resume index
            await self.writer.force_flush()
            return self._enumerate_tasks()
        except Exception as exc:
            logger.exception("Failed to enumerate campaign tasks", extra=self._log_context("add_tasks"))
            return AddTasksResult(success=False, error=str(exc) or exc.__class__.__name__)
        finally:
            self._adding_tasks = False

    def _enumerate_tasks(self) -> AddTasksResult:
        with self._session_factory() as db:
            campaign = campaign_store.get_campaign(db, self.campaign_id)
            if campaign is None:
                return AddTasksResult(success=False, error="Campaign not found")
            template = db.get(EmailTemplate, campaign.template_id) if campaign.template_id else None
            if template is None:
                return AddTasksResult(success=False, error="Email template not found")
            profile = (
                db.get(SenderProfile, campaign.sender_profile_id) if campaign.sender_profile_id else None
            )
            if profile is None:
                return AddTasksResult(success=False, error="Sender profile not found")
            if not profile.is_active:
                return AddTasksResult(success=False, error="Sender profile is inactive")

            try:
                recipients = load_recipients(db, campaign)
            except RecipientSourceError as exc:
                return AddTasksResult(success=False, error=str(exc))
            if not recipients:
                return AddTasksResult(success=False, error="Recipient list is empty")

            total = len(recipients)
            if campaign.total_recipients != total:
                campaign_store.update_total_recipients(db, self.campaign_id, total)

            start_index = (campaign.sent_count or 0) + (campaign.failed_count or 0)
            remaining = recipients[start_index:]
            existing = campaign_store.existing_recipient_emails(
                db, self.campaign_id, (r.email for r in remaining)
            )
            message_template = MessageTemplate(
                subject=template.subject,
                html_content=template.html_content,
                is_rich_text=template.is_rich_text,
            )
            sender = SenderIdentity.from_profile(profile)
            user_id = campaign.user_id
            greetings = load_greeting_pool(db, user_id)

        queued = {task.recipient_email for task in self._tasks}
        now = self._clock()
        added = 0
        skipped = 0
        for recipient in remaining:
            if recipient.email in existing or recipient.email in queued:
                skipped += 1
                continue
            queued.add(recipient.email)
            self._tasks.append(
                self._build_task(recipient, message_template, sender, user_id, now, greetings)
            )
            added += 1

        self.writer.log(
            self.campaign_id,
            LogLevel.INFO,
            f"Queued {added} emails from index {start_index} of {total}",
            {"added": added, "skipped_existing": skipped, "start_index": start_index, "total": total},
        )
        logger.info(
            "Queued %d tasks from index %d of %d (%d already recorded)",
            added,
            start_index,
            total,
            skipped,
            extra=self._log_context("add_tasks"),
        )
        return AddTasksResult(
            success=True,
            added=added,
            skipped_existing=skipped,
            total_recipients=total,
            start_index=start_index,
        )

    def _build_task(
        self,
        recipient: RecipientRef,
        template: MessageTemplate,
        sender: SenderIdentity,
        user_id: str | None,
        now: datetime,
        greetings: Sequence[str] = (),
    ) -> EmailTask:
        rendered = self._render(
            template, recipient, now=now, greeting=pick_greeting(greetings, self._rng)
        )
        return EmailTask(
            campaign_id=self.campaign_id,
            recipient_email=recipient.email,
            recipient_name=recipient.name,
            subject=rendered.subject,
            body=rendered.body,
            sender=sender,
            user_id=user_id,
        )

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def _worker_loop(self) -> None:
        try:
            while self._running and not self._paused:
                if not self._tasks:
                    await self._handle_idle()
                    continue

                task = self._tasks.popleft()
                await self._wait_for_send_slot()
                if self._paused:
                    self._tasks.appendleft(task)
                    break
                if not self._running:
                    break

                try:
                    await self._process_task(task)
                except Exception:
                    self.counters.failed += 1
                    self.counters.processed += 1
                    logger.exception(
                        "Unexpected error processing task",
                        extra=self._log_context("process", task.id),
                    )

                if not self._tasks and not self._in_flight and self._running:
                    await self.check_completion()
        except Exception:
            # The health monitor relaunches the worker once the queue looks stalled
            logger.exception("Campaign worker loop crashed", extra=self._log_context("worker"))
        finally:
            self._active_consumers -= 1
            if self._worker is asyncio.current_task():
                self._worker = None

    async def _wait(self, timeout: float) -> None:
        self._wake.clear()
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=max(timeout, 0))
        except asyncio.TimeoutError:
            pass

    async def _wait_for_send_slot(self) -> None:
        """Wait out the remainder of the inter-send delay in bounded slices."""
        delay = self._rate.next_delay(self._rng)
        while self._running and not self._paused:
            if self._bypass_rate_once:
                self._bypass_rate_once = False
                return
            if self._last_send_monotonic is None:
                return
            remaining = self._last_send_monotonic + delay - time.monotonic()
            if remaining <= 0:
                return
            await self._wait(min(remaining, self.timings.max_wait_slice))

    async def _handle_idle(self) -> None:
        if await self.check_completion():
            return
        if not self._running or self._paused or self._tasks:
            return
        if self._should_reload():
            result = await self.add_tasks()
            if not result.success:
                logger.warning(
                    "Reloading tasks failed: %s", result.error, extra=self._log_context("reload")
                )
        if not self._tasks and self._running:
            await self._wait(self.timings.idle_poll)

    def _should_reload(self) -> bool:
        counts = self._last_counts
        if counts is None or counts.status != CampaignStatus.SENDING.value:
            return False
        if counts.processed >= counts.total > 0:
            return False
        if self._last_add_monotonic is None:
            return True
        return time.monotonic() - self._last_add_monotonic > self.timings.reload_after

    def _read_control_state(self) -> tuple[str, bool] | None:
        with self._session_factory() as db:
            campaign = campaign_store.get_campaign(db, self.campaign_id)
            if campaign is None:
                return None
            return campaign.status, bool(campaign.is_paused)

    async def _process_task(self, task: EmailTask) -> None:
        state = self._read_control_state()
        if state is None or state[0] in (CampaignStatus.STOPPED.value, CampaignStatus.FAILED.value):
            self.counters.failed += 1
            self.counters.processed += 1
            self._touch()
            logger.info(
                "Dropping task; campaign is %s",
                state[0] if state else "missing",
                extra=self._log_context("drop", task.id),
            )
            return
        if state[1]:
            self.counters.skipped += 1
            self._touch()
            self.writer.log(
                self.campaign_id,
                LogLevel.INFO,
                f"Skipped {task.recipient_email}: campaign paused",
                {"task_id": task.id},
            )
            return

        self._in_flight.add(task.id)
        self._delivering = True
        try:
            with self._session_factory() as db:
                claimed = campaign_store.claim_send(
                    db,
                    task_id=task.id,
                    campaign_id=task.campaign_id,
                    recipient_email=task.recipient_email,
                    recipient_name=task.recipient_name,
                    subject=task.subject,
                    body=task.body,
                    user_id=task.user_id,
                    sender_profile_id=task.sender.profile_id,
                )
            if not claimed:
                self.counters.skipped += 1
                self._touch()
                logger.info(
                    "Recipient %s already claimed; skipping",
                    mask_email(task.recipient_email),
                    extra=self._log_context("claim", task.id),
                )
                return

            try:
                receipt = await self.transport.send(
                    task.sender,
                    task.recipient_email,
                    task.recipient_name,
                    task.subject,
                    task.body,
                    idempotency_key=task.id,
                )
            except Exception as exc:
                self._record_failure(task, str(exc) or exc.__class__.__name__)
            else:
                self._record_success(task, receipt)
        finally:
            self._in_flight.discard(task.id)
            self._delivering = False

    def _mark_attempt(self) -> datetime:
        now = self._clock()
        self._last_send_monotonic = time.monotonic()
        self._last_send_at = now
        self.counters.processed += 1
        self._touch()
        return now

    def _finalize(
        self,
        task: EmailTask,
        status: SentEmailStatus,
        *,
        now: datetime,
        message_id: str | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Move the claim row to its terminal state; returns whether counters should move."""
        with self._session_factory() as db:
            if campaign_store.finalize_claim(
                db, task.id, status, message_id=message_id, error_message=error_message, now=now
            ):
                return True
            if campaign_store.existing_recipient_emails(db, self.campaign_id, [task.recipient_email]):
                logger.warning(
                    "Record for %s already finalized elsewhere",
                    mask_email(task.recipient_email),
                    extra=self._log_context("finalize", task.id),
                )
                return False
        self.writer.add_sent_email(
            SentEmailRecord(
                task_id=task.id,
                campaign_id=task.campaign_id,
                recipient_email=task.recipient_email,
                recipient_name=task.recipient_name,
                subject=task.subject,
                body=task.body,
                user_id=task.user_id,
                sender_profile_id=task.sender.profile_id,
                status=status,
                message_id=message_id,
                error_message=error_message,
                sent_at=now,
            )
        )
        return True

    def _record_success(self, task: EmailTask, receipt: SendReceipt) -> None:
        now = self._mark_attempt()
        self.counters.sent += 1
        if self._finalize(task, SentEmailStatus.SENT, now=now, message_id=receipt.message_id):
            self.writer.add_stats_update(StatsDelta(campaign_id=self.campaign_id, sent=1, last_sent_at=now))
        self.writer.log(
            self.campaign_id,
            LogLevel.INFO,
            f"Sent to {task.recipient_email}",
            {"task_id": task.id, "message_id": receipt.message_id},
        )

    def _record_failure(self, task: EmailTask, error: str) -> None:
        now = self._mark_attempt()
        self.counters.failed += 1
        if self._finalize(task, SentEmailStatus.FAILED, now=now, error_message=error):
            self.writer.add_stats_update(StatsDelta(campaign_id=self.campaign_id, failed=1))
        self.writer.log(
            self.campaign_id,
            LogLevel.ERROR,
            f"Failed to send to {task.recipient_email}",
            {"task_id": task.id, "error": campaign_store.truncate_error(error)},
        )
        logger.warning(
            "Delivery to %s failed: %s",
            mask_email(task.recipient_email),
            error,
            extra=self._log_context("send", task.id),
        )

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def check_completion(self, *, force: bool = False) -> bool:
        """
        Mark the campaign COMPLETED when stored counts close.

        Flushes the writer first so counts are exact. Requires either recent
        send activity or at least one processed message so a campaign is
        never completed before its first batch is loaded.
        """
        if self._completed:
            return True
        now_monotonic = time.monotonic()
        if (
            not force
            and self._last_completion_check is not None
            and now_monotonic - self._last_completion_check < self.timings.completion_cooldown
        ):
            return False
        self._last_completion_check = now_monotonic

        await self.writer.force_flush()
        with self._session_factory() as db:
            counts = campaign_store.read_counts(db, self.campaign_id)
        self._last_counts = counts
        if counts is None or counts.status != CampaignStatus.SENDING.value:
            return False
        if counts.total <= 0 or counts.processed < counts.total:
            return False

        now = self._clock()
        last_sent_at = as_utc(counts.last_sent_at)
        recent = (
            last_sent_at is not None
            and (now - last_sent_at).total_seconds() <= self.timings.recent_activity_window
        )
        if not (recent or counts.processed > 0 or self.counters.processed > 0):
            return False

        with self._session_factory() as db:
            if not campaign_store.mark_completed(db, self.campaign_id, now=now):
                return False

        self._completed = True
        self.writer.log(
            self.campaign_id,
            LogLevel.INFO,
            "Campaign completed",
            {"sent": counts.sent, "failed": counts.failed, "total": counts.total},
        )
        await self.writer.force_flush()
        logger.info(
            "Campaign completed: sent=%d failed=%d total=%d",
            counts.sent,
            counts.failed,
            counts.total,
            extra=self._log_context("complete"),
        )
        if self._on_complete is not None:
            await self._on_complete(self.campaign_id)
        else:
            await self.stop()
        return True

    # ------------------------------------------------------------------
    # Self-healing
    # ------------------------------------------------------------------

    async def _health_tick(self) -> None:
        await self.perform_health_check()

    async def perform_health_check(self) -> HealthAction:
        if not self._running or self._paused:
            return HealthAction.NONE

        idle_seconds = self.seconds_since_activity()
        max_interval = self._rate.max_interval
        action = self.policy.classify(idle_seconds, max_interval)
        if action == HealthAction.NONE:
            return action

        if action == HealthAction.RESTART and not self._in_flight and self._active_consumers == 0:
            logger.warning(
                "No activity for %.0fs and no consumer; restarting worker",
                idle_seconds,
                extra=self._log_context("health_restart"),
            )
            self.writer.log(self.campaign_id, LogLevel.WARNING, "Queue stalled; worker restarted")
            self._spawn_worker()
            return HealthAction.RESTART

        if action in (HealthAction.RESTART, HealthAction.FORCE_PROGRESS):
            logger.warning(
                "No activity for %.0fs; forcing progress",
                idle_seconds,
                extra=self._log_context("health_force_progress"),
            )
            await self.refresh()
            await self.force_progress()
            return HealthAction.FORCE_PROGRESS

        logger.info(
            "No activity for %.0fs; refreshing queue state",
            idle_seconds,
            extra=self._log_context("health_refresh"),
        )
        await self.refresh()
        return HealthAction.REFRESH

    async def refresh(self) -> None:
        """Clear stuck in-flight markers and recompute completion; keeps the task list."""
        if not self._delivering:
            self._in_flight.clear()
        self._last_refresh_at = self._clock()
        if not self._tasks and not self._in_flight:
            await self.check_completion(force=True)
        else:
            await self.writer.force_flush()

    async def force_progress(self) -> None:
        """Let the next task skip the remaining rate-limit wait once."""
        if not self._delivering:
            self._in_flight.clear()
        self._bypass_rate_once = True
        self._wake.set()
        logger.info("Forcing progress", extra=self._log_context("force_progress"))

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> QueueStats:
        return QueueStats(
            campaign_id=self.campaign_id,
            is_running=self._running,
            is_paused=self._paused,
            pending=len(self._tasks),
            in_flight=len(self._in_flight),
            active_consumers=self._active_consumers,
            processed=self.counters.processed,
            sent=self.counters.sent,
            failed=self.counters.failed,
            skipped=self.counters.skipped,
            last_activity_at=self._last_activity_at,
            last_send_at=self._last_send_at,
            health_check_interval_seconds=self.policy.check_interval(self._rate.max_interval),
        )
