"""
Startup recovery and recurring sweep for abandoned campaigns.

The sweep deliberately uses thresholds far above the queue's own
self-healing tiers: it only steps in for campaigns with no live queue or a
queue that has sat idle for a long time, never for a queue that is merely
waiting out a long send interval.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session

from campaign_dispatch.core.async_utils import PeriodicTicker
from campaign_dispatch.core.config import settings
from campaign_dispatch.core.structured_logging import build_log_context
from campaign_dispatch.db.enums import CampaignStatus, TERMINAL_CAMPAIGN_STATUSES
from campaign_dispatch.db.models import Campaign
from campaign_dispatch.services import campaign_store
from campaign_dispatch.services.queue_registry import QueueRegistry
from campaign_dispatch.utils.normalization import as_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class RecoveryReport:
    reattached: list[str] = field(default_factory=list)
    paused: list[str] = field(default_factory=list)
    scheduled: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


@dataclass
class SweepReport:
    zombies: list[str] = field(default_factory=list)
    timed_out: list[str] = field(default_factory=list)
    scheduled: list[str] = field(default_factory=list)
    reaped_claims: dict[str, int] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)


class TaskRecoveryService:
    def __init__(
        self,
        registry: QueueRegistry,
        session_factory: Callable[[], Session],
        *,
        sweep_interval: float | None = None,
        zombie_threshold_minutes: float | None = None,
        timeout_threshold_minutes: float | None = None,
        critical_timeout_minutes: float | None = None,
        stale_claim_minutes: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.registry = registry
        self._session_factory = session_factory
        self.sweep_interval = sweep_interval or settings.RECOVERY_SWEEP_INTERVAL_SECONDS
        self.zombie_threshold = timedelta(
            minutes=zombie_threshold_minutes or settings.ZOMBIE_THRESHOLD_MINUTES
        )
        self.timeout_threshold = timedelta(
            minutes=timeout_threshold_minutes or settings.TIMEOUT_THRESHOLD_MINUTES
        )
        self.critical_timeout = timedelta(
            minutes=critical_timeout_minutes or settings.CRITICAL_TIMEOUT_MINUTES
        )
        self.stale_claim_age = timedelta(minutes=stale_claim_minutes or settings.STALE_CLAIM_MINUTES)
        self._clock = clock
        self._ticker: PeriodicTicker | None = None
        self._initialized = False

    @property
    def is_running(self) -> bool:
        return self._ticker is not None and self._ticker.is_running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> RecoveryReport | None:
        """Recover in-flight campaigns once, then start the recurring sweep."""
        if self._initialized:
            return None
        self._initialized = True
        report = await self.recover_campaign_tasks()
        self._ticker = PeriodicTicker(self.sweep_interval, self._sweep, name="campaign-recovery-sweep")
        self._ticker.start()
        logger.info(
            "Recovery service started: %d reattached, %d paused, %d scheduled, %d failed",
            len(report.reattached),
            len(report.paused),
            len(report.scheduled),
            len(report.failed),
            extra=build_log_context(source="recovery", action="initialize"),
        )
        return report

    async def shutdown(self) -> None:
        ticker, self._ticker = self._ticker, None
        if ticker is not None:
            await ticker.stop()
        self._initialized = False

    async def _sweep(self) -> None:
        await self.perform_health_check()

    # ------------------------------------------------------------------
    # Startup recovery
    # ------------------------------------------------------------------

    async def recover_campaign_tasks(self) -> RecoveryReport:
        report = RecoveryReport()
        with self._session_factory() as db:
            sending = [c.id for c in campaign_store.list_campaigns_by_status(db, CampaignStatus.SENDING)]
            paused = [c.id for c in campaign_store.list_campaigns_by_status(db, CampaignStatus.PAUSED)]

        for campaign_id in sending:
            if self.registry.is_queue_running(campaign_id):
                continue
            result = await self.registry.start_campaign(campaign_id, reattach=True)
            if result.success:
                report.reattached.append(campaign_id)
            else:
                report.failed[campaign_id] = result.error or "unknown error"

        for campaign_id in paused:
            if self.registry.get_queue(campaign_id) is not None:
                continue
            result = await self.registry.attach_paused(campaign_id)
            if result.success:
                report.paused.append(campaign_id)
            else:
                report.failed[campaign_id] = result.error or "unknown error"

        started, failed = await self.start_due_scheduled()
        report.scheduled.extend(started)
        report.failed.update(failed)
        return report

    async def start_due_scheduled(self) -> tuple[list[str], dict[str, str]]:
        with self._session_factory() as db:
            due = [c.id for c in campaign_store.list_due_scheduled(db, self._clock())]
        started: list[str] = []
        failed: dict[str, str] = {}
        for campaign_id in due:
            result = await self.registry.start_campaign(campaign_id)
            if result.success:
                started.append(campaign_id)
                logger.info(
                    "Started scheduled campaign",
                    extra=build_log_context(campaign_id=campaign_id, source="recovery", action="scheduled"),
                )
            else:
                failed[campaign_id] = result.error or "unknown error"
        return started, failed

    # ------------------------------------------------------------------
    # Recurring sweep
    # ------------------------------------------------------------------

    async def perform_health_check(self) -> SweepReport:
        report = SweepReport()
        report.reaped_claims = self.reap_stale_claims()

        now = self._clock()
        handled: set[str] = set()

        with self._session_factory() as db:
            zombies = [c.id for c in campaign_store.list_stale_sending(db, now - self.zombie_threshold)]
        for campaign_id in zombies:
            queue = self.registry.get_queue(campaign_id)
            if queue is not None and queue.is_running and queue.has_pending_work:
                continue
            handled.add(campaign_id)
            if await self._recover(campaign_id, reason="zombie", report=report):
                report.zombies.append(campaign_id)

        with self._session_factory() as db:
            stale = list(campaign_store.list_stale_sending(db, now - self.timeout_threshold))
        critical_cutoff = now - self.critical_timeout
        for campaign in stale:
            if campaign.id in handled:
                continue
            queue = self.registry.get_queue(campaign.id)
            if queue is not None and queue.is_running:
                if queue.has_pending_work:
                    continue
                last_activity = self._last_activity(campaign)
                if last_activity is None or last_activity >= critical_cutoff:
                    continue
            if await self._recover(campaign.id, reason="timeout", report=report):
                report.timed_out.append(campaign.id)

        started, failed = await self.start_due_scheduled()
        report.scheduled.extend(started)
        report.failed.update(failed)
        return report

    @staticmethod
    def _last_activity(campaign: Campaign) -> datetime | None:
        return as_utc(campaign.last_sent_at or campaign.started_at or campaign.updated_at)

    async def _recover(self, campaign_id: str, *, reason: str, report: SweepReport) -> bool:
        context = build_log_context(campaign_id=campaign_id, source="recovery", action=reason)
        logger.warning("Recovering campaign (%s)", reason, extra=context)
        await self.registry.discard_queue(campaign_id)
        result = await self.registry.start_campaign(campaign_id, reattach=True)
        if not result.success:
            report.failed[campaign_id] = result.error or "unknown error"
            logger.warning("Recovery failed: %s", result.error, extra=context)
        return result.success

    def reap_stale_claims(self) -> dict[str, int]:
        """Fail claim rows left ``processing`` by a dead worker."""
        cutoff = self._clock() - self.stale_claim_age
        with self._session_factory() as db:
            reaped = campaign_store.reap_stale_claims(
                db,
                older_than=cutoff,
                exclude_task_ids=self.registry.in_flight_task_ids(),
                now=self._clock(),
            )
        for campaign_id, count in reaped.items():
            logger.warning(
                "Reaped %d interrupted claims",
                count,
                extra=build_log_context(campaign_id=campaign_id, source="recovery", action="reap"),
            )
        return reaped

    # ------------------------------------------------------------------
    # Manual recovery
    # ------------------------------------------------------------------

    async def recover_specific_task(self, campaign_id: str) -> tuple[bool, str]:
        with self._session_factory() as db:
            campaign = campaign_store.get_campaign(db, campaign_id)
            status = campaign.status if campaign is not None else None
        if status is None:
            return False, "Campaign not found"
        if status in TERMINAL_CAMPAIGN_STATUSES:
            return False, f"Campaign is {status}"

        queue = self.registry.get_queue(campaign_id)
        if queue is not None and queue.is_running and queue.has_pending_work:
            return True, "Campaign queue is already running"

        await self.registry.discard_queue(campaign_id)
        result = await self.registry.start_campaign(
            campaign_id, reattach=status == CampaignStatus.SENDING.value
        )
        if result.success:
            return True, "Campaign recovered"
        return False, result.error or "Recovery failed"
