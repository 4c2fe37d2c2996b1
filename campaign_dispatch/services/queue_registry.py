"""
Process-wide registry of campaign queues.

Owns the campaign id -> CampaignQueue map and the five control operations.
Starting goes through the store's start lease so that concurrent callers in
this or another process never double-start a campaign; losing the lease is
reported as success because someone else already drives the campaign.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Iterable

from sqlalchemy.orm import Session

from campaign_dispatch.core.config import settings
from campaign_dispatch.core.structured_logging import build_log_context
from campaign_dispatch.db.enums import (
    PAUSABLE_CAMPAIGN_STATUSES,
    STOPPABLE_CAMPAIGN_STATUSES,
    CampaignStatus,
    LogLevel,
)
from campaign_dispatch.schemas.dispatch import GlobalQueueStats, QueueStats
from campaign_dispatch.services import campaign_store
from campaign_dispatch.services.batch_writer import BatchWriter
from campaign_dispatch.services.campaign_queue import CampaignQueue, HealthPolicy, QueueTimings
from campaign_dispatch.services.email_transport import EmailTransport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of a control operation; errors never cross as exceptions."""

    success: bool
    error: str | None = None

    @classmethod
    def ok(cls) -> "DispatchResult":
        return cls(success=True)

    @classmethod
    def failed(cls, error: str) -> "DispatchResult":
        return cls(success=False, error=error)


class QueueRegistry:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        writer: BatchWriter,
        transport: EmailTransport,
        *,
        policy: HealthPolicy | None = None,
        timings: QueueTimings | None = None,
        lease_ttl_seconds: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.writer = writer
        self.transport = transport
        self.policy = policy or HealthPolicy.from_settings()
        self.timings = timings or QueueTimings.from_settings()
        self.lease_ttl_seconds = lease_ttl_seconds or settings.START_LEASE_TTL_SECONDS
        self._queues: dict[str, CampaignQueue] = {}

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_queue(self, campaign_id: str) -> CampaignQueue | None:
        return self._queues.get(campaign_id)

    def is_queue_running(self, campaign_id: str) -> bool:
        queue = self._queues.get(campaign_id)
        return queue is not None and queue.is_running

    def campaign_ids(self) -> list[str]:
        return list(self._queues)

    def in_flight_task_ids(self) -> set[str]:
        ids: set[str] = set()
        for queue in self._queues.values():
            ids.update(queue.in_flight_ids)
        return ids

    def _build_queue(self, campaign_id: str) -> CampaignQueue:
        return CampaignQueue(
            campaign_id,
            session_factory=self._session_factory,
            writer=self.writer,
            transport=self.transport,
            on_complete=self._handle_completion,
            policy=self.policy,
            timings=self.timings,
        )

    def _set_status(
        self,
        campaign_id: str,
        status: CampaignStatus,
        *,
        is_paused: bool | None = None,
        from_statuses: Iterable[str] | None = None,
    ) -> bool:
        with self._session_factory() as db:
            return campaign_store.set_status(
                db, campaign_id, status, is_paused=is_paused, from_statuses=from_statuses
            )

    def _current_status(self, campaign_id: str) -> str | None:
        with self._session_factory() as db:
            campaign = campaign_store.get_campaign(db, campaign_id)
            return campaign.status if campaign is not None else None

    # ------------------------------------------------------------------
    # Control operations
    # ------------------------------------------------------------------

    async def start_campaign(self, campaign_id: str, *, reattach: bool = False) -> DispatchResult:
        """
        Create or resume the campaign's queue under the start lease.

        ``reattach`` lets the recovery path take the lease for a campaign whose
        stored status is already SENDING (its previous process died).
        """
        context = build_log_context(campaign_id=campaign_id, source="queue_registry", action="start")
        token = uuid.uuid4().hex
        try:
            with self._session_factory() as db:
                acquired = campaign_store.try_acquire_lease(
                    db,
                    campaign_id,
                    token,
                    self.lease_ttl_seconds,
                    allow_sending=reattach,
                )
        except Exception as exc:
            logger.exception("Failed to acquire start lease", extra=context)
            return DispatchResult.failed(str(exc))

        if not acquired:
            logger.info("Start lease not acquired; campaign is driven elsewhere", extra=context)
            return DispatchResult.ok()

        try:
            return await self._start_with_lease(campaign_id, reattach=reattach)
        except Exception as exc:
            logger.exception("Failed to start campaign", extra=context)
            return DispatchResult.failed(str(exc) or exc.__class__.__name__)
        finally:
            try:
                with self._session_factory() as db:
                    campaign_store.release_lease(db, campaign_id, token)
            except Exception:
                logger.exception("Failed to release start lease", extra=context)

    async def _start_with_lease(self, campaign_id: str, *, reattach: bool) -> DispatchResult:
        queue = self._queues.get(campaign_id)
        if queue is not None and queue.is_running:
            return DispatchResult.ok()

        with self._session_factory() as db:
            campaign = campaign_store.get_campaign(db, campaign_id)
            status = campaign.status if campaign is not None else None
        if status is None:
            return DispatchResult.failed("Campaign not found")
        if status == CampaignStatus.COMPLETED.value:
            return DispatchResult.failed("Campaign already completed")

        if queue is None:
            queue = self._build_queue(campaign_id)
            self._queues[campaign_id] = queue
            self._set_status(campaign_id, CampaignStatus.SENDING, is_paused=False)
            self.writer.log(
                campaign_id,
                LogLevel.INFO,
                "Campaign reattached after restart" if reattach else "Campaign sending started",
            )
            result = await queue.add_tasks(force=True)
            if not result.success:
                await self._fail_campaign(campaign_id, result.error or "Task setup failed")
                return DispatchResult.failed(result.error or "Task setup failed")
            await queue.start(1)
            return DispatchResult.ok()

        if queue.pending_count == 0:
            result = await queue.add_tasks(force=True)
            if not result.success:
                await self._fail_campaign(campaign_id, result.error or "Task setup failed")
                return DispatchResult.failed(result.error or "Task setup failed")
        self._set_status(campaign_id, CampaignStatus.SENDING, is_paused=False)
        self.writer.log(campaign_id, LogLevel.INFO, "Campaign sending resumed")
        if queue.is_paused:
            await queue.resume()
        else:
            await queue.start(1)
        return DispatchResult.ok()

    async def stop_campaign(self, campaign_id: str) -> DispatchResult:
        """
        Persist STOPPED and discard the live queue.

        Only sending, paused or scheduled campaigns can be stopped; stopping
        an already stopped campaign is a no-op.
        """
        context = build_log_context(campaign_id=campaign_id, source="queue_registry", action="stop")
        try:
            applied = self._set_status(
                campaign_id,
                CampaignStatus.STOPPED,
                is_paused=False,
                from_statuses=STOPPABLE_CAMPAIGN_STATUSES,
            )
            if not applied:
                status = self._current_status(campaign_id)
                if status is None:
                    return DispatchResult.failed("Campaign not found")
                if status != CampaignStatus.STOPPED.value:
                    logger.info("Refusing to stop a %s campaign", status, extra=context)
                    return DispatchResult.failed(f"Cannot stop a {status} campaign")
            else:
                self.writer.log(campaign_id, LogLevel.INFO, "Campaign stopped")
            queue = self._queues.pop(campaign_id, None)
            if queue is not None:
                await queue.stop()
            logger.info("Campaign stopped", extra=context)
            return DispatchResult.ok()
        except Exception as exc:
            logger.exception("Failed to stop campaign", extra=context)
            return DispatchResult.failed(str(exc) or exc.__class__.__name__)

    async def pause_campaign(self, campaign_id: str) -> DispatchResult:
        """Persist PAUSED and pause the live queue. Only a sending campaign can be paused."""
        context = build_log_context(campaign_id=campaign_id, source="queue_registry", action="pause")
        try:
            applied = self._set_status(
                campaign_id,
                CampaignStatus.PAUSED,
                is_paused=True,
                from_statuses=PAUSABLE_CAMPAIGN_STATUSES,
            )
            if not applied:
                status = self._current_status(campaign_id)
                if status is None:
                    return DispatchResult.failed("Campaign not found")
                if status != CampaignStatus.PAUSED.value:
                    logger.info("Refusing to pause a %s campaign", status, extra=context)
                    return DispatchResult.failed(f"Cannot pause a {status} campaign")
            else:
                self.writer.log(campaign_id, LogLevel.INFO, "Campaign paused")
            queue = self._queues.get(campaign_id)
            if queue is not None:
                await queue.pause()
            logger.info("Campaign paused", extra=context)
            return DispatchResult.ok()
        except Exception as exc:
            logger.exception("Failed to pause campaign", extra=context)
            return DispatchResult.failed(str(exc) or exc.__class__.__name__)

    async def resume_campaign(self, campaign_id: str) -> DispatchResult:
        """Resume the live queue, or fall back to a full start when none exists."""
        queue = self._queues.get(campaign_id)
        if queue is None:
            return await self.start_campaign(campaign_id)

        context = build_log_context(campaign_id=campaign_id, source="queue_registry", action="resume")
        try:
            if queue.pending_count == 0:
                result = await queue.add_tasks(force=True)
                if not result.success:
                    await self._fail_campaign(campaign_id, result.error or "Task setup failed")
                    return DispatchResult.failed(result.error or "Task setup failed")
            self._set_status(campaign_id, CampaignStatus.SENDING, is_paused=False)
            self.writer.log(campaign_id, LogLevel.INFO, "Campaign resumed")
            await queue.resume()
            logger.info("Campaign resumed", extra=context)
            return DispatchResult.ok()
        except Exception as exc:
            logger.exception("Failed to resume campaign", extra=context)
            return DispatchResult.failed(str(exc) or exc.__class__.__name__)

    async def refresh_campaign(self, campaign_id: str) -> DispatchResult:
        """Rebuild the task list from the store (drops and re-enumerates pending tasks)."""
        queue = self._queues.get(campaign_id)
        if queue is None:
            return DispatchResult.failed("Campaign queue not found")

        context = build_log_context(campaign_id=campaign_id, source="queue_registry", action="refresh")
        try:
            dropped = queue.clear_queue()
            result = await queue.add_tasks(force=True)
            if not result.success:
                return DispatchResult.failed(result.error or "Task setup failed")
            if not queue.is_running and not queue.is_paused:
                await queue.start(1)
            self.writer.log(
                campaign_id,
                LogLevel.INFO,
                "Campaign queue refreshed",
                {"dropped": dropped, "added": result.added},
            )
            logger.info("Campaign queue refreshed (%d -> %d tasks)", dropped, result.added, extra=context)
            return DispatchResult.ok()
        except Exception as exc:
            logger.exception("Failed to refresh campaign", extra=context)
            return DispatchResult.failed(str(exc) or exc.__class__.__name__)

    async def force_progress_campaign(self, campaign_id: str) -> DispatchResult:
        queue = self._queues.get(campaign_id)
        if queue is None:
            return DispatchResult.failed("Campaign queue not found")
        await queue.force_progress()
        return DispatchResult.ok()

    async def attach_paused(self, campaign_id: str) -> DispatchResult:
        """Rebuild a paused campaign's queue with its tasks loaded but no worker."""
        if campaign_id in self._queues:
            return DispatchResult.ok()
        queue = self._build_queue(campaign_id)
        result = await queue.add_tasks(force=True)
        if not result.success:
            logger.warning(
                "Could not rebuild paused campaign: %s",
                result.error,
                extra=build_log_context(campaign_id=campaign_id, source="queue_registry", action="attach"),
            )
            return DispatchResult.failed(result.error or "Task setup failed")
        await queue.pause()
        self._queues[campaign_id] = queue
        return DispatchResult.ok()

    async def _fail_campaign(self, campaign_id: str, error: str) -> None:
        self._set_status(campaign_id, CampaignStatus.FAILED, is_paused=False)
        self.writer.log(campaign_id, LogLevel.ERROR, f"Campaign failed: {error}")
        queue = self._queues.pop(campaign_id, None)
        if queue is not None:
            await queue.stop()
        logger.warning(
            "Campaign marked failed: %s",
            error,
            extra=build_log_context(campaign_id=campaign_id, source="queue_registry", action="fail"),
        )

    async def _handle_completion(self, campaign_id: str) -> None:
        queue = self._queues.pop(campaign_id, None)
        if queue is not None:
            await queue.stop()

    async def discard_queue(self, campaign_id: str) -> bool:
        """Drop the local queue without touching stored status."""
        queue = self._queues.pop(campaign_id, None)
        if queue is None:
            return False
        await queue.stop()
        return True

    async def stop_all(self) -> None:
        """Halt every queue without touching stored status (recovery reattaches them)."""
        queues = list(self._queues.values())
        self._queues.clear()
        for queue in queues:
            await queue.stop()

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_all_stats(self) -> dict[str, QueueStats]:
        return {campaign_id: queue.get_stats() for campaign_id, queue in self._queues.items()}

    def get_global_stats(self) -> GlobalQueueStats:
        queues = list(self._queues.values())
        return GlobalQueueStats(
            total_queues=len(queues),
            running_queues=sum(1 for q in queues if q.is_running),
            paused_queues=sum(1 for q in queues if q.is_paused),
            pending_tasks=sum(q.pending_count for q in queues),
            in_flight_tasks=sum(q.in_flight_count for q in queues),
            campaigns=list(self._queues),
        )
