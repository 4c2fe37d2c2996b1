"""Process-level container tying the writer, registry and sweeper lifecycles together."""

from __future__ import annotations

import logging
from typing import Callable

from sqlalchemy.orm import Session

from campaign_dispatch.services.batch_writer import BatchWriter
from campaign_dispatch.services.campaign_queue import HealthPolicy, QueueTimings
from campaign_dispatch.services.email_transport import EmailTransport, build_transport
from campaign_dispatch.services.queue_registry import QueueRegistry
from campaign_dispatch.services.recovery_service import RecoveryReport, TaskRecoveryService

logger = logging.getLogger(__name__)


class DispatchEngine:
    """
    Owns one BatchWriter, one QueueRegistry and one TaskRecoveryService.

    ``start()`` runs startup recovery and the recurring sweep; ``shutdown()``
    halts every queue without changing stored campaign status, so the next
    process reattaches them, then flushes the writer.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        transport: EmailTransport | None = None,
        writer: BatchWriter | None = None,
        policy: HealthPolicy | None = None,
        timings: QueueTimings | None = None,
        sweep_interval: float | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.writer = writer or BatchWriter(session_factory)
        self.registry = QueueRegistry(
            session_factory,
            self.writer,
            transport or build_transport(),
            policy=policy,
            timings=timings,
        )
        self.recovery = TaskRecoveryService(
            self.registry, session_factory, sweep_interval=sweep_interval
        )
        self._started = False

    @property
    def is_started(self) -> bool:
        return self._started

    async def start(self) -> RecoveryReport | None:
        if self._started:
            return None
        self._started = True
        logger.info("Dispatch engine starting")
        return await self.recovery.initialize()

    async def shutdown(self) -> None:
        if not self._started:
            return
        self._started = False
        logger.info("Dispatch engine shutting down")
        await self.recovery.shutdown()
        await self.registry.stop_all()
        await self.writer.close()
