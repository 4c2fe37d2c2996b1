"""Dispatch engine stats schemas."""
from datetime import datetime

from pydantic import BaseModel, Field


# =============================================================================
# Queue
# =============================================================================

class QueueStats(BaseModel):
    """Snapshot of one campaign queue."""
    campaign_id: str
    is_running: bool
    is_paused: bool
    pending: int
    in_flight: int
    active_consumers: int
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    last_activity_at: datetime | None = None
    last_send_at: datetime | None = None
    health_check_interval_seconds: float = 0.0


class GlobalQueueStats(BaseModel):
    """Totals across every registered queue."""
    total_queues: int = 0
    running_queues: int = 0
    paused_queues: int = 0
    pending_tasks: int = 0
    in_flight_tasks: int = 0
    campaigns: list[str] = Field(default_factory=list)


# =============================================================================
# Writer
# =============================================================================

class WriterStats(BaseModel):
    """Batched writer buffer sizes and flush counters."""
    pending_sent_emails: int = 0
    pending_logs: int = 0
    pending_stats_updates: int = 0
    flush_count: int = 0
    failed_flush_count: int = 0
    dropped_items: int = 0
    last_flush_at: datetime | None = None
    batch_size: int
    batch_timeout_seconds: float
