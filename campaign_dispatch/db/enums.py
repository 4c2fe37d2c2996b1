"""Enum definitions for dispatch constants."""

from enum import Enum


class CampaignStatus(str, Enum):
    """Status of a campaign."""

    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"
    FAILED = "failed"


class SentEmailStatus(str, Enum):
    """
    State of a sent-message record.

    PROCESSING is the pre-claim marker written before the transport call.
    """

    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class LogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class RecipientSource(str, Enum):
    """Where a campaign's recipients come from."""

    LIST = "list"
    DATASET = "dataset"
    GROUP = "group"


class GroupSelectionMode(str, Enum):
    ALL = "all"
    SPECIFIC = "specific"


TERMINAL_CAMPAIGN_STATUSES = frozenset(
    {CampaignStatus.STOPPED.value, CampaignStatus.COMPLETED.value, CampaignStatus.FAILED.value}
)

STOPPABLE_CAMPAIGN_STATUSES = frozenset(
    {CampaignStatus.SENDING.value, CampaignStatus.PAUSED.value, CampaignStatus.SCHEDULED.value}
)

PAUSABLE_CAMPAIGN_STATUSES = frozenset({CampaignStatus.SENDING.value})
