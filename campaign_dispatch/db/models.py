"""SQLAlchemy ORM models for campaigns, recipients and delivery records."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from campaign_dispatch.db.base import Base
from campaign_dispatch.db.enums import (
    CampaignStatus,
    GroupSelectionMode,
    RecipientSource,
    SentEmailStatus,
)
from campaign_dispatch.utils.normalization import utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# Campaign content
# =============================================================================


class EmailTemplate(Base):
    """Subject and body with ``{{placeholder}}`` markers."""

    __tablename__ = "email_templates"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    html_content: Mapped[str] = mapped_column(Text, nullable=False)
    is_rich_text: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


class Greeting(Base):
    """
    Greeting pool entry substituted for ``{{greeting}}``.

    Rows with no ``user_id`` and ``is_default`` are shared defaults. A user
    hides a default by owning an inactive, non-default row with the same
    content.
    """

    __tablename__ = "greetings"
    __table_args__ = (Index("idx_greetings_user_active", "user_id", "is_active"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    content: Mapped[str] = mapped_column(String(200), nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


class SenderProfile(Base):
    """Sender identity and SMTP credentials used by the transport."""

    __tablename__ = "sender_profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    nickname: Mapped[str | None] = mapped_column(String(200), nullable=True)
    smtp_host: Mapped[str | None] = mapped_column(String(255), nullable=True)
    smtp_port: Mapped[int] = mapped_column(Integer, default=587, nullable=False)
    smtp_username: Mapped[str | None] = mapped_column(String(320), nullable=True)
    smtp_password: Mapped[str | None] = mapped_column(String(500), nullable=True)
    use_tls: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


# =============================================================================
# Recipient sources
# =============================================================================


class RecipientList(Base):
    __tablename__ = "recipient_lists"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


class Recipient(Base):
    """
    A contact owned by a user.

    Belongs to a fixed list (``list_id``) and/or a named group; ``fields``
    holds extra personalization values keyed by placeholder name.
    """

    __tablename__ = "recipients"
    __table_args__ = (
        Index("idx_recipients_list_order", "list_id", "created_at", "id"),
        Index("idx_recipients_user_group", "user_id", "group_name"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    list_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("recipient_lists.id", ondelete="CASCADE"), nullable=True
    )
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    group_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    fields: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


class RecipientDataset(Base):
    """Uploaded tabular dataset; ``rows`` keeps upload order."""

    __tablename__ = "recipient_datasets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email_column: Mapped[str] = mapped_column(String(100), default="email", nullable=False)
    name_column: Mapped[str | None] = mapped_column(String(100), default="name", nullable=True)
    rows: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


# =============================================================================
# Campaigns and delivery
# =============================================================================


class Campaign(Base):
    """
    One bulk send job.

    Counters are maintained by the batched writer; ``recovery_token`` and
    ``recovery_expires_at`` form the start lease used across processes.
    """

    __tablename__ = "campaigns"
    __table_args__ = (
        Index("idx_campaigns_status", "status"),
        Index("idx_campaigns_status_scheduled", "status", "scheduled_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=CampaignStatus.DRAFT.value, nullable=False
    )

    template_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("email_templates.id", ondelete="SET NULL"), nullable=True
    )
    sender_profile_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("sender_profiles.id", ondelete="SET NULL"), nullable=True
    )

    # Recipient source
    recipient_source: Mapped[str] = mapped_column(
        String(20), default=RecipientSource.LIST.value, nullable=False
    )  # 'list' | 'dataset' | 'group'
    recipient_list_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("recipient_lists.id", ondelete="SET NULL"), nullable=True
    )
    dataset_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("recipient_datasets.id", ondelete="SET NULL"), nullable=True
    )
    group_selection_mode: Mapped[str] = mapped_column(
        String(20), default=GroupSelectionMode.ALL.value, nullable=False
    )
    selected_groups: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    # Counters
    total_recipients: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sent_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_sent_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Control
    is_paused: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recovery_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    recovery_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Rate control (seconds)
    send_interval_seconds: Mapped[float] = mapped_column(Float, default=60.0, nullable=False)
    enable_random_interval: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    random_interval_min: Mapped[float | None] = mapped_column(Float, nullable=True)
    random_interval_max: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Timeline
    scheduled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)


class SentEmail(Base):
    """
    One delivery attempt per (campaign, recipient).

    The primary key is the in-memory task id. The unique constraint covers
    every state, so the ``processing`` claim itself blocks a second attempt.
    """

    __tablename__ = "sent_emails"
    __table_args__ = (
        UniqueConstraint("campaign_id", "recipient_email", name="uq_sent_email_campaign_recipient"),
        Index("idx_sent_emails_status_created", "status", "created_at"),
        Index("idx_sent_emails_campaign_sent", "campaign_id", "sent_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    campaign_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    sender_profile_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    recipient_email: Mapped[str] = mapped_column(String(320), nullable=False)
    recipient_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    subject: Mapped[str | None] = mapped_column(String(500), nullable=True)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default=SentEmailStatus.PROCESSING.value, nullable=False
    )
    message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_message: Mapped[str | None] = mapped_column(String(500), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


class CampaignLog(Base):
    """User-visible campaign log line."""

    __tablename__ = "campaign_logs"
    __table_args__ = (Index("idx_campaign_logs_campaign_created", "campaign_id", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    campaign_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    level: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
