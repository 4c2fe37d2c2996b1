"""
Ordered recipient enumeration for a campaign.

Every source yields the same order on every call so that ``sent + failed``
can be used as a resume index.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from campaign_dispatch.db.enums import GroupSelectionMode, RecipientSource
from campaign_dispatch.db.models import Campaign, Recipient, RecipientDataset, RecipientList
from campaign_dispatch.utils.normalization import normalize_email, normalize_name


class RecipientSourceError(Exception):
    """Raised when a campaign's recipient source is missing or misconfigured."""


@dataclass(frozen=True)
class RecipientRef:
    """Recipient address plus personalization fields keyed by placeholder name."""

    email: str
    name: str | None = None
    fields: Mapping[str, str] = field(default_factory=dict)


def _stringify_fields(raw: Mapping[str, Any] | None, *, exclude: set[str]) -> dict[str, str]:
    if not raw:
        return {}
    excluded = {name.lower() for name in exclude}
    return {
        str(key): "" if value is None else str(value)
        for key, value in raw.items()
        if str(key).lower() not in excluded
    }


def _from_recipient_rows(rows: list[Recipient]) -> list[RecipientRef]:
    refs: list[RecipientRef] = []
    for row in rows:
        email = normalize_email(row.email)
        if not email:
            continue
        fields = _stringify_fields(row.fields, exclude={"email", "name"})
        if row.group_name:
            fields.setdefault("group", row.group_name)
        refs.append(RecipientRef(email=email, name=normalize_name(row.name), fields=fields))
    return refs


def _lookup(row: Mapping[str, Any], column: str | None) -> Any:
    if not column:
        return None
    if column in row:
        return row[column]
    lowered = column.lower()
    for key, value in row.items():
        if str(key).lower() == lowered:
            return value
    return None


def load_list_recipients(db: Session, campaign: Campaign) -> list[RecipientRef]:
    if not campaign.recipient_list_id or db.get(RecipientList, campaign.recipient_list_id) is None:
        raise RecipientSourceError("Recipient list not found")
    rows = db.scalars(
        select(Recipient)
        .where(Recipient.list_id == campaign.recipient_list_id)
        .order_by(Recipient.created_at, Recipient.id)
    ).all()
    return _from_recipient_rows(list(rows))


def load_dataset_recipients(db: Session, campaign: Campaign) -> list[RecipientRef]:
    dataset = db.get(RecipientDataset, campaign.dataset_id) if campaign.dataset_id else None
    if dataset is None:
        raise RecipientSourceError("Recipient dataset not found")

    refs: list[RecipientRef] = []
    for row in dataset.rows or []:
        if not isinstance(row, dict):
            continue
        email = normalize_email(str(_lookup(row, dataset.email_column) or ""))
        if not email:
            continue
        raw_name = _lookup(row, dataset.name_column)
        exclude = {dataset.email_column, "email", "name"}
        if dataset.name_column:
            exclude.add(dataset.name_column)
        refs.append(
            RecipientRef(
                email=email,
                name=normalize_name(str(raw_name)) if raw_name is not None else None,
                fields=_stringify_fields(row, exclude=exclude),
            )
        )
    return refs


def load_group_recipients(db: Session, campaign: Campaign) -> list[RecipientRef]:
    query = select(Recipient).where(Recipient.user_id == campaign.user_id)
    if campaign.group_selection_mode == GroupSelectionMode.SPECIFIC.value:
        groups = [g for g in (campaign.selected_groups or []) if g]
        if not groups:
            raise RecipientSourceError("No recipient groups selected")
        query = query.where(Recipient.group_name.in_(groups))
    else:
        query = query.where(Recipient.group_name.is_not(None), Recipient.group_name != "")
    rows = db.scalars(query.order_by(Recipient.created_at, Recipient.id)).all()
    return _from_recipient_rows(list(rows))


def _unique_by_email(refs: list[RecipientRef]) -> list[RecipientRef]:
    seen: set[str] = set()
    unique: list[RecipientRef] = []
    for ref in refs:
        if ref.email in seen:
            continue
        seen.add(ref.email)
        unique.append(ref)
    return unique


def load_recipients(db: Session, campaign: Campaign) -> list[RecipientRef]:
    """
    Enumerate the campaign's recipients in stable order.

    An address listed more than once (after normalization) is kept at its
    first position only, so the enumeration length matches the number of
    delivery records the campaign can ever hold.
    """
    source = campaign.recipient_source
    if source == RecipientSource.DATASET.value:
        refs = load_dataset_recipients(db, campaign)
    elif source == RecipientSource.GROUP.value:
        refs = load_group_recipients(db, campaign)
    elif source == RecipientSource.LIST.value:
        refs = load_list_recipients(db, campaign)
    else:
        raise RecipientSourceError(f"Unknown recipient source: {source}")
    return _unique_by_email(refs)
