"""Greeting pool for the ``{{greeting}}`` placeholder."""

from __future__ import annotations

import random
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from campaign_dispatch.db.models import Greeting


def load_greeting_pool(db: Session, user_id: str | None) -> list[str]:
    """
    Active personal greetings followed by the shared defaults the user has not hidden.

    An empty pool means callers fall back to the time-of-day greeting.
    """
    own: list[str] = []
    hidden: list[str] = []
    if user_id:
        rows = db.scalars(
            select(Greeting)
            .where(Greeting.user_id == user_id, Greeting.is_default.is_(False))
            .order_by(Greeting.created_at, Greeting.id)
        ).all()
        for row in rows:
            (own if row.is_active else hidden).append(row.content)

    query = select(Greeting.content).where(
        Greeting.user_id.is_(None),
        Greeting.is_default.is_(True),
        Greeting.is_active.is_(True),
    )
    if hidden:
        query = query.where(Greeting.content.not_in(hidden))
    defaults = db.scalars(query.order_by(Greeting.created_at, Greeting.id)).all()
    return own + list(defaults)


def pick_greeting(pool: Sequence[str], rng: random.Random) -> str | None:
    return rng.choice(pool) if pool else None
