"""Tests for the greeting pool."""
import random
from datetime import timedelta

from campaign_dispatch.db.models import Greeting
from campaign_dispatch.services.greeting_service import load_greeting_pool, pick_greeting
from campaign_dispatch.utils.normalization import utcnow

OWNER = "00000000-0000-0000-0000-000000000004"
OTHER = "00000000-0000-0000-0000-000000000005"


def _seed(db, *rows):
    base = utcnow()
    for index, (user_id, content, is_default, is_active) in enumerate(rows):
        db.add(
            Greeting(
                user_id=user_id,
                content=content,
                is_default=is_default,
                is_active=is_active,
                created_at=base + timedelta(seconds=index),
            )
        )
    db.commit()


def test_pool_combines_own_greetings_and_visible_defaults(db):
    _seed(
        db,
        (None, "Hello there", True, True),
        (None, "Greetings", True, True),
        (None, "Retired default", True, False),
        (OWNER, "Howdy", False, True),
        (OWNER, "Greetings", False, False),
        (OWNER, "Old favourite", False, False),
        (OTHER, "Ahoy", False, True),
    )

    assert load_greeting_pool(db, OWNER) == ["Howdy", "Hello there"]
    assert load_greeting_pool(db, OTHER) == ["Ahoy", "Hello there", "Greetings"]


def test_pool_without_owner_uses_defaults_only(db):
    _seed(db, (None, "Hello there", True, True), (OWNER, "Howdy", False, True))

    assert load_greeting_pool(db, None) == ["Hello there"]


def test_empty_pool(db):
    assert load_greeting_pool(db, OWNER) == []
    assert pick_greeting([], random.Random(0)) is None


def test_pick_greeting_draws_from_pool():
    rng = random.Random(7)
    picks = {pick_greeting(["Hi", "Hey"], rng) for _ in range(50)}
    assert picks == {"Hi", "Hey"}
