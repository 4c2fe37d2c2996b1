"""Tests for ordered recipient enumeration."""
from datetime import timedelta

import pytest

from campaign_dispatch.db.enums import GroupSelectionMode, RecipientSource
from campaign_dispatch.db.models import Campaign, Recipient, RecipientDataset
from campaign_dispatch.services.recipient_source import RecipientSourceError, load_recipients
from campaign_dispatch.utils.normalization import utcnow

USER_ID = "00000000-0000-0000-0000-000000000002"


def _campaign(**values) -> Campaign:
    values.setdefault("user_id", USER_ID)
    values.setdefault("name", "c")
    return Campaign(**values)


def test_list_source_is_ordered_and_normalized(make_campaign, db):
    seeded = make_campaign(3)
    campaign = db.get(Campaign, seeded.id)

    refs = load_recipients(db, campaign)

    assert [r.email for r in refs] == seeded.emails
    assert refs[0].name == "User 0"
    assert load_recipients(db, campaign) == refs


def test_list_source_missing_list_raises(db):
    with pytest.raises(RecipientSourceError, match="Recipient list not found"):
        load_recipients(db, _campaign(recipient_source=RecipientSource.LIST.value, recipient_list_id="nope"))


def test_dataset_source_uses_configured_columns(db):
    dataset = RecipientDataset(
        user_id=USER_ID,
        name="upload",
        email_column="E-Mail",
        name_column="Full Name",
        rows=[
            {"e-mail": "  Ada@Example.com ", "full name": "Ada  Lovelace", "city": "London"},
            {"e-mail": "", "full name": "No Address"},
            {"e-mail": "grace@example.com", "full name": None, "rank": 3},
        ],
    )
    db.add(dataset)
    db.commit()

    refs = load_recipients(
        db, _campaign(recipient_source=RecipientSource.DATASET.value, dataset_id=dataset.id)
    )

    assert [r.email for r in refs] == ["ada@example.com", "grace@example.com"]
    assert refs[0].name == "Ada Lovelace"
    assert refs[0].fields["city"] == "London"
    assert refs[1].name is None
    assert refs[1].fields["rank"] == "3"


def test_dataset_source_missing_dataset_raises(db):
    with pytest.raises(RecipientSourceError):
        load_recipients(db, _campaign(recipient_source=RecipientSource.DATASET.value, dataset_id=None))


def _seed_group_members(db):
    base = utcnow()
    members = [
        ("a@example.com", "vip"),
        ("b@example.com", "trial"),
        ("c@example.com", None),
        ("d@example.com", "vip"),
    ]
    for index, (email, group) in enumerate(members):
        db.add(
            Recipient(
                user_id=USER_ID,
                email=email,
                group_name=group,
                fields={"plan": "pro"},
                created_at=base + timedelta(seconds=index),
            )
        )
    db.commit()


def test_group_source_all_groups(db):
    _seed_group_members(db)

    refs = load_recipients(db, _campaign(recipient_source=RecipientSource.GROUP.value))

    assert [r.email for r in refs] == ["a@example.com", "b@example.com", "d@example.com"]
    assert refs[0].fields == {"plan": "pro", "group": "vip"}


def test_group_source_specific_groups(db):
    _seed_group_members(db)
    campaign = _campaign(
        recipient_source=RecipientSource.GROUP.value,
        group_selection_mode=GroupSelectionMode.SPECIFIC.value,
        selected_groups=["vip"],
    )

    assert [r.email for r in load_recipients(db, campaign)] == ["a@example.com", "d@example.com"]


def test_group_source_specific_without_groups_raises(db):
    campaign = _campaign(
        recipient_source=RecipientSource.GROUP.value,
        group_selection_mode=GroupSelectionMode.SPECIFIC.value,
        selected_groups=[],
    )
    with pytest.raises(RecipientSourceError, match="No recipient groups selected"):
        load_recipients(db, campaign)


def test_unknown_source_raises(db):
    with pytest.raises(RecipientSourceError, match="Unknown recipient source"):
        load_recipients(db, _campaign(recipient_source="carrier-pigeon"))


def test_repeated_addresses_keep_first_occurrence(make_campaign, db):
    seeded = make_campaign(3)
    db.add(
        Recipient(
            user_id=USER_ID,
            list_id=seeded.recipient_list_id,
            email=" User0@Example.com ",
            name="Duplicate",
            fields={},
            created_at=utcnow(),
        )
    )
    db.commit()
    campaign = db.get(Campaign, seeded.id)

    refs = load_recipients(db, campaign)

    assert [r.email for r in refs] == seeded.emails
    assert refs[0].name == "User 0"


def test_dataset_repeated_rows_collapse(db):
    dataset = RecipientDataset(
        user_id=USER_ID,
        name="upload",
        email_column="email",
        rows=[{"email": "a@example.com"}, {"email": "b@example.com"}, {"email": "A@EXAMPLE.COM"}],
    )
    db.add(dataset)
    db.commit()

    refs = load_recipients(db, _campaign(recipient_source=RecipientSource.DATASET.value, dataset_id=dataset.id))

    assert [r.email for r in refs] == ["a@example.com", "b@example.com"]
