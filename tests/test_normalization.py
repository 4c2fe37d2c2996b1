from datetime import datetime, timedelta, timezone

from campaign_dispatch.utils.normalization import as_utc, normalize_email, normalize_name


def test_normalize_email():
    assert normalize_email("  Ada@Example.COM ") == "ada@example.com"
    assert normalize_email("   ") is None
    assert normalize_email(None) is None


def test_normalize_name_collapses_whitespace():
    assert normalize_name("  Ada   King ") == "Ada King"
    assert normalize_name("") is None


def test_as_utc_handles_naive_and_offset_values():
    naive = datetime(2026, 1, 1, 12, 0)
    offset = datetime(2026, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))

    assert as_utc(naive) == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert as_utc(offset).tzinfo == timezone.utc
    assert as_utc(offset).hour == 12
    assert as_utc(None) is None
