from datetime import datetime, timedelta, timezone

import pytest

from runplane.kernel.time import coerce_utc, isoformat_z, parse_iso8601


def test_parse_iso8601_accepts_z_suffix():
    parsed = parse_iso8601("2026-01-01T12:30:00Z")

    assert parsed == datetime(2026, 1, 1, 12, 30, tzinfo=timezone.utc)


def test_parse_iso8601_converts_offsets():
    parsed = parse_iso8601("2026-01-01T14:30:00+02:00")

    assert parsed.utcoffset() == timedelta(0)
    assert parsed.hour == 12


def test_naive_values_are_utc():
    assert coerce_utc(datetime(2026, 1, 1)).tzinfo is not None


def test_naive_values_rejected_without_assumption():
    with pytest.raises(ValueError):
        coerce_utc(datetime(2026, 1, 1), assume_naive_is_utc=False)


def test_isoformat_z():
    assert isoformat_z(datetime(2026, 1, 1, tzinfo=timezone.utc)) == "2026-01-01T00:00:00Z"
    assert isoformat_z(None) is None
