"""时间有序 ID 测试。"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from modules.history import ids


def test_new_id_is_canonical_uuid7():
    value = ids.new_id()

    parsed = uuid.UUID(value)
    assert parsed.version == 7
    assert parsed.variant == uuid.RFC_4122
    assert str(parsed) == value
    assert ids.is_valid_id(value)


def test_new_ids_are_strictly_increasing():
    values = [ids.new_id() for _ in range(2000)]

    assert values == sorted(values)
    assert len(set(values)) == len(values)


def test_same_millisecond_uses_counter(monkeypatch):
    """时钟冻结时依旧保持递增。"""
    monkeypatch.setattr(ids.time, "time_ns", lambda: 1_700_000_000_000 * 1_000_000)

    values = [ids.new_id() for _ in range(5000)]

    assert values == sorted(values)
    assert len(set(values)) == len(values)


def test_clock_going_backwards_keeps_order(monkeypatch):
    first = ids.new_id()
    monkeypatch.setattr(ids.time, "time_ns", lambda: 0)

    second = ids.new_id()

    assert second > first


@pytest.mark.parametrize(
    "value",
    [
        "",
        "not-a-uuid",
        "../escape",
        "0190B2C4-8F2A-7ABC-8DEF-0123456789AB",
        "{0190b2c4-8f2a-7abc-8def-0123456789ab}",
        "urn:uuid:0190b2c4-8f2a-7abc-8def-0123456789ab",
        "0190b2c48f2a7abc8def0123456789ab",
        "0190b2c4-8f2a-7abc-8def-0123456789ab\n",
    ],
)
def test_is_valid_id_rejects_non_canonical(value):
    assert not ids.is_valid_id(value)


def test_is_valid_id_accepts_canonical_lowercase():
    assert ids.is_valid_id("0190b2c4-8f2a-7abc-8def-0123456789ab")


def test_id_timestamp_matches_creation_time():
    before = datetime.now(timezone.utc) - timedelta(seconds=1)
    value = ids.new_id()
    after = datetime.now(timezone.utc) + timedelta(seconds=1)

    assert before <= ids.id_timestamp(value) <= after


def test_id_timestamp_rejects_other_versions():
    with pytest.raises(ValueError):
        ids.id_timestamp(str(uuid.uuid4()))
