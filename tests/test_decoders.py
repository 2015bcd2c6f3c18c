"""Tests for record decoding and clock encoding."""

from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from healthble.drivers.omron import hem_7361t, hn_300t2
from healthble.errors import DecodeError
from healthble.measurement import BloodPressureReading, WeightReading
from healthble.timeutil import local_now, local_timestamp

from .fakes import bp_record, weight_record

UTC = ZoneInfo("UTC")
BUDAPEST = ZoneInfo("Europe/Budapest")

BP_VECTOR = bytes([95, 80, 65, 24, 0x28, 0x04, 0x00, 0x00]) + bytes(8)


def test_bp_vector():
    """Test the reference blood-pressure slot."""
    reading = hem_7361t.decode_record(BP_VECTOR, UTC)
    assert reading == BloodPressureReading(
        systolic=120,
        diastolic=80,
        pulse=65,
        irregular_heartbeat=False,
        body_movement=False,
        user=1,
        measured_at=datetime(2024, 1, 1, 8, 0, 0, tzinfo=UTC),
    )
    assert reading.timestamp_ns == 1704096000 * 1_000_000_000


def test_bp_decode_is_idempotent():
    """Test that decoding the same bytes twice yields equal readings."""
    assert hem_7361t.decode_record(BP_VECTOR, UTC) == hem_7361t.decode_record(BP_VECTOR, UTC)


def test_bp_fields_and_flags():
    """Test every bit field, including the flags and user slot."""
    data = bp_record(
        systolic=141, diastolic=92, pulse=77, year=2023, month=12, day=31,
        hour=23, minute=59, second=58, irregular=True, movement=True,
    )
    reading = hem_7361t.decode_record(data, BUDAPEST, user=2)
    assert (reading.systolic, reading.diastolic, reading.pulse) == (141, 92, 77)
    assert reading.irregular_heartbeat and reading.body_movement
    assert reading.user == 2
    assert reading.measured_at == datetime(2023, 12, 31, 23, 59, 58, tzinfo=BUDAPEST)
    assert reading.tags() == {"user": "2"}


def test_bp_erased_slot():
    """Test that an erased slot holds no reading."""
    assert hem_7361t.decode_record(b"\xff" * 16, UTC) is None


def test_bp_invalid_date():
    """Test that a zero month is a decode error."""
    data = bytearray(BP_VECTOR)
    data[5] = 0x00
    with pytest.raises(DecodeError):
        hem_7361t.decode_record(bytes(data), UTC)


def test_bp_short_slot():
    with pytest.raises(DecodeError):
        hem_7361t.decode_record(BP_VECTOR[:8], UTC)


def test_weight_record():
    """Test weight in 50 g units and the local timestamp."""
    reading = hn_300t2.decode_record(weight_record(75.35), BUDAPEST)
    assert reading == WeightReading(
        weight_kg=75.35,
        measured_at=datetime(2024, 1, 1, 7, 30, 0, tzinfo=BUDAPEST),
    )
    assert reading.fields() == {"weight": 75.35}


def test_weight_empty_slot():
    assert hn_300t2.decode_record(b"\xff\xff" + bytes(14), UTC) is None


def test_clock_encoding_in_summer_time():
    """Test that the clock is written in the unit's wall time."""
    local = local_now(BUDAPEST, datetime(2024, 6, 1, 10, 0, 0, tzinfo=timezone.utc))
    assert local.hour == 12

    block = hem_7361t.encode_clock(bytes(range(16)), local)
    assert block[:8] == bytes(range(8))
    assert list(block[8:14]) == [24, 6, 1, 12, 0, 0]
    assert block[14] == (sum(range(8)) + 24 + 6 + 1 + 12) & 0xFF
    assert block[15] == 0

    assert hn_300t2.encode_clock(local) == bytes([24, 6, 1, 12, 0, 0, 43, 0xFF])


def test_clock_encoding_rejects_naive_now():
    with pytest.raises(ValueError):
        local_now(BUDAPEST, datetime(2024, 6, 1, 10, 0, 0))


@pytest.mark.parametrize(
    "wall",
    [
        (2024, 3, 31, 2, 30, 0),  # skipped
        (2024, 10, 27, 2, 30, 0),  # repeated
    ],
)
def test_dst_transition_times_are_rejected(wall):
    """Test wall times that do not map to a single instant."""
    with pytest.raises(DecodeError):
        local_timestamp(BUDAPEST, *wall)


def test_regular_local_time():
    ts = local_timestamp(BUDAPEST, 2024, 10, 27, 4, 0, 0)
    assert ts.utcoffset().total_seconds() == 3600
