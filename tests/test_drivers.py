"""End-to-end driver tests against the scripted peripheral."""

from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from healthble.config import DriverKind
from healthble.drivers import DRIVERS, create_driver
from healthble.drivers.omron import Hem7361tDriver, Hn300t2Driver, hem_7361t, hn_300t2
from healthble.errors import PairingRejected
from healthble.measurement import BloodPressureReading, WeightReading

from .fakes import SECRET, bp_record, weight_record

USER1 = hem_7361t.REC_START[0]
USER2 = hem_7361t.REC_START[1]


@pytest.mark.asyncio
async def test_bp_read_both_users(bp_driver, bp_device):
    """Test reading one record per user and the transaction framing."""
    bp_device.store(USER1, bp_record(systolic=120))
    bp_device.store(USER2 + 0x10, bp_record(systolic=131, hour=9))

    outcome = await bp_driver.read_measurements()

    assert outcome.ok
    assert [(m.systolic, m.user) for m in outcome.measurements] == [(120, 1), (131, 2)]
    assert all(isinstance(m, BloodPressureReading) for m in outcome.measurements)
    assert bp_device.commands[0] == 0x0000
    assert bp_device.commands[-1] == 0x0F00
    assert bp_device.connects == bp_device.disconnects == 1
    assert bp_device.active_links == 0


@pytest.mark.asyncio
async def test_bp_read_syncs_clock(bp_driver, bp_device):
    """Test that each read writes the unit clock at the write address."""
    await bp_driver.read_measurements()
    clock = bp_device.memory[hem_7361t.CLOCK_ADDR_WR : hem_7361t.CLOCK_ADDR_WR + 16]
    assert clock[8] == datetime.now(timezone.utc).year - 2000
    assert clock[14] == sum(clock[:14]) & 0xFF


@pytest.mark.asyncio
async def test_bp_empty_unit(bp_driver):
    """Test that a unit without records is a successful, empty read."""
    outcome = await bp_driver.read_measurements()
    assert outcome.ok
    assert outcome.measurements == ()
    assert outcome.dropped == 0


@pytest.mark.asyncio
async def test_bad_record_is_dropped_not_fatal(bp_driver, bp_device):
    """Test that one undecodable slot does not lose the others."""
    bad = bytearray(bp_record())
    bad[5] = 0x00  # month 0
    bp_device.store(USER1, bp_record(systolic=110))
    bp_device.store(USER1 + 0x10, bytes(bad))
    bp_device.store(USER1 + 0x20, bp_record(systolic=112))

    outcome = await bp_driver.read_measurements()

    assert outcome.ok
    assert outcome.dropped == 1
    assert [m.systolic for m in outcome.measurements] == [110, 112]


@pytest.mark.asyncio
async def test_unreadable_slot_is_skipped(bp_driver, bp_device):
    bp_device.store(USER1, bp_record(systolic=110))
    bp_device.short_reads.add(USER1)
    outcome = await bp_driver.read_measurements()
    assert outcome.ok
    assert outcome.measurements == ()


@pytest.mark.asyncio
async def test_scale_read(scale_driver, scale_device):
    """Test the scale family, which needs no unlock."""
    scale_device.store(hn_300t2.REC_START, weight_record(81.2))
    scale_device.store(hn_300t2.REC_START + 0x10, b"\xff" * 16)

    outcome = await scale_driver.read_measurements()

    assert outcome.ok
    assert outcome.measurements == (
        WeightReading(weight_kg=81.2, measured_at=datetime(2024, 1, 1, 7, 30, tzinfo=ZoneInfo("Europe/Budapest"))),
    )
    assert scale_device.active_links == 0


@pytest.mark.asyncio
async def test_scale_sync_time(scale_driver, scale_device):
    """Test writing the clock in the configured zone."""
    now = datetime(2024, 6, 1, 10, 0, 0, tzinfo=timezone.utc)
    await scale_driver.sync_time(now)
    clock = bytes(scale_device.memory[hn_300t2.CLOCK_ADDR : hn_300t2.CLOCK_ADDR + hn_300t2.CLOCK_LEN])
    assert clock == bytes([24, 6, 1, 12, 0, 0, 43, 0xFF])


@pytest.mark.asyncio
async def test_bp_pair_registers_secret(bp_driver, bp_device):
    """Test bonding and secret registration in pairing mode."""
    bp_device.secret = None
    bp_device.pairing_mode = True

    await bp_driver.pair()

    assert bp_device.bonded
    assert bp_device.secret == SECRET
    assert bp_device.commands == [0x0000, 0x0100, 0x01C0, 0x0F00]
    assert bp_device.active_links == 0


@pytest.mark.asyncio
async def test_bp_pair_outside_pairing_mode(bp_driver, bp_device):
    with pytest.raises(PairingRejected):
        await bp_driver.pair()
    assert not bp_device.bonded
    assert bp_device.active_links == 0


@pytest.mark.asyncio
async def test_scale_pair(scale_driver, scale_device):
    scale_device.pairing_mode = True
    await scale_driver.pair(address=scale_device.address.lower())
    assert scale_device.bonded
    assert scale_device.commands == [0x0000, 0x01C0, 0x0F00]


def test_registry(bp_config, scale_config, bp_factory, settings):
    """Test that every family maps onto its driver."""
    assert set(DRIVERS) == set(DriverKind)
    assert isinstance(create_driver(bp_config, bp_factory, settings), Hem7361tDriver)
    assert isinstance(create_driver(scale_config, bp_factory, settings), Hn300t2Driver)
    with pytest.raises(ValueError):
        Hn300t2Driver(bp_config, bp_factory, settings)
