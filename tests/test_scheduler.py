"""Tests for the multi-device polling loop."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from unittest.mock import AsyncMock

import pytest

from healthble.config import AppConfig, SinkConfig
from healthble.errors import (
    AuthRejected,
    ConnectTimeout,
    DecodeError,
    NotAdvertising,
    ProtocolError,
)
from healthble.measurement import PollOutcome
from healthble.scheduler import DeviceSchedule, Scheduler, pair_device, run_daemon, wait_or_stop

from .fakes import FakeTransportFactory, RecordingSink, bp_record, weight_record

SINK_CONFIG = SinkConfig(url="http://influx:8086", token="t", org="o", bucket="b")


class StopWhen:
    """Sleeper that never sleeps and stops the scheduler once ``predicate`` holds."""

    def __init__(self, predicate) -> None:
        self.predicate = predicate
        self.calls: list[float] = []

    async def __call__(self, delay: float, stop: asyncio.Event) -> bool:
        self.calls.append(delay)
        await asyncio.sleep(0)
        if self.predicate():
            stop.set()
        return stop.is_set()


def test_backoff_sequence(bp_config, retry_policy):
    """Test bounded backoff, deferral after exhaustion and reset on success."""
    schedule = DeviceSchedule(bp_config, retry_policy)
    failed = PollOutcome.failed("bp", ConnectTimeout("timeout"))

    delays = [schedule.next_delay(failed) for _ in range(4)]
    assert delays == [3.0, 6.0, 12.0, retry_policy.idle_delay]
    assert schedule.consecutive_failures == 0

    schedule.next_delay(PollOutcome.failed("bp", ProtocolError("crc")))
    assert schedule.consecutive_failures == 1
    assert schedule.next_delay(PollOutcome.succeeded("bp", [])) == 0.0
    assert schedule.consecutive_failures == 0


def test_permanent_failures_wait_for_natural_cycle(bp_config, retry_policy):
    schedule = DeviceSchedule(replace(bp_config, post_read_sleep=900.0), retry_policy)
    assert schedule.next_delay(PollOutcome.failed("bp", AuthRejected("no"))) == 900.0
    assert schedule.consecutive_failures == 0
    assert schedule.next_delay(PollOutcome.succeeded("bp", [])) == 900.0


def test_not_advertising_repolls_immediately(bp_config, retry_policy):
    schedule = DeviceSchedule(bp_config, retry_policy)
    assert schedule.next_delay(PollOutcome.failed("bp", NotAdvertising("quiet"))) == 0.0
    assert schedule.consecutive_failures == 0


@pytest.mark.asyncio
async def test_bp_scenario_forwards_one_point(bp_driver, bp_device, sink, retry_policy):
    """Test one stored reading ending up as one point of the device's series."""
    bp_device.store(0x0098, bp_record(systolic=120, diastolic=80, pulse=65))
    scheduler = Scheduler([bp_driver], sink, retry_policy)

    delay = await scheduler.poll_once(bp_driver)

    assert delay == 0.0
    assert len(sink.points) == 1
    series, reading, tags = sink.points[0]
    assert series == "blood_pressure"
    assert tags == {"device_id": "bp"}
    assert (reading.systolic, reading.diastolic, reading.pulse) == (120, 80, 65)
    assert scheduler.schedules["bp"].forwarded == 1


@pytest.mark.asyncio
async def test_auth_rejected_forwards_nothing(bp_driver, bp_device, sink, retry_policy):
    """Test that a refused secret is reported and nothing reaches the sink."""
    bp_device.secret = bytes(16)
    bp_device.store(0x0098, bp_record())
    scheduler = Scheduler([bp_driver], sink, retry_policy)

    delay = await scheduler.poll_once(bp_driver)

    schedule = scheduler.schedules["bp"]
    assert isinstance(schedule.last_outcome.error, AuthRejected)
    assert delay == retry_policy.idle_delay
    assert sink.attempts == 0
    assert bp_device.active_links == 0


@pytest.mark.asyncio
async def test_sink_retry_then_success(bp_driver, bp_device, retry_policy):
    """Test that a failing sink write is retried with backoff."""
    bp_device.store(0x0098, bp_record())
    sink = RecordingSink(fail_times=2)
    sleeper = StopWhen(lambda: False)
    scheduler = Scheduler([bp_driver], sink, retry_policy, sleeper=sleeper)

    await scheduler.poll_once(bp_driver)

    assert sink.attempts == 3
    assert len(sink.points) == 1
    assert sleeper.calls == [3.0, 6.0]
    assert scheduler.schedules["bp"].failed_to_forward == 0


@pytest.mark.asyncio
async def test_sink_exhausted_reports_failed_to_forward(bp_driver, bp_device, retry_policy, caplog):
    bp_device.store(0x0098, bp_record())
    bp_device.store(0x00A8, bp_record(hour=9))
    sink = RecordingSink(fail_times=10)
    scheduler = Scheduler([bp_driver], sink, retry_policy, sleeper=StopWhen(lambda: False))

    await scheduler.poll_once(bp_driver)

    assert sink.attempts == retry_policy.max_retries + 1
    assert scheduler.schedules["bp"].failed_to_forward == 2
    assert "2 measurements failed to forward" in caplog.text


@pytest.mark.asyncio
async def test_unexpected_driver_error_is_transient(bp_driver, sink, retry_policy, monkeypatch, caplog):
    """Test that a bug in one driver never kills the loop."""
    monkeypatch.setattr(bp_driver, "read_measurements", AsyncMock(side_effect=KeyError("boom")))
    scheduler = Scheduler([bp_driver], sink, retry_policy)

    delay = await scheduler.poll_once(bp_driver)

    assert delay == 3.0
    assert scheduler.schedules["bp"].consecutive_failures == 1
    assert "unexpected error" in caplog.text


class BrokenSink(RecordingSink):
    """Sink whose writes fail with an error outside the sink taxonomy."""

    async def write(self, series, measurements, tags) -> None:
        self.attempts += 1
        raise UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")


@pytest.mark.asyncio
async def test_unexpected_sink_error_keeps_device_polling(bp_driver, bp_device, retry_policy, caplog):
    """Test that a sink bug is reported as failed-to-forward and polling continues."""
    bp_device.store(0x0098, bp_record())
    sink = BrokenSink()
    scheduler = Scheduler([bp_driver], sink, retry_policy, sleeper=StopWhen(lambda: sink.attempts >= 2))

    await asyncio.wait_for(scheduler.run(), timeout=5)

    schedule = scheduler.schedules["bp"]
    assert sink.attempts == 2
    assert schedule.cycles == 2
    assert schedule.failed_to_forward == 2
    assert schedule.forwarded == 0
    assert "unexpected sink error" in caplog.text
    assert bp_device.active_links == 0


@pytest.mark.asyncio
async def test_unexpected_cycle_error_keeps_device_polling(bp_driver, sink, retry_policy, monkeypatch, caplog):
    """Test that an error escaping a polling cycle waits for the natural cycle."""
    sleeper = StopWhen(lambda: len(sleeper.calls) >= 2)
    scheduler = Scheduler([bp_driver], sink, retry_policy, sleeper=sleeper)
    poll = AsyncMock(side_effect=[RuntimeError("boom"), 0.0])
    monkeypatch.setattr(scheduler, "poll_once", poll)

    await asyncio.wait_for(scheduler.run(), timeout=5)

    assert poll.await_count == 2
    assert sleeper.calls == [retry_policy.idle_delay, 0.0]
    assert "unexpected error in polling cycle" in caplog.text


@pytest.mark.asyncio
async def test_backoff_is_per_device(bp_driver, bp_device, scale_driver, scale_device, sink, retry_policy):
    """Test bounded backoff for an unreachable unit while another keeps being polled."""
    bp_device.fail_on["connect"] = ConnectTimeout("Connection timed out")
    scale_device.store(0x02C0, weight_record(70.0))

    holder: dict[str, Scheduler] = {}
    sleeper = StopWhen(lambda: holder["s"].schedules["bp"].cycles >= 3)
    scheduler = Scheduler([bp_driver, scale_driver], sink, retry_policy, sleeper=sleeper)
    holder["s"] = scheduler

    await asyncio.wait_for(scheduler.run(), timeout=5)

    bp = scheduler.schedules["bp"]
    scale = scheduler.schedules["scale"]
    assert bp.delays == [3.0, 6.0, 12.0]
    assert isinstance(bp.last_outcome.error, ConnectTimeout)
    assert scale.cycles >= 1
    assert scale.last_outcome.ok
    assert scale.forwarded >= 1
    assert {series for series, _, _ in sink.points} == {"weight"}
    assert bp_device.active_links == 0
    assert scale_device.active_links == 0


def test_decode_failures_do_not_back_off(bp_config, retry_policy):
    schedule = DeviceSchedule(bp_config, retry_policy)
    assert schedule.next_delay(PollOutcome.failed("bp", DecodeError("bad"))) == retry_policy.idle_delay
    assert schedule.consecutive_failures == 0


@pytest.mark.asyncio
async def test_wait_or_stop():
    stop = asyncio.Event()
    assert await wait_or_stop(0.01, stop) is False
    stop.set()
    assert await wait_or_stop(10.0, stop) is True


@pytest.mark.asyncio
async def test_graceful_stop_lets_session_finish(scale_driver, scale_device, sink, retry_policy):
    """Test that a stop request during a read still forwards and disconnects."""
    scale_device.store(0x02C0, weight_record(70.0))
    scheduler = Scheduler([scale_driver], sink, retry_policy, sleeper=StopWhen(lambda: False))

    run = asyncio.create_task(scheduler.run())
    while not scale_device.commands:
        await asyncio.sleep(0)
    scheduler.request_stop()
    await asyncio.wait_for(run, timeout=5)

    assert scheduler.schedules["scale"].cycles == 1
    assert len(sink.points) == 1
    assert scale_device.active_links == 0


@pytest.mark.asyncio
async def test_run_daemon_closes_sink(bp_config, bp_device, retry_policy, settings, monkeypatch):
    """Test the daemon entry point with injected transport and sink."""
    config = AppConfig(devices=(bp_config,), sink=SINK_CONFIG, bluetooth=settings, retry=retry_policy)
    sink = RecordingSink()
    bp_device.store(0x0098, bp_record())

    real_poll_once = Scheduler.poll_once

    async def poll_then_stop(self, driver):
        delay = await real_poll_once(self, driver)
        self.request_stop()
        return delay

    monkeypatch.setattr(Scheduler, "poll_once", poll_then_stop)
    await asyncio.wait_for(run_daemon(config, FakeTransportFactory(bp_device), sink), timeout=5)

    assert len(sink.points) == 1
    assert sink.closed


@pytest.mark.asyncio
async def test_pair_device(bp_config, bp_device, settings):
    config = AppConfig(devices=(bp_config,), sink=SINK_CONFIG, bluetooth=settings)
    bp_device.secret = None
    bp_device.pairing_mode = True
    await pair_device(config, "bp", FakeTransportFactory(bp_device))
    assert bp_device.secret == bp_config.secret
