"""Multi-device polling loop.

One asyncio task per configured device drives that device's driver to
completion, forwards the readings to the sink, and decides when to poll
again. Retry state is explicit and per device (:class:`DeviceSchedule`);
nothing is shared between tasks except the read-only configuration and
the sink.

Failure policy:
- **Transient** (transport, protocol framing): bounded exponential backoff,
  then deferred to the device's next natural cycle once retries run out.
- **Permanent** (authentication, wrong device model, decode): logged and
  skipped until the next natural cycle, never retried in a tight loop.
- **Not advertising**: the scan window itself was the wait, poll again.
- **Sink failure**: the write is retried with the same backoff; readings
  that still cannot be written are reported as failed-to-forward.

:func:`run_daemon`, :func:`pair_device` and :func:`sync_device_time` are
the entry points used by the command line.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Sequence

from .config import AppConfig, DeviceConfig, RetryPolicy
from .drivers import Driver, create_driver
from .errors import FailureKind, NotAdvertising, SinkError, TransportError
from .measurement import PollOutcome
from .sink import InfluxSink, OutputSink
from .transport import RadioArbiter, TransportFactory, bleak_transport_factory

logger = logging.getLogger(__name__)

TRANSIENT_KINDS = frozenset({FailureKind.TRANSPORT, FailureKind.PROTOCOL})

Sleeper = Callable[[float, asyncio.Event], Awaitable[bool]]


async def wait_or_stop(delay: float, stop: asyncio.Event) -> bool:
    """Sleep ``delay`` seconds unless ``stop`` is set first.

    Returns:
        True if the stop event is set.
    """
    if stop.is_set():
        return True
    try:
        await asyncio.wait_for(stop.wait(), timeout=max(0.0, delay))
    except asyncio.TimeoutError:
        return False
    return True


@dataclass
class DeviceSchedule:
    """Explicit retry and reporting state of one device.

    Attributes:
        consecutive_failures: Transient failures since the last success;
            reset on success, on a permanent failure and when retries are
            exhausted.
        cycles: Completed polling attempts.
        forwarded: Measurements written to the sink.
        failed_to_forward: Measurements read successfully but never written.
        last_outcome: Most recent poll outcome.
        delays: Every delay chosen, for inspection.
    """

    config: DeviceConfig
    policy: RetryPolicy
    consecutive_failures: int = 0
    cycles: int = 0
    forwarded: int = 0
    failed_to_forward: int = 0
    last_outcome: Optional[PollOutcome] = None
    delays: list[float] = field(default_factory=list)

    def natural_delay(self) -> float:
        """Delay until the device's next natural cycle after a failure."""
        if self.config.post_read_sleep is not None:
            return self.config.post_read_sleep
        return self.policy.idle_delay

    def next_delay(self, outcome: PollOutcome) -> float:
        """Update the retry state with ``outcome`` and return the next delay."""
        self.cycles += 1
        self.last_outcome = outcome

        if outcome.ok:
            self.consecutive_failures = 0
            delay = self.config.post_read_sleep or 0.0
        elif isinstance(outcome.error, NotAdvertising):
            delay = 0.0
        elif outcome.kind in TRANSIENT_KINDS:
            self.consecutive_failures += 1
            if self.consecutive_failures <= self.policy.max_retries:
                delay = self.policy.delay_for(self.consecutive_failures)
            else:
                logger.warning(
                    "%s: %d consecutive failures, deferring to next cycle",
                    self.config.id,
                    self.consecutive_failures,
                )
                self.consecutive_failures = 0
                delay = self.natural_delay()
        else:
            self.consecutive_failures = 0
            delay = self.natural_delay()

        self.delays.append(delay)
        return delay


class Scheduler:
    """Runs one polling task per driver until stopped.

    Args:
        drivers: One driver per configured device.
        sink: Destination for decoded readings.
        policy: Retry/backoff settings.
        sleeper: Replaceable wait primitive, ``(delay, stop_event) -> stopped``.
    """

    def __init__(
        self,
        drivers: Sequence[Driver],
        sink: OutputSink,
        policy: RetryPolicy,
        sleeper: Sleeper = wait_or_stop,
    ) -> None:
        self._drivers = list(drivers)
        self._sink = sink
        self._policy = policy
        self._sleep = sleeper
        self._stop = asyncio.Event()
        self.schedules: dict[str, DeviceSchedule] = {
            d.config.id: DeviceSchedule(d.config, policy) for d in self._drivers
        }

    @property
    def stop_event(self) -> asyncio.Event:
        return self._stop

    def request_stop(self) -> None:
        if not self._stop.is_set():
            logger.info("Shutdown requested, letting active sessions finish")
            self._stop.set()

    def _log_failure(self, outcome: PollOutcome) -> None:
        device_id = outcome.device_id
        error = outcome.error
        if isinstance(error, NotAdvertising):
            logger.debug("%s: %s", device_id, error)
        elif outcome.kind in TRANSIENT_KINDS:
            logger.warning("%s: %s: %s", device_id, type(error).__name__, error)
        else:
            logger.error("%s: %s: %s", device_id, type(error).__name__, error)

    async def _forward(self, schedule: DeviceSchedule, outcome: PollOutcome) -> bool:
        config = schedule.config
        count = len(outcome.measurements)
        attempt = 0
        while True:
            try:
                await self._sink.write(config.measurement_name, outcome.measurements, {"device_id": config.id})
            except SinkError as e:
                attempt += 1
                if attempt > self._policy.max_retries or self._stop.is_set():
                    schedule.failed_to_forward += count
                    logger.error("%s: %d measurements failed to forward: %s", config.id, count, e)
                    return False
                logger.warning("%s: %s (attempt %d)", config.id, e, attempt)
                if await self._sleep(self._policy.delay_for(attempt), self._stop):
                    schedule.failed_to_forward += count
                    logger.error("%s: %d measurements failed to forward: shutting down", config.id, count)
                    return False
                continue
            except Exception:
                schedule.failed_to_forward += count
                logger.exception("%s: %d measurements failed to forward: unexpected sink error", config.id, count)
                return False
            schedule.forwarded += count
            return True

    async def poll_once(self, driver: Driver) -> float:
        """Run one polling cycle for ``driver`` and return the delay before the next."""
        schedule = self.schedules[driver.config.id]
        device_id = driver.config.id
        try:
            outcome = await driver.read_measurements()
        except Exception as e:
            logger.exception("%s: unexpected error during read", device_id)
            outcome = PollOutcome.failed(device_id, TransportError(f"{type(e).__name__}: {e}"))

        if outcome.ok:
            if outcome.dropped:
                logger.warning("%s: %d records could not be decoded", device_id, outcome.dropped)
            if outcome.measurements:
                logger.info("%s: received %d records, sending to DB", device_id, len(outcome.measurements))
                if await self._forward(schedule, outcome):
                    logger.info("%s: ok", device_id)
            else:
                logger.info("%s: no stored records", device_id)
        else:
            self._log_failure(outcome)

        return schedule.next_delay(outcome)

    async def _run_device(self, driver: Driver) -> None:
        device_id = driver.config.id
        logger.info("%s: starting", device_id)
        while not self._stop.is_set():
            try:
                delay = await self.poll_once(driver)
            except Exception:
                logger.exception("%s: unexpected error in polling cycle", device_id)
                delay = self.schedules[device_id].natural_delay()
            if delay > 0:
                logger.debug("%s: next poll in %.1fs", device_id, delay)
            if await self._sleep(delay, self._stop):
                break
        logger.info("%s: stopped", device_id)

    async def run(self) -> None:
        """Poll every device until :meth:`request_stop` is called."""
        tasks = [
            asyncio.create_task(self._run_device(d), name=f"device-{d.config.id}") for d in self._drivers
        ]
        try:
            await self._stop.wait()
            _, pending = await asyncio.wait(tasks, timeout=self._policy.shutdown_grace)
            if pending:
                logger.warning("Cancelling %d device tasks after %.1fs grace", len(pending), self._policy.shutdown_grace)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)


def _build_drivers(config: AppConfig, transport_factory: Optional[TransportFactory]) -> list[Driver]:
    if transport_factory is None:
        arbiter = RadioArbiter(config.bluetooth.max_links)
        transport_factory = bleak_transport_factory(arbiter, config.bluetooth.operation_timeout)
    return [create_driver(device, transport_factory, config.bluetooth) for device in config.devices]


async def run_daemon(
    config: AppConfig,
    transport_factory: Optional[TransportFactory] = None,
    sink: Optional[OutputSink] = None,
) -> None:
    """Poll every configured device until SIGINT/SIGTERM.

    Args:
        config: Validated configuration.
        transport_factory: Override for the Bleak transport (tests).
        sink: Override for the InfluxDB sink (tests).
    """
    drivers = _build_drivers(config, transport_factory)
    sink = sink if sink is not None else InfluxSink(config.sink)
    scheduler = Scheduler(drivers, sink, config.retry)

    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, scheduler.request_stop)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not available on Windows event loops; KeyboardInterrupt still works.
            logger.debug("Signal handler for %s not installed", sig.name)

    logger.info("Polling %d devices", len(drivers))
    try:
        await scheduler.run()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await sink.close()
    logger.info("Daemon stopped")


async def pair_device(
    config: AppConfig,
    device_id: str,
    transport_factory: Optional[TransportFactory] = None,
) -> None:
    """Bond with one configured device and register its secret.

    Raises:
        ConfigError: Unknown device id.
        HealthBleError: The pairing session failed.
    """
    device = config.device(device_id)
    single = AppConfig(devices=(device,), sink=config.sink, bluetooth=config.bluetooth)
    driver = _build_drivers(single, transport_factory)[0]
    logger.info("%s: pairing with %s, put the unit in pairing mode now", device.id, device.address)
    await driver.pair()
    logger.info("%s: pairing completed", device.id)


async def sync_device_time(
    config: AppConfig,
    device_id: str,
    transport_factory: Optional[TransportFactory] = None,
) -> None:
    """Set the clock of one configured device to the current time."""
    device = config.device(device_id)
    single = AppConfig(devices=(device,), sink=config.sink, bluetooth=config.bluetooth)
    driver = _build_drivers(single, transport_factory)[0]
    await driver.sync_time()
