"""BLE transport adapter built on Bleak.

This module wraps the operating system Bluetooth stack behind the small
:class:`Transport` contract consumed by the session state machine:
advertisement wait, connect, GATT discovery, characteristic read/write,
notification subscription, OS-level bonding and disconnect.

Core Features:
- **Raw failures only**: Every Bleak or timeout failure is mapped onto the
  error taxonomy in :mod:`healthble.errors`. No retry logic lives here.
- **Notification streams**: Synchronous Bleak callbacks are bridged into
  :class:`NotificationStream` queues that the session awaits with a timeout.
- **Radio arbitration**: A shared :class:`RadioArbiter` serializes connection
  attempts and caps concurrent links on the local adapter, failing with
  :class:`~healthble.errors.RadioBusy` instead of corrupting a session.
- **Idempotent cleanup**: :meth:`Transport.disconnect` is always safe to
  call, including after a failed connect.

Requirements:
- bleak: Cross-platform BLE library for device communication
- asyncio: Async I/O support for concurrent operation
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakDeviceNotFoundError, BleakError

from .errors import (
    ConnectTimeout,
    DiscoveryFailed,
    LinkLost,
    NotAdvertising,
    OperationTimeout,
    PairingRejected,
    RadioBusy,
    TransportError,
    Unreachable,
    WriteFailed,
)

logger = logging.getLogger(__name__)


class NotificationStream:
    """Queue of notification payloads received on one characteristic.

    The stream bridges Bleak's synchronous notification callback and the
    asynchronous session code. ``None`` is used internally as the
    end-of-data sentinel, pushed when the link drops or the transport is
    closed, so a waiting consumer wakes up instead of blocking until its
    timeout.

    Attributes:
        char_uuid: Characteristic the payloads arrive on.
    """

    def __init__(self, char_uuid: str) -> None:
        self.char_uuid = char_uuid
        self._queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, data: bytes) -> None:
        """Enqueue one payload. Called from the notification callback."""
        if self._closed:
            logger.debug("Dropping notification on closed stream %s", self.char_uuid)
            return
        logger.debug("Notification received on %s: %d bytes", self.char_uuid, len(data))
        self._queue.put_nowait(bytes(data))

    def close(self) -> None:
        """Signal end of data to any current or future consumer."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    async def receive(self, timeout: float) -> bytes:
        """Wait for the next payload.

        Args:
            timeout: Maximum seconds to wait.

        Returns:
            The payload bytes.

        Raises:
            OperationTimeout: Nothing arrived in time.
            LinkLost: The stream was closed (disconnect or end of data).
        """
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            raise OperationTimeout(
                f"No notification on {self.char_uuid} within {timeout:.1f}s"
            ) from None

        if item is None:
            # Keep the sentinel for the next waiter.
            self._queue.put_nowait(None)
            raise LinkLost(f"Notification stream {self.char_uuid} ended")
        return item

    async def iterate(self, idle_timeout: float) -> AsyncIterator[bytes]:
        """Yield payloads until end of data or ``idle_timeout`` of silence."""
        while True:
            try:
                yield await self.receive(idle_timeout)
            except (OperationTimeout, LinkLost) as e:
                logger.debug("Notification stream %s finished: %s", self.char_uuid, e)
                return


class Transport(ABC):
    """Contract of the BLE transport consumed by :class:`~healthble.session.Session`.

    One transport instance serves exactly one session. Implementations
    surface raw failures as :class:`~healthble.errors.TransportError`
    subclasses and never retry.
    """

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """True while the link is up."""

    @abstractmethod
    async def wait_for_advertisement(self, address: str, company_id: int, timeout: float) -> None:
        """Wait until ``address`` advertises manufacturer data for ``company_id``.

        Raises:
            NotAdvertising: The unit stayed silent for ``timeout`` seconds.
            Unreachable: Scanning could not be started.
        """

    @abstractmethod
    async def connect(self, address: str, timeout: float) -> None:
        """Establish the link.

        Raises:
            Unreachable, ConnectTimeout, RadioBusy
        """

    @abstractmethod
    async def discover(self) -> set[tuple[str, str]]:
        """Return the ``(service_uuid, characteristic_uuid)`` pairs, lower case."""

    @abstractmethod
    async def read(self, char_uuid: str) -> bytes:
        """Read a characteristic value."""

    @abstractmethod
    async def write(self, char_uuid: str, data: bytes) -> None:
        """Write a characteristic value with response.

        Raises:
            WriteFailed, OperationTimeout
        """

    @abstractmethod
    async def subscribe(self, char_uuid: str) -> NotificationStream:
        """Enable notifications and return the stream receiving them."""

    @abstractmethod
    async def bond(self) -> None:
        """Create an OS-level bond with the connected peripheral.

        Raises:
            PairingRejected
        """

    @abstractmethod
    async def disconnect(self) -> None:
        """Release the link. Idempotent and safe after any failure."""


class RadioArbiter:
    """Shared gate in front of the local Bluetooth adapter.

    Many adapters cannot connect to two peripherals at once, and BlueZ in
    particular misbehaves when two connection attempts overlap. Connection
    attempts are therefore serialized, and at most ``max_links`` links may
    be open at the same time.

    Args:
        max_links: Number of simultaneous links the adapter supports.
    """

    def __init__(self, max_links: int = 1) -> None:
        self._max_links = max_links
        self._slots = asyncio.Semaphore(max_links)
        self._connect_lock = asyncio.Lock()

    @property
    def max_links(self) -> int:
        return self._max_links

    async def acquire(self, timeout: float) -> None:
        """Take a link slot or raise :class:`RadioBusy` after ``timeout``."""
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            raise RadioBusy(
                f"No free link slot on the adapter within {timeout:.1f}s "
                f"(max_links={self._max_links})"
            ) from None

    def release(self) -> None:
        self._slots.release()

    @asynccontextmanager
    async def connecting(self) -> AsyncIterator[None]:
        async with self._connect_lock:
            yield


class BleakTransport(Transport):
    """Production transport backed by :class:`bleak.BleakClient`.

    Attributes:
        _arbiter: Shared adapter gate; one per process.
        _operation_timeout: Timeout applied to reads, writes, subscriptions
            and bonding.
        _device: BLEDevice found by the last advertisement wait. Connecting
            through the scanned device object avoids a second scan on BlueZ.
        _client: Active client, or None when disconnected.
        _streams: Notification streams keyed by characteristic UUID.
        _holds_slot: Whether this transport owns an arbiter slot.
    """

    def __init__(self, arbiter: RadioArbiter, operation_timeout: float = 10.0) -> None:
        self._arbiter = arbiter
        self._operation_timeout = operation_timeout
        self._device: Optional[BLEDevice] = None
        self._client: Optional[BleakClient] = None
        self._streams: dict[str, NotificationStream] = {}
        self._holds_slot = False

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    async def wait_for_advertisement(self, address: str, company_id: int, timeout: float) -> None:
        address = address.upper()

        def match(dev: BLEDevice, adv: AdvertisementData) -> bool:
            if dev.address.upper() != address:
                return False
            logger.debug(
                "Advertisement from %s: rssi=%s manufacturer_data=%s",
                dev.address,
                getattr(adv, "rssi", None),
                {k: v.hex() for k, v in adv.manufacturer_data.items()},
            )
            return company_id in adv.manufacturer_data

        logger.debug("Waiting up to %.1fs for advertisement from %s", timeout, address)
        try:
            device = await BleakScanner.find_device_by_filter(match, timeout=timeout)
        except BleakError as e:
            raise Unreachable(f"BLE scanner failed: {e}") from e

        if device is None:
            raise NotAdvertising(f"{address} did not advertise within {timeout:.1f}s")
        self._device = device

    def _on_disconnect(self, _: BleakClient) -> None:
        logger.debug("BLE connection lost (callback)")
        for stream in self._streams.values():
            stream.close()

    async def connect(self, address: str, timeout: float) -> None:
        if self._client is not None:
            raise TransportError("Transport is already connected")

        await self._arbiter.acquire(timeout)
        self._holds_slot = True

        target = self._device if self._device is not None else address
        try:
            async with self._arbiter.connecting():
                logger.info("BLE connection starting: %s", address)
                self._client = BleakClient(target, disconnected_callback=self._on_disconnect, timeout=timeout)
                await asyncio.wait_for(self._client.connect(), timeout=timeout)
        except asyncio.TimeoutError:
            await self.disconnect()
            raise ConnectTimeout(f"Connection to {address} timed out after {timeout:.1f}s") from None
        except BleakDeviceNotFoundError as e:
            await self.disconnect()
            raise Unreachable(f"Device {address} was not found") from e
        except (BleakError, OSError) as e:
            await self.disconnect()
            raise Unreachable(f"Connection to {address} failed: {e}") from e

        if not self._client.is_connected:
            await self.disconnect()
            raise Unreachable(f"Connection to {address} failed")
        logger.info("BLE connection established: %s", address)

    def _require_client(self) -> BleakClient:
        if self._client is None or not self._client.is_connected:
            raise LinkLost("Not connected")
        return self._client

    async def discover(self) -> set[tuple[str, str]]:
        client = self._require_client()
        try:
            return {
                (service.uuid.lower(), char.uuid.lower())
                for service in client.services
                for char in service.characteristics
            }
        except BleakError as e:
            raise DiscoveryFailed(f"Service discovery failed: {e}") from e

    async def read(self, char_uuid: str) -> bytes:
        client = self._require_client()
        try:
            data = await asyncio.wait_for(client.read_gatt_char(char_uuid), timeout=self._operation_timeout)
        except asyncio.TimeoutError:
            raise OperationTimeout(f"Read of {char_uuid} timed out") from None
        except BleakError as e:
            raise TransportError(f"Read of {char_uuid} failed: {e}") from e
        return bytes(data)

    async def write(self, char_uuid: str, data: bytes) -> None:
        client = self._require_client()
        logger.debug("Write %s: %s", char_uuid, data.hex())
        try:
            await asyncio.wait_for(
                client.write_gatt_char(char_uuid, data, response=True),
                timeout=self._operation_timeout,
            )
        except asyncio.TimeoutError:
            raise OperationTimeout(f"Write to {char_uuid} timed out") from None
        except BleakError as e:
            raise WriteFailed(f"Write to {char_uuid} failed: {e}") from e

    async def subscribe(self, char_uuid: str) -> NotificationStream:
        existing = self._streams.get(char_uuid)
        if existing is not None and not existing.closed:
            return existing

        client = self._require_client()
        stream = NotificationStream(char_uuid)
        logger.debug("Starting notification subscription: char=%s", char_uuid)
        try:
            await asyncio.wait_for(
                client.start_notify(char_uuid, lambda _, data: stream.feed(bytes(data))),
                timeout=self._operation_timeout,
            )
        except asyncio.TimeoutError:
            raise OperationTimeout(f"Subscription to {char_uuid} timed out") from None
        except BleakError as e:
            raise TransportError(f"Subscription to {char_uuid} failed: {e}") from e

        self._streams[char_uuid] = stream
        return stream

    async def bond(self) -> None:
        client = self._require_client()
        try:
            result = await asyncio.wait_for(client.pair(), timeout=self._operation_timeout)
        except asyncio.TimeoutError:
            raise OperationTimeout("Bonding timed out") from None
        except BleakError as e:
            raise PairingRejected(f"Bonding failed: {e}") from e
        # Older Bleak backends report failure as False instead of raising.
        if result is False:
            raise PairingRejected("Bonding was rejected by the device")

    async def disconnect(self) -> None:
        client, self._client = self._client, None

        if client is not None:
            for char_uuid, stream in self._streams.items():
                if client.is_connected and not stream.closed:
                    try:
                        await asyncio.wait_for(client.stop_notify(char_uuid), timeout=self._operation_timeout)
                    except (BleakError, asyncio.TimeoutError, OSError) as e:
                        logger.debug("stop_notify(%s) failed during disconnect: %s", char_uuid, e)
            try:
                await asyncio.wait_for(client.disconnect(), timeout=self._operation_timeout)
            except (BleakError, asyncio.TimeoutError, OSError) as e:
                logger.debug("Disconnect reported an error: %s", e)
            logger.info("BLE disconnected")

        for stream in self._streams.values():
            stream.close()
        self._streams.clear()

        if self._holds_slot:
            self._holds_slot = False
            self._arbiter.release()


TransportFactory = Callable[[], Transport]


def bleak_transport_factory(arbiter: RadioArbiter, operation_timeout: float) -> TransportFactory:
    """Return a factory creating a fresh :class:`BleakTransport` per session."""

    def create() -> Transport:
        return BleakTransport(arbiter, operation_timeout=operation_timeout)

    return create


@dataclass(frozen=True)
class DiscoveredDevice:
    address: str
    name: Optional[str]
    rssi: Optional[int]
    company_ids: tuple[int, ...]


async def scan_devices(timeout: float, company_id: Optional[int] = None) -> list[DiscoveredDevice]:
    """Scan for advertising peripherals, optionally filtered by manufacturer.

    Args:
        timeout: Seconds to scan.
        company_id: Bluetooth SIG company identifier to keep, or None for all.

    Returns:
        Devices sorted by descending signal strength.

    Raises:
        Unreachable: If the scanner cannot be started.
    """
    try:
        # Bleak 0.22+ only exposes advertisement data with return_adv=True.
        devices_adv = await BleakScanner.discover(timeout=timeout, return_adv=True)
    except BleakError as e:
        raise Unreachable(f"BLE scanner initialization failed: {e}") from e
    logger.debug("Scan completed: %d devices found", len(devices_adv))

    found = []
    for dev, adv in devices_adv.values():
        ids = tuple(sorted(adv.manufacturer_data))
        if company_id is not None and company_id not in ids:
            continue
        found.append(DiscoveredDevice(address=dev.address, name=dev.name, rssi=adv.rssi, company_ids=ids))
    found.sort(key=lambda d: d.rssi if d.rssi is not None else -999, reverse=True)
    return found
