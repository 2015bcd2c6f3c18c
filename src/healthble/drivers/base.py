"""Uniform device driver contract."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from ..config import BluetoothSettings, DeviceConfig, DriverKind
from ..measurement import PollOutcome
from ..session import Session
from ..transport import TransportFactory


class Driver(ABC):
    """One device family behind the ``pair`` / ``read_measurements`` / ``sync_time`` contract.

    Drivers are family-specific but stateless between calls: every public
    operation opens its own :class:`~healthble.session.Session` and
    finalizes it before returning.

    Args:
        config: The device this driver instance serves.
        transport_factory: Creates a fresh transport for each session.
        settings: Bluetooth timeouts.
    """

    kind: DriverKind

    def __init__(
        self,
        config: DeviceConfig,
        transport_factory: TransportFactory,
        settings: BluetoothSettings,
    ) -> None:
        if config.driver_kind is not self.kind:
            raise ValueError(f"{type(self).__name__} cannot drive {config.driver_kind.value}")
        self.config = config
        self._transport_factory = transport_factory
        self._settings = settings

    def _session(self, address: Optional[str] = None) -> Session:
        return Session(
            self._transport_factory(),
            self.config.id,
            (address or self.config.address).upper(),
            self._settings,
        )

    @abstractmethod
    async def pair(self, address: Optional[str] = None, secret: Optional[bytes] = None) -> None:
        """Bond with the unit and register ``secret`` (default: the configured one).

        Raises:
            PairingRejected, TransportError, DeviceMismatch
        """

    @abstractmethod
    async def read_measurements(self) -> PollOutcome:
        """Read every stored record. Never raises for classified failures."""

    @abstractmethod
    async def sync_time(self, now: Optional[datetime] = None) -> None:
        """Write ``now`` (default: current time) to the unit clock in its configured zone."""
