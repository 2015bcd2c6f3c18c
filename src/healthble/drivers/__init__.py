"""Device drivers, one per supported family."""

from __future__ import annotations

from ..config import BluetoothSettings, DeviceConfig, DriverKind
from ..transport import TransportFactory
from .base import Driver
from .omron import Hem7361tDriver, Hn300t2Driver

DRIVERS: dict[DriverKind, type[Driver]] = {
    DriverKind.OMRON_HEM_7361T: Hem7361tDriver,
    DriverKind.OMRON_HN_300T2: Hn300t2Driver,
}


def create_driver(
    config: DeviceConfig, transport_factory: TransportFactory, settings: BluetoothSettings
) -> Driver:
    return DRIVERS[config.driver_kind](config, transport_factory, settings)


__all__ = ["DRIVERS", "Driver", "create_driver"]
