"""Pytest configuration and fixtures for healthble tests."""

from __future__ import annotations

import pytest

from healthble.config import BluetoothSettings, DeviceConfig, DriverKind, RetryPolicy
from healthble.drivers.omron import Hem7361tDriver, Hn300t2Driver

from .fakes import (
    BP_ADDRESS,
    SCALE_ADDRESS,
    SECRET,
    FakeOmronDevice,
    FakeTransportFactory,
    RecordingSink,
)


@pytest.fixture
def settings() -> BluetoothSettings:
    """Short timeouts so silent-device tests finish quickly."""
    return BluetoothSettings(
        connect_timeout=1.0,
        operation_timeout=0.2,
        advertisement_timeout=1.0,
    )


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_retries=3, base_delay=3.0, max_delay=60.0, factor=2.0, idle_delay=5.0, shutdown_grace=1.0)


@pytest.fixture
def bp_config() -> DeviceConfig:
    return DeviceConfig(
        id="bp",
        driver_kind=DriverKind.OMRON_HEM_7361T,
        address=BP_ADDRESS,
        secret=SECRET,
        timezone="UTC",
        post_read_sleep=None,
        measurement_name="blood_pressure",
    )


@pytest.fixture
def scale_config() -> DeviceConfig:
    return DeviceConfig(
        id="scale",
        driver_kind=DriverKind.OMRON_HN_300T2,
        address=SCALE_ADDRESS,
        secret=None,
        timezone="Europe/Budapest",
        post_read_sleep=None,
        measurement_name="weight",
    )


@pytest.fixture
def bp_device() -> FakeOmronDevice:
    return FakeOmronDevice.hem_7361t()


@pytest.fixture
def scale_device() -> FakeOmronDevice:
    return FakeOmronDevice.hn_300t2()


@pytest.fixture
def bp_factory(bp_device) -> FakeTransportFactory:
    return FakeTransportFactory(bp_device)


@pytest.fixture
def scale_factory(scale_device) -> FakeTransportFactory:
    return FakeTransportFactory(scale_device)


@pytest.fixture
def bp_driver(bp_config, bp_factory, settings) -> Hem7361tDriver:
    return Hem7361tDriver(bp_config, bp_factory, settings)


@pytest.fixture
def scale_driver(scale_config, scale_factory, settings) -> Hn300t2Driver:
    return Hn300t2Driver(scale_config, scale_factory, settings)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def sample_config() -> dict:
    """Minimal valid configuration mapping, as loaded from YAML."""
    return {
        "devices": [
            {
                "id": "bp",
                "driver": "omron_hem_7361t",
                "address": "aa:bb:cc:dd:ee:01",
                "secret": SECRET.hex(),
                "timezone": "Europe/Budapest",
                "measurement": "blood_pressure",
            },
            {
                "id": "scale",
                "driver": "omron_hn_300t2",
                "address": "AA:BB:CC:DD:EE:02",
                "timezone": "UTC",
                "measurement": "weight",
                "post_read_sleep": 600,
            },
        ],
        "sink": {
            "url": "http://localhost:8086/",
            "token": "secret-token",
            "org": "home",
            "bucket": "health",
        },
    }
