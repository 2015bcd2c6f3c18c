"""Configuration model and YAML loader.

The loaded :class:`AppConfig` is validated completely before the daemon
starts and is shared read-only between device tasks afterwards.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

SECRET_LEN = 16

_MAC_RE = re.compile(r"^[0-9A-F]{2}(:[0-9A-F]{2}){5}$")


class DriverKind(Enum):
    """Supported device families. Keep sorted and grouped by manufacturer."""

    OMRON_HEM_7361T = "omron_hem_7361t"
    OMRON_HN_300T2 = "omron_hn_300t2"

    @property
    def requires_secret(self) -> bool:
        return self is DriverKind.OMRON_HEM_7361T


@dataclass(frozen=True)
class DeviceConfig:
    """One configured peripheral.

    Attributes:
        id: Unique device identifier, used as log prefix and sink tag.
        driver_kind: Device family selecting the driver implementation.
        address: BLE MAC address, upper case.
        secret: 16-byte unlock key for families that need one, else None.
        timezone: IANA zone the unit's clock runs in.
        post_read_sleep: Seconds to suspend polling after a successful read.
        measurement_name: Series name written to the sink.
    """

    id: str
    driver_kind: DriverKind
    address: str
    secret: Optional[bytes]
    timezone: str
    post_read_sleep: Optional[float]
    measurement_name: str

    def __post_init__(self) -> None:
        if self.driver_kind.requires_secret:
            if self.secret is None:
                raise ConfigError(f"{self.id}: secret is required for {self.driver_kind.value}")
            if len(self.secret) != SECRET_LEN:
                raise ConfigError(
                    f"{self.id}: secret must be exactly {SECRET_LEN} bytes, got {len(self.secret)}"
                )
        elif self.secret is not None:
            raise ConfigError(f"{self.id}: {self.driver_kind.value} does not take a secret")

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@dataclass(frozen=True)
class SinkConfig:
    """InfluxDB v2 connection descriptor."""

    url: str
    token: str
    org: str
    bucket: str
    timeout: float = 30.0


@dataclass(frozen=True)
class BluetoothSettings:
    """Timeouts for every BLE suspension point, in seconds."""

    connect_timeout: float = 20.0
    operation_timeout: float = 10.0
    advertisement_timeout: float = 300.0
    max_links: int = 1


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff used by the scheduler."""

    max_retries: int = 3
    base_delay: float = 3.0
    max_delay: float = 60.0
    factor: float = 2.0
    idle_delay: float = 5.0
    shutdown_grace: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based), capped at max_delay."""
        if attempt < 1:
            return 0.0
        return min(self.max_delay, self.base_delay * self.factor ** (attempt - 1))


@dataclass(frozen=True)
class AppConfig:
    devices: tuple[DeviceConfig, ...]
    sink: SinkConfig
    bluetooth: BluetoothSettings = field(default_factory=BluetoothSettings)
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def device(self, device_id: str) -> DeviceConfig:
        for device in self.devices:
            if device.id == device_id:
                return device
        raise ConfigError(f"No such device: {device_id}")


def _check_keys(section: str, data: Mapping[str, Any], required: set[str], optional: set[str]) -> None:
    if not isinstance(data, Mapping):
        raise ConfigError(f"{section}: expected a mapping")
    unknown = set(data) - required - optional
    if unknown:
        raise ConfigError(f"{section}: unknown keys: {', '.join(sorted(unknown))}")
    missing = required - set(data)
    if missing:
        raise ConfigError(f"{section}: missing keys: {', '.join(sorted(missing))}")


def _positive(section: str, name: str, value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{section}: {name} must be a number") from None
    if number <= 0:
        raise ConfigError(f"{section}: {name} must be positive")
    return number


def _integer(section: str, name: str, value: Any, minimum: int) -> int:
    # bool is an int subclass.
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ConfigError(f"{section}: {name} must be an integer >= {minimum}")
    return value


def _parse_secret(device_id: str, value: Any) -> Optional[bytes]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{device_id}: secret must be a hex string")
    try:
        return bytes.fromhex(value)
    except ValueError:
        raise ConfigError(f"{device_id}: secret is not valid hex") from None


def _parse_device(data: Mapping[str, Any]) -> DeviceConfig:
    _check_keys(
        "device",
        data,
        {"id", "driver", "address", "timezone", "measurement"},
        {"secret", "post_read_sleep"},
    )
    device_id = str(data["id"])

    try:
        kind = DriverKind(data["driver"])
    except ValueError:
        raise ConfigError(f"{device_id}: unknown driver {data['driver']!r}") from None

    address = str(data["address"]).upper()
    if not _MAC_RE.match(address):
        raise ConfigError(f"{device_id}: invalid address {data['address']!r}")

    tz_name = str(data["timezone"])
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigError(f"{device_id}: unable to open timezone {tz_name!r}") from None

    sleep = data.get("post_read_sleep")
    post_read_sleep = None if sleep is None else _positive(device_id, "post_read_sleep", sleep)

    return DeviceConfig(
        id=device_id,
        driver_kind=kind,
        address=address,
        secret=_parse_secret(device_id, data.get("secret")),
        timezone=tz_name,
        post_read_sleep=post_read_sleep,
        measurement_name=str(data["measurement"]),
    )


def parse_config(data: Any) -> AppConfig:
    """Validate an already-parsed configuration mapping.

    Raises:
        ConfigError: On any shape, value or uniqueness problem.
    """
    _check_keys("config", data, {"devices", "sink"}, {"bluetooth", "retry"})

    raw_devices = data["devices"]
    if not isinstance(raw_devices, list) or not raw_devices:
        raise ConfigError("config: devices must be a non-empty list")
    devices = tuple(_parse_device(d) for d in raw_devices)

    seen: set[str] = set()
    for device in devices:
        if device.id in seen:
            raise ConfigError(f"Device id is duplicated: {device.id}")
        seen.add(device.id)

    raw_sink = data["sink"]
    _check_keys("sink", raw_sink, {"url", "token", "org", "bucket"}, {"timeout"})
    sink = SinkConfig(
        url=str(raw_sink["url"]).rstrip("/"),
        token=str(raw_sink["token"]),
        org=str(raw_sink["org"]),
        bucket=str(raw_sink["bucket"]),
        timeout=_positive("sink", "timeout", raw_sink.get("timeout", 30.0)),
    )

    raw_bt = data.get("bluetooth") or {}
    _check_keys(
        "bluetooth",
        raw_bt,
        set(),
        {"connect_timeout", "operation_timeout", "advertisement_timeout", "max_links"},
    )
    defaults = BluetoothSettings()
    bluetooth = BluetoothSettings(
        connect_timeout=_positive("bluetooth", "connect_timeout", raw_bt.get("connect_timeout", defaults.connect_timeout)),
        operation_timeout=_positive("bluetooth", "operation_timeout", raw_bt.get("operation_timeout", defaults.operation_timeout)),
        advertisement_timeout=_positive(
            "bluetooth", "advertisement_timeout", raw_bt.get("advertisement_timeout", defaults.advertisement_timeout)
        ),
        max_links=_integer("bluetooth", "max_links", raw_bt.get("max_links", defaults.max_links), 1),
    )

    raw_retry = data.get("retry") or {}
    _check_keys(
        "retry",
        raw_retry,
        set(),
        {"max_retries", "base_delay", "max_delay", "factor", "idle_delay", "shutdown_grace"},
    )
    rd = RetryPolicy()
    retry = RetryPolicy(
        max_retries=_integer("retry", "max_retries", raw_retry.get("max_retries", rd.max_retries), 0),
        base_delay=_positive("retry", "base_delay", raw_retry.get("base_delay", rd.base_delay)),
        max_delay=_positive("retry", "max_delay", raw_retry.get("max_delay", rd.max_delay)),
        factor=_positive("retry", "factor", raw_retry.get("factor", rd.factor)),
        idle_delay=_positive("retry", "idle_delay", raw_retry.get("idle_delay", rd.idle_delay)),
        shutdown_grace=_positive("retry", "shutdown_grace", raw_retry.get("shutdown_grace", rd.shutdown_grace)),
    )

    return AppConfig(devices=devices, sink=sink, bluetooth=bluetooth, retry=retry)


def load_config(path: str | Path) -> AppConfig:
    """Read and validate a YAML configuration file."""
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Unable to open configuration: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Unable to parse configuration: {e}") from e

    config = parse_config(data)
    logger.debug("Loaded configuration from %s: %d devices", path, len(config.devices))
    return config
