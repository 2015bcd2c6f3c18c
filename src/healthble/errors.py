"""Error taxonomy shared by every layer of the daemon.

Each exception carries a :class:`FailureKind` so the scheduler can decide
between retrying, skipping the device until its next cycle, or aborting
startup. Lower layers only raise; they never decide.
"""

from __future__ import annotations

from enum import Enum


class FailureKind(Enum):
    """Classification of a failure, consumed by the scheduler."""

    CONFIGURATION = "configuration"
    TRANSPORT = "transport"
    AUTHENTICATION = "authentication"
    PROTOCOL = "protocol"
    DEVICE = "device"
    DECODE = "decode"
    SINK = "sink"


class HealthBleError(Exception):
    """Base class for all classified errors."""

    kind: FailureKind = FailureKind.TRANSPORT


class ConfigError(HealthBleError):
    """Invalid configuration. Fatal at startup, never retried."""

    kind = FailureKind.CONFIGURATION


class TransportError(HealthBleError):
    """Raw failure surfaced by the BLE transport."""

    kind = FailureKind.TRANSPORT


class Unreachable(TransportError):
    """The peripheral could not be found or refused the connection."""


class ConnectTimeout(TransportError):
    """The connection was not established inside the connect timeout."""


class WriteFailed(TransportError):
    """A characteristic write was rejected or did not complete."""


class DiscoveryFailed(TransportError):
    """Required GATT services or characteristics are missing."""


class OperationTimeout(TransportError):
    """A characteristic operation did not complete in time."""


class LinkLost(TransportError):
    """The link dropped while the session was still using it."""


class RadioBusy(TransportError):
    """No free link slot on the local adapter inside the connect timeout."""


class NotAdvertising(TransportError):
    """The unit did not advertise during the scan window."""


class AuthError(HealthBleError):
    """The unit refused the shared secret."""

    kind = FailureKind.AUTHENTICATION


class AuthRejected(AuthError):
    """Unlock with the configured secret was rejected."""


class PairingRejected(AuthError):
    """The unit refused to bond or to store the proposed secret."""


class ProtocolError(HealthBleError):
    """Malformed frame, bad checksum, or unexpected response."""

    kind = FailureKind.PROTOCOL


class DeviceMismatch(HealthBleError):
    """The peripheral is not the model the driver was configured for."""

    kind = FailureKind.DEVICE


class DecodeError(HealthBleError):
    """A single stored record could not be decoded."""

    kind = FailureKind.DECODE


class SinkError(HealthBleError):
    """Writing measurements to the output sink failed."""

    kind = FailureKind.SINK


class SessionStateError(RuntimeError):
    """Illegal transition requested on a session state machine."""
