"""Measurement records and per-cycle poll outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

from .errors import FailureKind, HealthBleError

FieldValue = Union[int, float, bool]


def _timestamp_ns(ts: datetime) -> int:
    # Unit clocks have one-second resolution.
    return int(ts.timestamp()) * 1_000_000_000


@dataclass(frozen=True)
class BloodPressureReading:
    """One stored blood-pressure measurement.

    Attributes:
        systolic: Systolic pressure in mmHg.
        diastolic: Diastolic pressure in mmHg.
        pulse: Pulse rate in beats per minute.
        irregular_heartbeat: Irregular heartbeat flag set by the unit.
        body_movement: Movement-during-measurement flag set by the unit.
        user: 1-based user slot the record was stored under.
        measured_at: Timestamp from the unit's own clock, timezone aware.
    """

    systolic: int
    diastolic: int
    pulse: int
    irregular_heartbeat: bool
    measured_at: datetime
    body_movement: bool = False
    user: int = 1

    def fields(self) -> dict[str, FieldValue]:
        return {
            "systolic": self.systolic,
            "diastolic": self.diastolic,
            "pulse": self.pulse,
            "irregular_heartbeat": self.irregular_heartbeat,
            "body_movement": self.body_movement,
        }

    def tags(self) -> dict[str, str]:
        return {"user": str(self.user)}

    @property
    def timestamp_ns(self) -> int:
        return _timestamp_ns(self.measured_at)


@dataclass(frozen=True)
class WeightReading:
    """One stored scale measurement."""

    weight_kg: float
    measured_at: datetime
    body_fat_pct: Optional[float] = None

    def fields(self) -> dict[str, FieldValue]:
        values: dict[str, FieldValue] = {"weight": self.weight_kg}
        if self.body_fat_pct is not None:
            values["body_fat"] = self.body_fat_pct
        return values

    def tags(self) -> dict[str, str]:
        return {}

    @property
    def timestamp_ns(self) -> int:
        return _timestamp_ns(self.measured_at)


Measurement = Union[BloodPressureReading, WeightReading]


@dataclass(frozen=True)
class PollOutcome:
    """Result of one polling cycle for one device.

    Exactly one of ``measurements`` (possibly empty when the unit holds no
    records) or ``error`` is meaningful. ``dropped`` counts records that
    were read but failed to decode.
    """

    device_id: str
    measurements: tuple[Measurement, ...] = field(default_factory=tuple)
    error: Optional[HealthBleError] = None
    dropped: int = 0

    @classmethod
    def succeeded(cls, device_id: str, measurements: list[Measurement], dropped: int = 0) -> "PollOutcome":
        return cls(device_id=device_id, measurements=tuple(measurements), dropped=dropped)

    @classmethod
    def failed(cls, device_id: str, error: HealthBleError) -> "PollOutcome":
        return cls(device_id=device_id, error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> Optional[FailureKind]:
        return None if self.error is None else self.error.kind
