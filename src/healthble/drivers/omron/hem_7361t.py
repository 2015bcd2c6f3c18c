"""Omron HEM-7361T (M7 Intelli IT) blood-pressure monitor.

Record layout (16 bytes per slot, two users of 100 slots)::

    byte 0   systolic - 25
    byte 1   diastolic
    byte 2   pulse
    byte 3   bits 0-5: year - 2000
    byte 4   bits 0-4: hour, bits 5-7: day bits 0-2
    byte 5   bits 0-1: day bits 3-4, bits 2-5: month,
             bit 6: irregular heartbeat, bit 7: body movement
    byte 6   bits 0-5: second, bits 6-7: minute bits 0-1
    byte 7   bits 0-3: minute bits 2-5

The clock block is read at 0x003C and written back at 0x0080 with bytes
8-13 replaced by the local date/time and byte 14 holding the byte sum.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from ...config import DriverKind
from ...errors import DecodeError, ProtocolError
from ...measurement import BloodPressureReading
from ...timeutil import local_timestamp
from .base import OmronDriver, RawRecord
from .channel import OmronChannel

logger = logging.getLogger(__name__)

MAIN_SERVICE = "ecbe3980-c9a2-11e1-b1bd-0002a5d5c51b"
UNLOCK_CHAR = "b305b680-aee7-11e1-a730-0002a5d5c51b"
TX_CHARS = (
    "db5b55e0-aee7-11e1-965e-0002a5d5c51b",
    "e0b8a060-aee7-11e1-92f4-0002a5d5c51b",
    "0ae12b00-aee8-11e1-a192-0002a5d5c51b",
    "10e1ba60-aee8-11e1-89e5-0002a5d5c51b",
)
RX_CHARS = (
    "49123040-aee8-11e1-a74d-0002a5d5c51b",
    "4d0bf320-aee8-11e1-a0d9-0002a5d5c51b",
    "5128ce60-aee8-11e1-b84b-0002a5d5c51b",
    "560f1420-aee8-11e1-8184-0002a5d5c51b",
)

CHUNK_SIZE = 0x10

CLOCK_ADDR_RD = 0x003C
CLOCK_ADDR_WR = 0x0080
CLOCK_LEN = 0x10

REC_START = (0x0098, 0x06D8)  # One area per user.
REC_COUNT = 100
REC_LEN = 0x10

YEAR_BASE = 2000


def decode_record(data: bytes, tz: ZoneInfo, user: int = 1) -> Optional[BloodPressureReading]:
    """Decode one record slot.

    Returns:
        The reading, or None for an erased (all 0xFF) slot.

    Raises:
        DecodeError: Short slot or an invalid timestamp.
    """
    if len(data) < REC_LEN:
        raise DecodeError(f"Record too short: {len(data)} bytes")
    if all(b == 0xFF for b in data[:REC_LEN]):
        return None

    year = YEAR_BASE + (data[3] & 0x3F)
    month = (data[5] >> 2) & 0x0F
    day = ((data[4] >> 5) & 0x07) | ((data[5] & 0x03) << 3)
    hour = data[4] & 0x1F
    minute = ((data[6] >> 6) & 0x03) | ((data[7] & 0x0F) << 2)
    second = data[6] & 0x3F

    return BloodPressureReading(
        systolic=25 + data[0],
        diastolic=data[1],
        pulse=data[2],
        irregular_heartbeat=bool((data[5] >> 6) & 0x01),
        body_movement=bool((data[5] >> 7) & 0x01),
        user=user,
        measured_at=local_timestamp(tz, year, month, day, hour, minute, second),
    )


def encode_clock(block: bytes, local: datetime) -> bytes:
    """Patch the clock block read from the unit with ``local`` wall time."""
    if len(block) != CLOCK_LEN:
        raise ValueError(f"Clock block must be {CLOCK_LEN} bytes")
    if not YEAR_BASE <= local.year <= YEAR_BASE + 0x3F:
        raise ValueError(f"Year {local.year} cannot be represented by the unit")

    data = bytearray(block)
    data[8] = local.year - YEAR_BASE
    data[9] = local.month
    data[10] = local.day
    data[11] = local.hour
    data[12] = local.minute
    data[13] = local.second
    data[14] = sum(data[:14]) & 0xFF
    data[15] = 0x00
    return bytes(data)


class Hem7361tDriver(OmronDriver):
    kind = DriverKind.OMRON_HEM_7361T

    MODEL = "M7 Intelli IT"
    MAIN_SERVICE = MAIN_SERVICE
    TX_CHARS = TX_CHARS
    RX_CHARS = RX_CHARS
    CHUNK_SIZE = CHUNK_SIZE
    UNLOCK_CHAR = UNLOCK_CHAR

    async def _write_clock(self, channel: OmronChannel, local: datetime) -> None:
        block = await channel.read_eeprom(CLOCK_ADDR_RD, CLOCK_LEN, CLOCK_LEN)
        if block is None:
            raise ProtocolError("Read error on clock block")
        await channel.write_eeprom(CLOCK_ADDR_WR, encode_clock(block, local), CLOCK_LEN)

    async def _read_records(self, channel: OmronChannel) -> list[RawRecord]:
        records = []
        for user, start in enumerate(REC_START, start=1):
            for slot in range(REC_COUNT):
                addr = start + slot * REC_LEN
                data = await channel.read_eeprom(addr, REC_LEN, REC_LEN)
                if data is not None:
                    records.append(RawRecord(addr=addr, data=data, user=user))
        logger.debug("%s: read %d record slots", self.config.id, len(records))
        return records

    def decode(self, record: RawRecord) -> Optional[BloodPressureReading]:
        return decode_record(record.data, self.config.tz, user=record.user)
