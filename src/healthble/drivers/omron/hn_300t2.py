"""Omron HN-300T2 (Intelli IT) body scale.

Records are 16-byte slots at 0x02C0: a big-endian weight in 50 g units
(0xFFFF marks an empty slot) followed by year-2000, month, day, hour,
minute and second. The unit needs no unlock secret.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from ...config import DriverKind
from ...errors import DecodeError
from ...measurement import WeightReading
from ...timeutil import local_timestamp
from .base import OmronDriver, RawRecord
from .channel import OmronChannel

MAIN_SERVICE = "0000fe4a-0000-1000-8000-00805f9b34fb"
TX_CHAR = "db5b55e0-aee7-11e1-965e-0002a5d5c51b"
RX_CHAR = "49123040-aee8-11e1-a74d-0002a5d5c51b"

# Large enough that commands are never chunked.
CHUNK_SIZE = 0xFF

CLOCK_ADDR = 0x0248
CLOCK_LEN = 0x08

REC_START = 0x02C0
REC_COUNT = 30
REC_LEN = 0x10

YEAR_BASE = 2000
EMPTY_WEIGHT = 0xFFFF


def decode_record(data: bytes, tz: ZoneInfo) -> Optional[WeightReading]:
    if len(data) < 8:
        raise DecodeError(f"Record too short: {len(data)} bytes")
    raw_weight = (data[0] << 8) | data[1]
    if raw_weight == EMPTY_WEIGHT:
        return None

    return WeightReading(
        weight_kg=raw_weight / 20.0,
        measured_at=local_timestamp(tz, YEAR_BASE + data[2], data[3], data[4], data[5], data[6], data[7]),
    )


def encode_clock(local: datetime) -> bytes:
    if not YEAR_BASE <= local.year <= YEAR_BASE + 0xFF:
        raise ValueError(f"Year {local.year} cannot be represented by the unit")
    data = bytearray(CLOCK_LEN)
    data[0] = local.year - YEAR_BASE
    data[1] = local.month
    data[2] = local.day
    data[3] = local.hour
    data[4] = local.minute
    data[5] = local.second
    data[6] = sum(data[:6]) & 0xFF
    data[7] = 0xFF
    return bytes(data)


class Hn300t2Driver(OmronDriver):
    kind = DriverKind.OMRON_HN_300T2

    MODEL = "HN300T2IntelliIT"
    MAIN_SERVICE = MAIN_SERVICE
    TX_CHARS = (TX_CHAR,)
    RX_CHARS = (RX_CHAR,)
    CHUNK_SIZE = CHUNK_SIZE

    async def _write_clock(self, channel: OmronChannel, local: datetime) -> None:
        await channel.write_eeprom(CLOCK_ADDR, encode_clock(local), CLOCK_LEN)

    async def _read_records(self, channel: OmronChannel) -> list[RawRecord]:
        records = []
        for slot in range(REC_COUNT):
            addr = REC_START + slot * REC_LEN
            data = await channel.read_eeprom(addr, REC_LEN, REC_LEN)
            if data is not None:
                records.append(RawRecord(addr=addr, data=data))
        return records

    def decode(self, record: RawRecord) -> Optional[WeightReading]:
        return decode_record(record.data, self.config.tz)
