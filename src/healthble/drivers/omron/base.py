"""Session flow shared by the Omron families.

The families differ only in characteristic layout, unlock requirement,
clock block and record layout; the order of operations is the same:

1. wait for the Omron advertisement and connect,
2. discover services and verify manufacturer/model,
3. unlock with the secret (families that have one),
4. open a transaction, write the clock, read every record slot, close it,
5. disconnect, then decode the raw slots.
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import ClassVar, Optional

from ...crypto import Codec, OmronUnlockCodec, OpenCodec
from ...errors import DecodeError, DeviceMismatch, HealthBleError, ProtocolError
from ...measurement import Measurement, PollOutcome
from ...session import Session
from ...timeutil import local_now
from ..base import Driver
from .channel import OmronChannel

logger = logging.getLogger(__name__)

OMRON_COMPANY_ID = 0x020E
MANUFACTURER = "OMRONHEALTHCARE"

DEVICE_INFO_SERVICE = "0000180a-0000-1000-8000-00805f9b34fb"
MANUFACTURER_CHAR = "00002a29-0000-1000-8000-00805f9b34fb"
MODEL_CHAR = "00002a24-0000-1000-8000-00805f9b34fb"
FIRMWARE_CHAR = "00002a26-0000-1000-8000-00805f9b34fb"


@dataclass(frozen=True)
class RawRecord:
    """Undecoded record slot as read from the unit's EEPROM."""

    addr: int
    data: bytes
    user: int = 1


class OmronDriver(Driver):
    """Template for Omron units speaking the EEPROM command protocol."""

    MODEL: ClassVar[str]
    MAIN_SERVICE: ClassVar[str]
    TX_CHARS: ClassVar[tuple[str, ...]]
    RX_CHARS: ClassVar[tuple[str, ...]]
    CHUNK_SIZE: ClassVar[int]
    UNLOCK_CHAR: ClassVar[Optional[str]] = None

    def codec(self) -> Codec:
        if self.UNLOCK_CHAR is not None:
            return OmronUnlockCodec(self.UNLOCK_CHAR)
        return OpenCodec()

    def required_characteristics(self) -> set[tuple[str, str]]:
        chars = set(self.TX_CHARS) | set(self.RX_CHARS)
        if self.UNLOCK_CHAR is not None:
            chars.add(self.UNLOCK_CHAR)
        required = {(self.MAIN_SERVICE, c) for c in chars}
        required |= {(DEVICE_INFO_SERVICE, c) for c in (MANUFACTURER_CHAR, MODEL_CHAR, FIRMWARE_CHAR)}
        return required

    async def _read_string(self, session: Session, char_uuid: str) -> str:
        data = await session.read(char_uuid)
        try:
            return data.decode("utf-8").rstrip("\x00 ")
        except UnicodeDecodeError:
            raise ProtocolError(f"Unable to decode characteristic value of {char_uuid}") from None

    async def _check_device(self, session: Session) -> None:
        manufacturer = await self._read_string(session, MANUFACTURER_CHAR)
        model = await self._read_string(session, MODEL_CHAR)
        if manufacturer != MANUFACTURER or model != self.MODEL:
            raise DeviceMismatch(
                f"Unknown device: {manufacturer!r} {model!r}, expected {MANUFACTURER!r} {self.MODEL!r}"
            )

    async def _open_channel(self, session: Session) -> OmronChannel:
        return await OmronChannel.open(session, self.TX_CHARS, self.RX_CHARS, self.CHUNK_SIZE)

    @abstractmethod
    async def _write_clock(self, channel: OmronChannel, local: datetime) -> None:
        """Write the unit clock to ``local`` wall time."""

    @abstractmethod
    async def _read_records(self, channel: OmronChannel) -> list[RawRecord]:
        """Read every record slot in device order."""

    @abstractmethod
    def decode(self, record: RawRecord) -> Optional[Measurement]:
        """Decode one slot; None for an empty slot.

        Raises:
            DecodeError: The slot holds bytes that are not a valid record.
        """

    async def _connect(self, session: Session, wait_for_advertisement: bool) -> None:
        await session.connect(OMRON_COMPANY_ID if wait_for_advertisement else None)
        await session.discover(self.required_characteristics())
        await self._check_device(session)

    async def read_raw(self) -> list[RawRecord]:
        """Run one full read session and return the undecoded slots."""
        async with self._session() as session:
            await self._connect(session, wait_for_advertisement=True)
            await session.authenticate(self.codec(), self.config.secret)

            async with session.transfer():
                channel = await self._open_channel(session)
                await channel.start_transaction()
                await self._write_clock(channel, local_now(self.config.tz))
                records = await self._read_records(channel)
                await channel.end_transaction()
        return records

    def decode_all(self, records: list[RawRecord]) -> PollOutcome:
        measurements: list[Measurement] = []
        dropped = 0
        for record in records:
            try:
                measurement = self.decode(record)
            except DecodeError as e:
                dropped += 1
                logger.warning("%s: dropping record at %#06x: %s", self.config.id, record.addr, e)
                continue
            if measurement is not None:
                measurements.append(measurement)
        return PollOutcome.succeeded(self.config.id, measurements, dropped=dropped)

    async def read_measurements(self) -> PollOutcome:
        try:
            records = await self.read_raw()
        except HealthBleError as e:
            return PollOutcome.failed(self.config.id, e)
        return self.decode_all(records)

    async def sync_time(self, now: Optional[datetime] = None) -> None:
        local = local_now(self.config.tz, now)
        async with self._session() as session:
            await self._connect(session, wait_for_advertisement=True)
            await session.authenticate(self.codec(), self.config.secret)
            async with session.transfer():
                channel = await self._open_channel(session)
                await channel.start_transaction()
                await self._write_clock(channel, local)
                await channel.end_transaction()
        logger.info("%s: clock set to %s", self.config.id, local.isoformat())

    async def pair(self, address: Optional[str] = None, secret: Optional[bytes] = None) -> None:
        secret = secret if secret is not None else self.config.secret
        async with self._session(address) as session:
            await self._connect(session, wait_for_advertisement=False)
            firmware = await self._read_string(session, FIRMWARE_CHAR)
            logger.info("%s: found %s %s, firmware %s", self.config.id, MANUFACTURER, self.MODEL, firmware)

            await session.bond()
            await session.register(self.codec(), secret)

            async with session.transfer():
                channel = await self._open_channel(session)
                await channel.start_transaction()
                await self._write_clock(channel, local_now(self.config.tz))
                await channel.end_transaction()
