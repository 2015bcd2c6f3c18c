"""Command channel over the Omron TX/RX characteristic sets."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from ...session import Session
from ...transport import NotificationStream
from . import protocol
from .protocol import Response

logger = logging.getLogger(__name__)


class OmronChannel:
    """Request/response exchange with an unlocked Omron unit.

    Commands are split into ``chunk_size`` pieces written to consecutive TX
    characteristics; the response arrives as consecutive notifications on
    the RX characteristics until the announced packet length is reached.
    Use :meth:`open` to create an instance inside a transfer scope.
    """

    def __init__(
        self,
        session: Session,
        tx_chars: Sequence[str],
        rx_streams: Sequence[NotificationStream],
        chunk_size: int,
    ) -> None:
        if not tx_chars or not rx_streams:
            raise ValueError("At least one TX and one RX characteristic are required")
        self._session = session
        self._tx_chars = list(tx_chars)
        self._rx_streams = list(rx_streams)
        self._chunk_size = chunk_size

    @classmethod
    async def open(
        cls, session: Session, tx_chars: Sequence[str], rx_chars: Sequence[str], chunk_size: int
    ) -> "OmronChannel":
        streams = [await session.subscribe(char) for char in rx_chars]
        return cls(session, tx_chars, streams, chunk_size)

    async def command(self, packet: bytes) -> Response:
        if len(packet) > len(self._tx_chars) * self._chunk_size:
            raise ValueError(f"Packet of {len(packet)} bytes does not fit the TX characteristics")

        logger.debug("TX %s", packet.hex())
        chunks = [packet[i : i + self._chunk_size] for i in range(0, len(packet), self._chunk_size)]
        for char, chunk in zip(self._tx_chars, chunks):
            await self._session.write(char, chunk)

        pkt = bytearray()
        pkt_len = 0
        for i, stream in enumerate(self._rx_streams):
            buf = await self._session.receive(stream)
            if i == 0:
                pkt_len = protocol.expected_length(buf)
            pkt.extend(buf)
            if len(pkt) >= pkt_len:
                break

        logger.debug("RX %s", pkt.hex())
        return protocol.parse_packet(bytes(pkt))

    async def start_transaction(self) -> None:
        resp = await self.command(protocol.start_command())
        protocol.check_op(resp, protocol.OP_START)

    async def end_transaction(self) -> None:
        resp = await self.command(protocol.end_command())
        protocol.check_op(resp, protocol.OP_END)

    async def read_eeprom(self, start: int, size: int, block_size: int) -> Optional[bytes]:
        """Read ``size`` bytes from ``start`` in ``block_size`` commands.

        Returns:
            The bytes, or None if the unit returned a short block.
        """
        if block_size <= 0:
            raise ValueError("block_size must be positive")
        out = bytearray()
        addr = start
        while len(out) < size:
            todo = min(block_size, size - len(out))
            resp = await self.command(protocol.read_command(addr, todo))
            block = protocol.parse_read_response(resp, addr, todo)
            if block is None:
                logger.debug("Short read at %#06x", addr)
                return None
            out.extend(block)
            addr += todo
        return bytes(out)

    async def write_eeprom(self, start: int, data: bytes, block_size: int) -> None:
        if block_size <= 0:
            raise ValueError("block_size must be positive")
        addr = start
        for offset in range(0, len(data), block_size):
            block = data[offset : offset + block_size]
            resp = await self.command(protocol.write_command(addr, block))
            protocol.parse_write_response(resp, addr)
            addr += len(block)
