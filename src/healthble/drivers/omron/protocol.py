"""Omron command framing.

Every command and response is a packet::

    +-----+--------+--------+---------+-----+
    | len | op(hi) | op(lo) | data... | crc |
    +-----+--------+--------+---------+-----+

``len`` counts the whole packet including itself and the checksum byte,
so a packet carries at most 251 data bytes. ``crc`` is chosen so that the
XOR of every byte of the packet is zero.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import reduce
from typing import Optional

from ...errors import ProtocolError

PKT_HDR_SIZE = 4  # len, op (2 bytes), crc
MAX_PKT_LEN = 0xFF

OP_START = 0x0000
OP_END = 0x0F00
OP_READ = 0x0100
OP_WRITE = 0x01C0
RESPONSE_BIT = 0x8000


@dataclass(frozen=True)
class Response:
    op: int
    data: bytes


def checksum(data: bytes) -> int:
    return reduce(lambda acc, b: acc ^ b, data, 0)


def build_packet(op: int, data: bytes = b"") -> bytes:
    pkt_len = len(data) + PKT_HDR_SIZE
    if pkt_len > MAX_PKT_LEN:
        raise ValueError(f"Packet too long: {pkt_len} bytes")
    body = bytes([pkt_len, (op >> 8) & 0xFF, op & 0xFF]) + bytes(data)
    return body + bytes([checksum(body)])


def expected_length(first_chunk: bytes) -> int:
    """Packet length announced by the first received chunk."""
    if not first_chunk:
        raise ProtocolError("Received packet is too short")
    pkt_len = first_chunk[0]
    if pkt_len < PKT_HDR_SIZE:
        raise ProtocolError("Received packet is too short")
    return pkt_len


def parse_packet(pkt: bytes) -> Response:
    """Validate and split a complete response packet.

    Trailing padding after the announced length is ignored.
    """
    pkt_len = expected_length(pkt)
    if len(pkt) < pkt_len:
        raise ProtocolError("Received packet is too short")
    pkt = pkt[:pkt_len]
    if checksum(pkt) != 0:
        raise ProtocolError("CRC error in received packet")
    op = (pkt[1] << 8) | pkt[2]
    return Response(op=op, data=bytes(pkt[3 : pkt_len - 1]))


def start_command() -> bytes:
    return build_packet(OP_START, bytes([0x00, 0x00, 0x10, 0x00]))


def end_command() -> bytes:
    return build_packet(OP_END, bytes([0x00, 0x00, 0x00, 0x00]))


def read_command(addr: int, size: int) -> bytes:
    return build_packet(OP_READ, bytes([(addr >> 8) & 0xFF, addr & 0xFF, size, 0x00]))


def write_command(addr: int, data: bytes) -> bytes:
    return build_packet(
        OP_WRITE, bytes([(addr >> 8) & 0xFF, addr & 0xFF, len(data)]) + bytes(data) + b"\x00"
    )


def check_op(resp: Response, op: int) -> None:
    if resp.op != (op | RESPONSE_BIT):
        raise ProtocolError(f"Invalid response: expected op {op | RESPONSE_BIT:#06x}, got {resp.op:#06x}")


def parse_read_response(resp: Response, addr: int, size: int) -> Optional[bytes]:
    """Extract EEPROM bytes from a read response.

    Returns:
        The ``size`` bytes read, or None when the unit answered with fewer
        bytes than requested (slot not readable).
    """
    check_op(resp, OP_READ)
    if len(resp.data) < 3:
        raise ProtocolError("Invalid response: read answer too short")
    resp_addr = (resp.data[0] << 8) | resp.data[1]
    resp_size = resp.data[2]
    if resp_addr != addr or resp_size != size:
        raise ProtocolError(
            f"Invalid response: asked {size} bytes at {addr:#06x}, got {resp_size} at {resp_addr:#06x}"
        )
    if len(resp.data) < 3 + size:
        return None
    return resp.data[3 : 3 + size]


def parse_write_response(resp: Response, addr: int) -> None:
    check_op(resp, OP_WRITE)
    if len(resp.data) < 2:
        raise ProtocolError("Invalid response: write answer too short")
    resp_addr = (resp.data[0] << 8) | resp.data[1]
    if resp_addr != addr:
        raise ProtocolError(f"Invalid response: wrote at {addr:#06x}, unit acknowledged {resp_addr:#06x}")
