"""Per-family authentication and payload codecs.

A codec owns the secret-keyed part of a session: the challenge/response
exchange that unlocks the unit, the one-time exchange that registers a new
secret during pairing, and the transform applied to every characteristic
payload once the session key is known. The payload transform is a pure
function of the key and the bytes.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from .config import SECRET_LEN
from .errors import AuthRejected, PairingRejected

if TYPE_CHECKING:
    from .session import Session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionKey:
    """Key material negotiated for one connection."""

    material: bytes

    def __post_init__(self) -> None:
        if len(self.material) != SECRET_LEN:
            raise ValueError(f"Session key must be {SECRET_LEN} bytes")

    def __repr__(self) -> str:
        return "SessionKey(<redacted>)"


class Codec(ABC):
    """Authentication and payload transform for one device family."""

    requires_secret: bool = False

    @abstractmethod
    async def authenticate(self, secret: Optional[bytes], session: "Session") -> Optional[SessionKey]:
        """Unlock the connected unit.

        Returns:
            The session key, or None for families without a secret.

        Raises:
            AuthRejected: The unit refused the secret.
            TransportError: The exchange itself failed.
        """

    @abstractmethod
    async def register(self, secret: Optional[bytes], session: "Session") -> None:
        """Store ``secret`` on the unit during pairing.

        Raises:
            PairingRejected: The unit refused to store the secret.
        """

    def encrypt_outbound(self, key: SessionKey, plaintext: bytes) -> bytes:
        return bytes(plaintext)

    def decrypt_inbound(self, key: SessionKey, ciphertext: bytes) -> bytes:
        return bytes(ciphertext)


class OpenCodec(Codec):
    """Codec for families that accept sessions without a secret."""

    requires_secret = False

    async def authenticate(self, secret: Optional[bytes], session: "Session") -> Optional[SessionKey]:
        return None

    async def register(self, secret: Optional[bytes], session: "Session") -> None:
        return None


# Unlock characteristic opcodes and their acknowledgements.
OP_UNLOCK = 0x01
OP_PROGRAM_MODE = 0x02
OP_STORE_KEY = 0x00
ACK_UNLOCK = bytes([0x81, 0x00])
ACK_PROGRAM_MODE = bytes([0x82, 0x00])
ACK_STORE_KEY = bytes([0x80, 0x00])


def _check_secret(secret: Optional[bytes]) -> bytes:
    if secret is None or len(secret) != SECRET_LEN:
        raise ValueError(f"Secret must be exactly {SECRET_LEN} bytes")
    return bytes(secret)


def unlock_payload(secret: bytes) -> bytes:
    """Response written to the unlock characteristic for a given secret."""
    return bytes([OP_UNLOCK]) + _check_secret(secret)


def registration_payloads(secret: bytes) -> tuple[bytes, bytes]:
    """The two writes that put the unit in key-programming mode and store the key."""
    return (
        bytes([OP_PROGRAM_MODE]) + bytes(SECRET_LEN),
        bytes([OP_STORE_KEY]) + _check_secret(secret),
    )


class OmronUnlockCodec(Codec):
    """Unlock exchange used by Omron units with a 16-byte secret.

    The unit exposes a single unlock characteristic that is both written
    and notified. Writing ``0x01 || secret`` is answered with ``0x81 0x00``
    when the secret matches the stored one; any other status means the
    unit refused it. Application payloads after the unlock travel in the
    clear over the bonded, link-encrypted connection, so the payload
    transform is the identity keyed on the unlock secret.

    Args:
        unlock_char: UUID of the unlock characteristic.
    """

    requires_secret = True

    def __init__(self, unlock_char: str) -> None:
        self._unlock_char = unlock_char

    async def _exchange(self, session: "Session", payload: bytes) -> bytes:
        stream = await session.subscribe(self._unlock_char)
        await session.write(self._unlock_char, payload)
        answer = await session.receive(stream)
        logger.debug("Unlock characteristic answered %s", answer.hex())
        return answer[:2]

    async def authenticate(self, secret: Optional[bytes], session: "Session") -> Optional[SessionKey]:
        payload = unlock_payload(_check_secret(secret))
        answer = await self._exchange(session, payload)
        if answer != ACK_UNLOCK:
            raise AuthRejected(f"Unlock rejected (status {answer.hex() or 'empty'})")
        return SessionKey(bytes(secret))

    async def register(self, secret: Optional[bytes], session: "Session") -> None:
        program, store = registration_payloads(_check_secret(secret))

        answer = await self._exchange(session, program)
        if answer != ACK_PROGRAM_MODE:
            raise PairingRejected(
                f"Unit did not enter key programming mode (status {answer.hex() or 'empty'}); "
                "make sure it is in pairing mode"
            )

        answer = await self._exchange(session, store)
        if answer != ACK_STORE_KEY:
            raise PairingRejected(f"Unit refused to store the secret (status {answer.hex() or 'empty'})")
