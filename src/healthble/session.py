"""Lifecycle state machine for a single BLE interaction with one unit.

A :class:`Session` is created for one connect attempt, driven by exactly one
driver invocation, and always finalized: ``async with Session(...)``
guarantees that the transport passes through ``DISCONNECTING`` and is
released on every exit path, including exceptions and task cancellation.

State transitions::

    DISCONNECTED -> CONNECTING -> CONNECTED -> AUTHENTICATING -> AUTHENTICATED
    CONNECTED -> AUTHENTICATED                  (family without a secret)
    AUTHENTICATED <-> TRANSFERRING
    any non-terminal state -> ERROR
    any state -> DISCONNECTING -> DISCONNECTED  (terminal)
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Iterable, Optional

from .config import BluetoothSettings
from .crypto import Codec, SessionKey
from .errors import DiscoveryFailed, HealthBleError, SessionStateError
from .transport import NotificationStream, Transport

logger = logging.getLogger(__name__)


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    TRANSFERRING = "transferring"
    DISCONNECTING = "disconnecting"
    ERROR = "error"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.DISCONNECTED: frozenset({SessionState.CONNECTING, SessionState.DISCONNECTING}),
    SessionState.CONNECTING: frozenset({SessionState.CONNECTED, SessionState.ERROR, SessionState.DISCONNECTING}),
    SessionState.CONNECTED: frozenset(
        {SessionState.AUTHENTICATING, SessionState.AUTHENTICATED, SessionState.ERROR, SessionState.DISCONNECTING}
    ),
    SessionState.AUTHENTICATING: frozenset(
        {SessionState.AUTHENTICATED, SessionState.ERROR, SessionState.DISCONNECTING}
    ),
    SessionState.AUTHENTICATED: frozenset(
        {SessionState.TRANSFERRING, SessionState.ERROR, SessionState.DISCONNECTING}
    ),
    SessionState.TRANSFERRING: frozenset(
        {SessionState.AUTHENTICATED, SessionState.ERROR, SessionState.DISCONNECTING}
    ),
    SessionState.ERROR: frozenset({SessionState.DISCONNECTING}),
    SessionState.DISCONNECTING: frozenset({SessionState.DISCONNECTED}),
}


class Session:
    """One connect attempt to one unit.

    Args:
        transport: Fresh transport owned by this session.
        device_id: Used as log prefix.
        address: BLE address to connect to.
        settings: Timeouts for each suspension point.

    Attributes:
        history: Every state entered, in order, starting with DISCONNECTED.
    """

    def __init__(
        self,
        transport: Transport,
        device_id: str,
        address: str,
        settings: BluetoothSettings,
    ) -> None:
        self._transport = transport
        self._device_id = device_id
        self._address = address
        self._settings = settings
        self._state = SessionState.DISCONNECTED
        self._terminal = False
        self._codec: Optional[Codec] = None
        self._key: Optional[SessionKey] = None
        self.history: list[SessionState] = [SessionState.DISCONNECTED]

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def finalized(self) -> bool:
        return self._terminal

    @property
    def key(self) -> Optional[SessionKey]:
        return self._key

    async def __aenter__(self) -> "Session":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc is not None and not isinstance(exc, HealthBleError):
            logger.debug("%s: session aborted by %s", self._device_id, type(exc).__name__)
        await self.finalize()

    def _transition(self, target: SessionState) -> None:
        if self._terminal:
            raise SessionStateError(f"Session is finalized; cannot enter {target.value}")
        if target not in _TRANSITIONS[self._state]:
            raise SessionStateError(f"Illegal transition {self._state.value} -> {target.value}")
        logger.debug("%s: session %s -> %s", self._device_id, self._state.value, target.value)
        self._state = target
        self.history.append(target)

    def _require(self, *states: SessionState) -> None:
        if self._terminal or self._state not in states:
            raise SessionStateError(
                f"Operation not allowed in state {self._state.value}"
                + (" (finalized)" if self._terminal else "")
            )

    def _fail(self) -> None:
        if not self._terminal and self._state not in (
            SessionState.ERROR,
            SessionState.DISCONNECTING,
            SessionState.DISCONNECTED,
        ):
            self._transition(SessionState.ERROR)

    @asynccontextmanager
    async def _guard(self) -> AsyncIterator[None]:
        try:
            yield
        except BaseException:
            self._fail()
            raise

    async def connect(self, advertised_company_id: Optional[int] = None) -> None:
        """Connect, optionally waiting for the unit's advertisement first."""
        self._require(SessionState.DISCONNECTED)
        self._transition(SessionState.CONNECTING)
        async with self._guard():
            if advertised_company_id is not None:
                await self._transport.wait_for_advertisement(
                    self._address, advertised_company_id, self._settings.advertisement_timeout
                )
                logger.info("%s: received advertisement, trying to connect", self._device_id)
            await self._transport.connect(self._address, self._settings.connect_timeout)
        self._transition(SessionState.CONNECTED)

    async def discover(self, required: Iterable[tuple[str, str]]) -> set[tuple[str, str]]:
        """Discover services and check that every required characteristic exists."""
        self._require(SessionState.CONNECTED)
        async with self._guard():
            found = await self._transport.discover()
            missing = {(s.lower(), c.lower()) for s, c in required} - found
            if missing:
                raise DiscoveryFailed(
                    "Missing characteristics: " + ", ".join(f"{s}/{c}" for s, c in sorted(missing))
                )
        return found

    async def read(self, char_uuid: str) -> bytes:
        self._require(SessionState.CONNECTED, SessionState.AUTHENTICATED, SessionState.TRANSFERRING)
        async with self._guard():
            return await self._transport.read(char_uuid)

    async def bond(self) -> None:
        """Create the OS-level bond. Only valid right after connecting."""
        self._require(SessionState.CONNECTED)
        async with self._guard():
            await self._transport.bond()

    async def authenticate(self, codec: Codec, secret: Optional[bytes]) -> None:
        """Run the family's unlock exchange and remember the session key."""
        self._require(SessionState.CONNECTED)
        self._codec = codec
        if not codec.requires_secret:
            self._transition(SessionState.AUTHENTICATED)
            return
        self._transition(SessionState.AUTHENTICATING)
        async with self._guard():
            self._key = await codec.authenticate(secret, self)
        self._transition(SessionState.AUTHENTICATED)

    async def register(self, codec: Codec, secret: Optional[bytes]) -> None:
        """Store a new secret on the unit; the session ends up authenticated."""
        self._require(SessionState.CONNECTED)
        self._codec = codec
        if not codec.requires_secret:
            self._transition(SessionState.AUTHENTICATED)
            return
        self._transition(SessionState.AUTHENTICATING)
        async with self._guard():
            await codec.register(secret, self)
            self._key = SessionKey(bytes(secret or b""))
        self._transition(SessionState.AUTHENTICATED)

    @asynccontextmanager
    async def transfer(self) -> AsyncIterator["Session"]:
        """Scope one read/write payload exchange (AUTHENTICATED -> TRANSFERRING)."""
        self._require(SessionState.AUTHENTICATED)
        self._transition(SessionState.TRANSFERRING)
        async with self._guard():
            yield self
        self._transition(SessionState.AUTHENTICATED)

    async def subscribe(self, char_uuid: str) -> NotificationStream:
        self._require(SessionState.CONNECTED, SessionState.AUTHENTICATING, SessionState.TRANSFERRING)
        async with self._guard():
            return await self._transport.subscribe(char_uuid)

    async def write(self, char_uuid: str, data: bytes) -> None:
        """Write a payload, encrypted with the session key when there is one."""
        self._require(SessionState.AUTHENTICATING, SessionState.TRANSFERRING)
        if self._codec is not None and self._key is not None:
            data = self._codec.encrypt_outbound(self._key, data)
        async with self._guard():
            await self._transport.write(char_uuid, data)

    async def receive(self, stream: NotificationStream) -> bytes:
        """Wait for the next notification on ``stream`` and decrypt it."""
        self._require(SessionState.AUTHENTICATING, SessionState.TRANSFERRING)
        async with self._guard():
            data = await stream.receive(self._settings.operation_timeout)
        if self._codec is not None and self._key is not None:
            data = self._codec.decrypt_inbound(self._key, data)
        return data

    async def finalize(self) -> None:
        """Release the transport. Idempotent; always ends in DISCONNECTED."""
        if self._terminal:
            return
        if self._state is not SessionState.DISCONNECTING:
            self._transition(SessionState.DISCONNECTING)
        release = asyncio.ensure_future(self._transport.disconnect())
        try:
            await asyncio.shield(release)
        except asyncio.CancelledError:
            # The link is released before the cancellation propagates.
            while not release.done():
                try:
                    await asyncio.wait({release})
                except asyncio.CancelledError:
                    continue
            raise
        finally:
            self._key = None
            self._transition(SessionState.DISCONNECTED)
            self._terminal = True
            logger.debug("%s: session finalized", self._device_id)
