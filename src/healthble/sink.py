"""Output sinks for decoded measurements.

:class:`InfluxSink` writes InfluxDB v2 line protocol over HTTP with aiohttp.
Every failure is raised as :class:`~healthble.errors.SinkError` so the
scheduler can tell a failed forward apart from a failed device read.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Mapping, Optional, Sequence

import aiohttp
from aiohttp import ClientTimeout

from .config import SinkConfig
from .errors import SinkError
from .measurement import FieldValue, Measurement

logger = logging.getLogger(__name__)


def _escape(value: str, chars: str) -> str:
    value = value.replace("\\", "\\\\")
    for ch in chars:
        value = value.replace(ch, "\\" + ch)
    return value


def _format_field(value: FieldValue) -> str:
    # bool is a subclass of int, check it first.
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return f"{value}i"
    return repr(float(value))


def encode_line(
    series: str,
    tags: Mapping[str, str],
    fields: Mapping[str, FieldValue],
    timestamp_ns: int,
) -> str:
    """Encode one point in InfluxDB line protocol (without trailing newline)."""
    if not fields:
        raise ValueError("A point needs at least one field")
    line = _escape(series, ", ")
    for key in sorted(tags):
        line += f",{_escape(key, ',= ')}={_escape(tags[key], ',= ')}"
    line += " " + ",".join(f"{_escape(k, ',= ')}={_format_field(v)}" for k, v in fields.items())
    return f"{line} {timestamp_ns}"


class OutputSink(ABC):
    """Destination for decoded measurements."""

    @abstractmethod
    async def write(
        self, series: str, measurements: Sequence[Measurement], tags: Mapping[str, str]
    ) -> None:
        """Write every measurement as one point of ``series``.

        Raises:
            SinkError: The write did not succeed.
        """

    async def close(self) -> None:
        return None


class InfluxSink(OutputSink):
    """InfluxDB v2 ``/api/v2/write`` client.

    Args:
        config: Connection descriptor.
        session: Optional externally managed aiohttp session; created lazily
            and owned by the sink otherwise.
    """

    def __init__(self, config: SinkConfig, session: Optional[aiohttp.ClientSession] = None) -> None:
        self._config = config
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=ClientTimeout(total=self._config.timeout))
        return self._session

    def encode(self, series: str, measurements: Sequence[Measurement], tags: Mapping[str, str]) -> str:
        lines = []
        for m in measurements:
            point_tags = {**m.tags(), **tags}
            lines.append(encode_line(series, point_tags, m.fields(), m.timestamp_ns))
        return "".join(line + "\n" for line in lines)

    async def write(
        self, series: str, measurements: Sequence[Measurement], tags: Mapping[str, str]
    ) -> None:
        if not measurements:
            return
        body = self.encode(series, measurements, tags)
        url = f"{self._config.url}/api/v2/write"
        params = {"org": self._config.org, "bucket": self._config.bucket, "precision": "ns"}
        headers = {
            "Authorization": f"Token {self._config.token}",
            "Content-Type": "text/plain; charset=utf-8",
            "Accept": "application/json",
        }

        try:
            async with self._get_session().post(
                url, params=params, headers=headers, data=body.encode("utf-8")
            ) as resp:
                if resp.status >= 300:
                    detail = await resp.text()
                    raise SinkError(f"DB error: HTTP {resp.status}: {detail[:200]}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SinkError(f"DB error: {type(e).__name__}: {e}") from e

        logger.debug("Wrote %d points to %s", len(measurements), series)

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
