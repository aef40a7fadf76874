"""
Link driver -- one request/response exchange at a time with the adapter.

``send(command)`` writes the command terminated by ``\\r`` and collects
the reply until the ``>`` prompt.  When bytes have arrived but the
prompt has not, the reply is considered complete after a short idle
period (``idle_timeout_s``); when nothing arrives before the command
deadline, :class:`LinkTimeout` is raised.  The driver never retries: retry
policy belongs to the polling scheduler and the reconnection supervisor.

The adapter link is half duplex, so an :class:`asyncio.Lock` guarantees
a second command is never written before the first resolves.  Stale
input is discarded before every command so a late reply to a timed-out
command cannot be mistaken for the next one.

CHANGELOG:
- 2026-10-18: Timestamp every completed exchange for liveness tracking
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime

from evlink.src.errors import LinkDisconnected, LinkTimeout
from evlink.src.transports import Transport

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PROMPT: bytes = b">"
"""Adapter ready prompt terminating every response."""

TERMINATOR: bytes = b"\r"
"""Command terminator."""

DEFAULT_COMMAND_TIMEOUT_S: float = 2.0
DEFAULT_IDLE_TIMEOUT_S: float = 0.3


class LinkDriver:
    """Serialized command/response driver over a :class:`Transport`.

    Args:
        transport: Byte transport to the adapter (not yet opened).
        command_timeout_s: Default deadline per command.
        idle_timeout_s: Quiet period that completes a prompt-less reply.
        clock: Wall clock used for exchange timestamps.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        command_timeout_s: float = DEFAULT_COMMAND_TIMEOUT_S,
        idle_timeout_s: float = DEFAULT_IDLE_TIMEOUT_S,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._transport = transport
        self._command_timeout_s = command_timeout_s
        self._idle_timeout_s = idle_timeout_s
        self._clock = clock
        self._lock = asyncio.Lock()
        self._open = False
        self.last_exchange_at: datetime | None = None

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        """Open the underlying transport.

        Raises:
            LinkDisconnected: The transport could not be opened.
        """
        await self._transport.open()
        self._open = True
        logger.info("Link opened (%s)", self._transport.description)

    async def close(self) -> None:
        """Close the underlying transport.  Safe to call twice."""
        was_open = self._open
        self._open = False
        await self._transport.close()
        if was_open:
            logger.info("Link closed (%s)", self._transport.description)

    async def send(self, command: str, *, timeout_s: float | None = None) -> str:
        """Send one command and return the cleaned response text.

        Args:
            command: Command without terminator (e.g. ``"ATE0"``,
                ``"221109"``).
            timeout_s: Deadline override (``ATZ`` needs longer).

        Returns:
            Response lines joined with ``\\n``; echo, blank lines and the
            prompt removed.

        Raises:
            LinkTimeout: Nothing was received before the deadline.
            LinkDisconnected: The link is closed or the transport failed.
        """
        if not self._open:
            raise LinkDisconnected("link is not open")
        timeout = self._command_timeout_s if timeout_s is None else timeout_s

        async with self._lock:
            await self._transport.drain()
            logger.debug("TX %s", command)
            await self._transport.write(command.encode("ascii") + TERMINATOR)
            raw = await self._read_response(command, timeout)
            self.last_exchange_at = self._clock()

        text = clean_response(raw, command)
        logger.debug("RX %s", text.replace("\n", " | "))
        return text

    async def _read_response(self, command: str, timeout: float) -> bytes:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        buf = bytearray()

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            wait = min(remaining, self._idle_timeout_s) if buf else remaining
            chunk = await self._transport.read(wait)
            if not chunk:
                if buf:
                    logger.debug("Idle timeout after partial reply to %s", command)
                    break
                continue
            buf.extend(chunk)
            if PROMPT in chunk:
                break

        if not buf:
            raise LinkTimeout(f"no response to {command!r} within {timeout:.1f}s")
        return bytes(buf)


def clean_response(raw: bytes, command: str) -> str:
    """Strip prompt, echo and blank lines from a raw adapter reply."""
    text = raw.decode("ascii", errors="ignore").replace(">", "")
    echo = command.replace(" ", "").upper()
    lines: list[str] = []
    for line in text.replace("\r", "\n").split("\n"):
        line = line.strip()
        if not line:
            continue
        if line.replace(" ", "").upper() == echo:
            continue
        lines.append(line)
    return "\n".join(lines)
