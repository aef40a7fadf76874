"""
Unit tests for the link driver.

Tests verify:
- Commands are written with a CR terminator after stale input is drained.
- Replies are collected until the '>' prompt, across several chunks.
- A partial reply without prompt completes after the idle timeout.
- No reply at all raises LinkTimeout; a closed link raises LinkDisconnected.
- Only one command is ever in flight.
- Echo, blank lines and the prompt are stripped from the reply.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest
from evlink.src.errors import LinkDisconnected, LinkTimeout
from evlink.src.link import LinkDriver, clean_response

# ---------------------------------------------------------------------------
# Helpers: a transport that replays scripted chunks
# ---------------------------------------------------------------------------


class ScriptedTransport:
    """Transport whose reads return queued chunks, then time out."""

    description = "scripted"

    def __init__(self, chunks: list[bytes] | None = None) -> None:
        self.chunks = list(chunks or [])
        self.written: list[bytes] = []
        self.drains = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def open(self) -> None:
        pass

    async def write(self, data: bytes) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.written.append(data)

    async def read(self, timeout: float) -> bytes:
        if self.chunks:
            chunk = self.chunks.pop(0)
            if b">" in chunk:
                self.in_flight -= 1
            await asyncio.sleep(0)
            return chunk
        await asyncio.sleep(timeout)
        return b""

    async def drain(self) -> None:
        self.drains += 1

    async def close(self) -> None:
        self.closed = True


async def _open_driver(transport: ScriptedTransport, **kwargs: object) -> LinkDriver:
    driver = LinkDriver(transport, command_timeout_s=0.1, idle_timeout_s=0.02, **kwargs)
    await driver.open()
    return driver


# ===========================================================================
# send()
# ===========================================================================


class TestSend:
    """One request/response exchange."""

    @pytest.mark.asyncio
    async def test_writes_command_with_cr_after_drain(self) -> None:
        """The command is terminated by CR and stale input drained first."""
        transport = ScriptedTransport([b"OK\r\r>"])
        driver = await _open_driver(transport)

        reply = await driver.send("ATE0")

        assert transport.written == [b"ATE0\r"]
        assert transport.drains == 1
        assert reply == "OK"

    @pytest.mark.asyncio
    async def test_collects_chunks_until_prompt(self) -> None:
        """A reply split across reads is joined."""
        transport = ScriptedTransport([b"7E8 03 41", b" 0D 2A\r", b"\r>"])
        driver = await _open_driver(transport)

        reply = await driver.send("010D")

        assert reply == "7E8 03 41 0D 2A"

    @pytest.mark.asyncio
    async def test_partial_reply_completes_on_idle(self) -> None:
        """Bytes without a prompt are returned after the idle period."""
        transport = ScriptedTransport([b"7E803410D2A\r"])
        driver = await _open_driver(transport)

        reply = await driver.send("010D")

        assert reply == "7E803410D2A"

    @pytest.mark.asyncio
    async def test_no_reply_raises_timeout(self) -> None:
        """Silence until the deadline is a link timeout."""
        driver = await _open_driver(ScriptedTransport())

        with pytest.raises(LinkTimeout):
            await driver.send("221109")

    @pytest.mark.asyncio
    async def test_timeout_override(self) -> None:
        """A per-command deadline overrides the default."""
        driver = await _open_driver(ScriptedTransport())
        loop = asyncio.get_running_loop()
        started = loop.time()

        with pytest.raises(LinkTimeout):
            await driver.send("ATZ", timeout_s=0.01)

        assert loop.time() - started < 0.1

    @pytest.mark.asyncio
    async def test_send_on_closed_link_raises(self) -> None:
        """Sending before open is a disconnected link."""
        driver = LinkDriver(ScriptedTransport([b"OK>"]))

        with pytest.raises(LinkDisconnected):
            await driver.send("ATI")

    @pytest.mark.asyncio
    async def test_records_last_exchange_time(self) -> None:
        """Every completed exchange stamps the injected clock."""
        transport = ScriptedTransport([b"OK\r>"])
        stamp = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)
        driver = await _open_driver(transport, clock=lambda: stamp)

        await driver.send("ATL0")

        assert driver.last_exchange_at == stamp

    @pytest.mark.asyncio
    async def test_concurrent_sends_are_serialized(self) -> None:
        """A second command waits until the first one resolves."""
        transport = ScriptedTransport([b"OK\r>", b"OK\r>"])
        driver = await _open_driver(transport)

        await asyncio.gather(driver.send("ATE0"), driver.send("ATL0"))

        assert transport.max_in_flight == 1
        assert transport.written == [b"ATE0\r", b"ATL0\r"]

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self) -> None:
        """Closing twice is safe and marks the driver closed."""
        transport = ScriptedTransport()
        driver = await _open_driver(transport)

        await driver.close()
        await driver.close()

        assert not driver.is_open
        assert transport.closed


# ===========================================================================
# clean_response()
# ===========================================================================


class TestCleanResponse:
    """Raw reply text cleanup."""

    def test_strips_echo_prompt_and_blank_lines(self) -> None:
        """Echo (with echo still on) and prompt are removed."""
        raw = b"010D\r7E803410D2A\r\r>"

        assert clean_response(raw, "010D") == "7E803410D2A"

    def test_multi_line_reply_joined_with_newline(self) -> None:
        """Multi-frame replies keep one frame per line."""
        raw = b"78410100102030405\r78421060708090A0B\r\r>"

        assert clean_response(raw, "221122") == "78410100102030405\n78421060708090A0B"
