"""
Shared test fixtures for the telemetry core tests.

Provides:
- An autouse fixture that clears every EngineSettings env var and moves
  into tmp_path so no stray .env file is picked up.
- ``FakeAdapter``: an in-memory adapter transport that answers AT commands
  and parameter requests the way an ELM327 with headers on does, keyed by
  the currently selected request header.
- A small two-segment test profile and helpers to build ISO-TP replies.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest
from evlink.src.catalog import (
    ParameterCatalog,
    ParameterDescriptor,
    SegmentDef,
    VehicleProfile,
    load_profile,
    response_header_for,
)
from evlink.src.decoder import ByteValue, Uint16
from evlink.src.errors import LinkDisconnected
from evlink.src.models import BusSegment, ParameterRole, Priority

# All EngineSettings environment variable names, used for cleanup.
_ALL_ENV_VARS = (
    "ADAPTER_ADDRESS",
    "ADAPTER_BAUDRATE",
    "RFCOMM_CHANNEL",
    "VEHICLE_PROFILE",
    "PROFILE_PATH",
    "POLL_INTERVAL_S",
    "LOW_PRIORITY_INTERVAL_S",
    "INTER_COMMAND_DELAY_MS",
    "COMMAND_TIMEOUT_S",
    "IDLE_TIMEOUT_S",
    "RESET_TIMEOUT_S",
    "RECONNECT_BASE_DELAY_S",
    "RECONNECT_MAX_DELAY_S",
    "CHARGE_CURRENT_DEADBAND_A",
    "STATIONARY_SPEED_KMH",
    "DC_POWER_THRESHOLD_KW",
    "CLASSIFICATION_MIN_POWER_KW",
    "START_CONFIRM_SAMPLES",
    "STOP_CONFIRM_SAMPLES",
    "MIN_SESSION_ENERGY_KWH",
    "MIN_SESSION_SOC_GAIN_PCT",
    "MIN_SESSION_DURATION_S",
    "STATE_DIR",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all engine env vars and isolate from .env files before each test."""
    for var in _ALL_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


# ---------------------------------------------------------------------------
# Reply builders
# ---------------------------------------------------------------------------


def isotp_lines(header: str, payload: bytes) -> str:
    """Render *payload* as the adapter prints it with headers on, spaces off.

    Payloads up to 7 bytes become one single frame; longer payloads become
    a first frame followed by consecutive frames.
    """
    if len(payload) <= 7:
        return f"{header}{len(payload):02X}{payload.hex().upper()}"
    lines = [f"{header}1{len(payload) >> 8:X}{len(payload) & 0xFF:02X}{payload[:6].hex().upper()}"]
    rest = payload[6:]
    seq = 1
    while rest:
        lines.append(f"{header}2{seq:X}{rest[:7].hex().upper()}")
        rest = rest[7:]
        seq = (seq + 1) & 0x0F
    return "\n".join(lines)


def did_payload(request: str, data: bytes) -> bytes:
    """Positive response payload for a request: service + 0x40, echo, data."""
    req = bytes.fromhex(request)
    return bytes([req[0] + 0x40]) + req[1:] + data


# ---------------------------------------------------------------------------
# Fake adapter transport
# ---------------------------------------------------------------------------

Reply = bytes | str | None | Callable[[], "bytes | str | None"]


class FakeAdapter:
    """In-memory ELM327 stand-in implementing the Transport protocol.

    Attributes:
        pids: Request code -> reply.  ``bytes`` is a positive response
            *data* section (service and identifier echo are added), ``str``
            is sent verbatim (``"NO DATA"``, ``"7F2231"`` ...), ``None``
            stays silent so the command times out.  A callable is invoked
            per request and returns one of those.
        at_replies: AT command -> reply text override.
        commands: Every command written, in order.
        dead: When set, every command stays unanswered.
        die_after: Go dead after this many commands.
        open_failures: Number of upcoming ``open`` calls that fail.
    """

    description = "fake-adapter"

    def __init__(
        self,
        pids: dict[str, Reply] | None = None,
        *,
        at_replies: dict[str, str] | None = None,
        die_after: int | None = None,
    ) -> None:
        self.pids: dict[str, Reply] = dict(pids or {})
        self.at_replies: dict[str, str] = {"ATZ": "ELM327 v1.5", "ATDPN": "A6"}
        self.at_replies.update(at_replies or {})
        self.commands: list[str] = []
        self.dead = False
        self.die_after = die_after
        self.open_failures = 0
        self.opened = 0
        self.closed = 0
        self.header = "7E0"
        self._pending = b""

    async def open(self) -> None:
        if self.open_failures > 0:
            self.open_failures -= 1
            raise LinkDisconnected("adapter unreachable")
        self.opened += 1

    async def write(self, data: bytes) -> None:
        command = data.decode("ascii").strip()
        self.commands.append(command)
        if self.die_after is not None and len(self.commands) > self.die_after:
            self.dead = True
        if self.dead:
            self._pending = b""
            return
        reply = self._reply(command)
        self._pending = b"" if reply is None else (reply + "\r\r>").encode("ascii")

    async def read(self, timeout: float) -> bytes:
        if self._pending:
            chunk, self._pending = self._pending, b""
            return chunk
        await asyncio.sleep(timeout)
        return b""

    async def drain(self) -> None:
        self._pending = b""

    async def close(self) -> None:
        self.closed += 1

    def _reply(self, command: str) -> str | None:
        if command.startswith("AT"):
            if command.startswith("ATSH"):
                self.header = command[4:]
            return self.at_replies.get(command, "OK")
        reply = self.pids.get(command, "NO DATA")
        if callable(reply):
            reply = reply()
        if reply is None:
            return None
        if isinstance(reply, bytes):
            return isotp_lines(response_header_for(self.header), did_payload(command, reply))
        return reply

    def since_last_reset(self) -> list[str]:
        """Commands written after the most recent ``ATZ``."""
        idx = len(self.commands) - 1 - self.commands[::-1].index("ATZ")
        return self.commands[idx:]


# ---------------------------------------------------------------------------
# Test profile
# ---------------------------------------------------------------------------


def make_test_profile(**overrides: object) -> VehicleProfile:
    """Two-segment profile: four BMS parameters on A, speed on B."""
    fields: dict[str, object] = {
        "name": "Test EV",
        "segments": {
            BusSegment.A: SegmentDef(request_header="704"),
            BusSegment.B: SegmentDef(request_header="7E0"),
        },
        "init_commands": ("ATSP6",),
        "parameters": (
            ParameterDescriptor(
                name="SPEED",
                request="220104",
                segment=BusSegment.B,
                formula=Uint16(index=3, scale=0.01),
                role=ParameterRole.SPEED,
                valid_range=(0, 300),
            ),
            ParameterDescriptor(
                name="SOC",
                request="221109",
                formula=Uint16(index=3, scale=0.1),
                role=ParameterRole.STATE_OF_CHARGE,
                valid_range=(0, 100),
            ),
            ParameterDescriptor(
                name="HV_V",
                request="221101",
                formula=Uint16(index=3, scale=0.1),
                role=ParameterRole.BATTERY_VOLTAGE,
            ),
            ParameterDescriptor(
                name="HV_A",
                request="221103",
                formula=Uint16(index=3, scale=0.5, offset=-1600),
                role=ParameterRole.BATTERY_CURRENT,
            ),
            ParameterDescriptor(
                name="HV_T_MIN",
                request="221108",
                formula=ByteValue(index=3, offset=-40),
                priority=Priority.LOW,
            ),
        ),
    }
    fields.update(overrides)
    return VehicleProfile(**fields)


def healthy_pids() -> dict[str, Reply]:
    """Plausible parked-car replies for the test profile."""
    return {
        "220104": (0).to_bytes(2, "big"),  # 0 km/h
        "221109": (800).to_bytes(2, "big"),  # 80.0 %
        "221101": (3750).to_bytes(2, "big"),  # 375.0 V
        "221103": (3200).to_bytes(2, "big"),  # 0 A
        "221108": bytes([65]),  # 25 degC
    }


@pytest.fixture()
def test_profile() -> VehicleProfile:
    return make_test_profile()


@pytest.fixture()
def test_catalog(test_profile: VehicleProfile) -> ParameterCatalog:
    return load_profile(test_profile)


@pytest.fixture()
def adapter() -> FakeAdapter:
    return FakeAdapter(healthy_pids())


class StepClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 18, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)
