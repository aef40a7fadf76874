"""
Pydantic models shared by every component of the telemetry core.

Defines the immutable artifacts handed to consumers -- the per-cycle
:class:`TelemetrySnapshot` and the finalized :class:`ChargingSession` --
plus the observable :class:`LinkState` and the derived
:class:`VehicleState`.  All models are frozen: once produced they can be
shared between concurrent consumers without copying.

CHANGELOG:
- 2026-10-18: Add VehicleState produced by the normalizer
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, computed_field

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class BusSegment(StrEnum):
    """One of the two ECU address spaces polled on the diagnostic bus."""

    A = "A"
    B = "B"


class Priority(StrEnum):
    """Polling tier: high is read every cycle, low on a longer interval."""

    HIGH = "high"
    LOW = "low"


class ParameterRole(StrEnum):
    """Vehicle quantity a parameter feeds in :class:`VehicleState`."""

    SPEED = "speed"
    STATE_OF_CHARGE = "state_of_charge"
    STATE_OF_HEALTH = "state_of_health"
    BATTERY_VOLTAGE = "battery_voltage"
    BATTERY_CURRENT = "battery_current"
    BATTERY_TEMPERATURE = "battery_temperature"
    ODOMETER = "odometer"
    CUMULATIVE_CHARGE = "cumulative_charge"
    CUMULATIVE_DISCHARGE = "cumulative_discharge"
    CELL_VOLTAGES = "cell_voltages"
    CELL_TEMPERATURES = "cell_temperatures"
    CHARGE_STATUS = "charge_status"
    CUSTOM = "custom"


class ReadingStatus(StrEnum):
    """Outcome of the most recent read of a parameter."""

    OK = "ok"
    NOT_READ = "not_read"
    NO_RESPONSE = "no_response"
    UNSUPPORTED = "unsupported"
    DECODE_ERROR = "decode_error"
    OUT_OF_RANGE = "out_of_range"
    TIMEOUT = "timeout"


class LinkPhase(StrEnum):
    """Lifecycle phase of the adapter connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    INITIALIZING = "initializing"
    ACTIVE = "active"
    RECONNECTING = "reconnecting"


class ChargingType(StrEnum):
    """Classification of a charging session."""

    UNKNOWN = "unknown"
    AC = "ac"
    DC = "dc"


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


class ParameterReading(BaseModel):
    """One parameter entry inside a :class:`TelemetrySnapshot`.

    Attributes:
        name: Parameter name from the catalog.
        role: Vehicle quantity this parameter maps to.
        priority: Polling tier of the parameter.
        unit: Engineering unit string.
        status: Outcome of the read that produced this entry.
        value: Decoded scalar value; ``None`` unless ``status`` is ``ok``.
        values: Element list for multi-frame array parameters.
        read_at: Cycle timestamp of the read that produced this entry.
            For cached low-priority entries this is the timestamp of the
            cycle that actually read it, not the current cycle.
        cycle: Cycle number of that read.
        detail: Failure description for invalid entries.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    role: ParameterRole = ParameterRole.CUSTOM
    priority: Priority = Priority.HIGH
    unit: str = ""
    status: ReadingStatus
    value: float | None = None
    values: tuple[float, ...] = ()
    read_at: datetime | None = None
    cycle: int | None = None
    detail: str = ""

    @property
    def valid(self) -> bool:
        """True when the entry holds a successfully decoded value."""
        return self.status is ReadingStatus.OK and self.value is not None


class TelemetrySnapshot(BaseModel):
    """Immutable result of one completed polling cycle.

    Attributes:
        cycle: Monotonically increasing cycle number (starts at 1).
        taken_at: Timestamp of the cycle; every high-priority entry read
            in this cycle carries exactly this ``read_at``.
        profile: Name of the vehicle profile that produced the snapshot.
        readings: One entry per catalog parameter, in catalog order.
    """

    model_config = ConfigDict(frozen=True)

    cycle: int
    taken_at: datetime
    profile: str
    readings: tuple[ParameterReading, ...] = ()

    def get(self, name: str) -> ParameterReading | None:
        """Return the entry for *name*, or ``None`` if not in the catalog."""
        for reading in self.readings:
            if reading.name == name:
                return reading
        return None

    def value(self, name: str) -> float | None:
        """Return the decoded value for *name* when valid, else ``None``."""
        reading = self.get(name)
        if reading is None or not reading.valid:
            return None
        return reading.value

    def by_role(self, role: ParameterRole) -> ParameterReading | None:
        """Return the first valid entry for *role*, or ``None``."""
        for reading in self.readings:
            if reading.role is role and reading.valid:
                return reading
        return None

    def is_stale(self, name: str) -> bool:
        """True when *name* was not read in this snapshot's cycle."""
        reading = self.get(name)
        if reading is None or reading.read_at is None:
            return True
        return reading.read_at < self.taken_at

    def stale_names(self) -> list[str]:
        """Names of entries carried forward from an earlier cycle."""
        return [r.name for r in self.readings if self.is_stale(r.name)]


# ---------------------------------------------------------------------------
# Link state
# ---------------------------------------------------------------------------


class LinkState(BaseModel):
    """Observable state of the adapter connection.

    Attributes:
        phase: Current lifecycle phase.
        address: Adapter address the supervisor is bound to.
        segment: Bus segment currently selected (``active`` only).
        attempt: Reconnect attempt number (``reconnecting`` only).
        next_retry_at: When the next reconnect attempt is due.
        last_exchange_at: When the adapter last completed an exchange.
    """

    model_config = ConfigDict(frozen=True)

    phase: LinkPhase = LinkPhase.DISCONNECTED
    address: str | None = None
    segment: BusSegment | None = None
    attempt: int = 0
    next_retry_at: datetime | None = None
    last_exchange_at: datetime | None = None


# ---------------------------------------------------------------------------
# Derived vehicle state
# ---------------------------------------------------------------------------


class VehicleState(BaseModel):
    """Vehicle quantities derived from one snapshot.

    Battery current follows the vehicle convention: negative values mean
    current flowing into the pack.  ``power_kw`` is ``voltage * current``
    and is therefore negative while charging.
    """

    model_config = ConfigDict(frozen=True)

    ts: datetime
    cycle: int
    speed_kmh: float | None = None
    soc_pct: float | None = None
    soh_pct: float | None = None
    battery_voltage_v: float | None = None
    battery_current_a: float | None = None
    battery_temp_c: float | None = None
    odometer_km: float | None = None
    cumulative_charge_ah: float | None = None
    cumulative_discharge_ah: float | None = None
    power_kw: float | None = None


# ---------------------------------------------------------------------------
# Charging session
# ---------------------------------------------------------------------------


class ChargingSession(BaseModel):
    """Immutable record of one charging session.

    Emitted once when a session is finalized.  The detector also hands
    out progress copies (``ended_at`` is ``None``) so consumers never see
    its mutable in-progress state.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    started_at: datetime
    ended_at: datetime | None = None
    energy_kwh: float = 0.0
    peak_power_kw: float = 0.0
    start_soc: float | None = None
    end_soc: float | None = None
    charging_type: ChargingType = ChargingType.UNKNOWN
    sample_count: int = 0
    start_odometer: float | None = None
    end_odometer: float | None = None
    start_cumulative_charge_ah: float | None = None
    end_cumulative_charge_ah: float | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def duration_s(self) -> float | None:
        """Session length in seconds, once ended."""
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def soc_gained(self) -> float | None:
        """State-of-charge gain in percentage points."""
        if self.start_soc is None or self.end_soc is None:
            return None
        return self.end_soc - self.start_soc

    @computed_field  # type: ignore[prop-decorator]
    @property
    def average_power_kw(self) -> float | None:
        """Mean charging power over the session duration."""
        duration = self.duration_s
        if not duration:
            return None
        return self.energy_kwh / (duration / 3600.0)
