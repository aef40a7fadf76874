"""
Charging session detector -- state machine plus energy integration.

Consumes every snapshot exactly once, in cycle order::

    IDLE --(N consecutive samples: inflow current AND stationary)--> CHARGING
    CHARGING --(M consecutive samples without inflow)--> IDLE

Inflow means battery current below ``-current_deadband_a`` (negative
current charges the pack).  Stationary means a *valid* speed below
``stationary_speed_kmh``; a missing speed never confirms a stop, which
keeps regenerative braking from opening sessions.  A snapshot without a
valid current is neutral: it neither confirms a start nor counts toward
a stop, and it breaks any partial run of either.

While charging, delivered energy is integrated from instantaneous power
(``max(0, -V*I)``) over the wall-clock interval since the previous
snapshot.  Vehicle cumulative counters are recorded for reference only.
Classification starts ``UNKNOWN`` and becomes ``DC`` or ``AC`` the first
time charging power reaches ``classification_min_power_kw``; it never
changes afterwards.

On close the session is discarded when it is insignificant on all three
counts (energy, SoC gain and duration); otherwise it is finalized and
returned once.  Consumers only ever receive frozen
:class:`ChargingSession` copies.

CHANGELOG:
- 2026-10-18: Treat invalid current as neutral sample
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from evlink.src.models import ChargingSession, ChargingType, TelemetrySnapshot, VehicleState
from evlink.src.normalizer import vehicle_state

if TYPE_CHECKING:
    from evlink.src.config import EngineSettings

logger = logging.getLogger(__name__)


class DetectorState(StrEnum):
    IDLE = "idle"
    CHARGING = "charging"


@dataclass(frozen=True, slots=True)
class ChargingThresholds:
    """Tunable constants of the detector.

    Attributes:
        current_deadband_a: Inflow must exceed this magnitude (A).
        stationary_speed_kmh: Speeds below this are stationary.
        dc_power_threshold_kw: Power above this classifies DC.
        classification_min_power_kw: Power needed before classifying.
        start_confirm_samples: Samples confirming a start.
        stop_confirm_samples: Samples confirming a stop.
        min_energy_kwh: Significance threshold (energy).
        min_soc_gain_pct: Significance threshold (SoC gain).
        min_duration_s: Significance threshold (duration).
    """

    current_deadband_a: float = 0.5
    stationary_speed_kmh: float = 1.0
    dc_power_threshold_kw: float = 11.0
    classification_min_power_kw: float = 1.0
    start_confirm_samples: int = 2
    stop_confirm_samples: int = 2
    min_energy_kwh: float = 0.05
    min_soc_gain_pct: float = 1.0
    min_duration_s: float = 300.0

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> ChargingThresholds:
        return cls(
            current_deadband_a=settings.charge_current_deadband_a,
            stationary_speed_kmh=settings.stationary_speed_kmh,
            dc_power_threshold_kw=settings.dc_power_threshold_kw,
            classification_min_power_kw=settings.classification_min_power_kw,
            start_confirm_samples=settings.start_confirm_samples,
            stop_confirm_samples=settings.stop_confirm_samples,
            min_energy_kwh=settings.min_session_energy_kwh,
            min_soc_gain_pct=settings.min_session_soc_gain_pct,
            min_duration_s=settings.min_session_duration_s,
        )


@dataclass(slots=True)
class _OpenSession:
    """Mutable in-progress session; never handed out."""

    id: str
    started_at: datetime
    last_ts: datetime
    energy_kwh: float = 0.0
    peak_power_kw: float = 0.0
    start_soc: float | None = None
    end_soc: float | None = None
    charging_type: ChargingType = ChargingType.UNKNOWN
    sample_count: int = 1
    start_odometer: float | None = None
    end_odometer: float | None = None
    start_cumulative_charge_ah: float | None = None
    end_cumulative_charge_ah: float | None = None
    stop_run: int = 0
    stop_run_started_at: datetime | None = None

    def freeze(self, ended_at: datetime | None) -> ChargingSession:
        return ChargingSession(
            id=self.id,
            started_at=self.started_at,
            ended_at=ended_at,
            energy_kwh=self.energy_kwh,
            peak_power_kw=self.peak_power_kw,
            start_soc=self.start_soc,
            end_soc=self.end_soc,
            charging_type=self.charging_type,
            sample_count=self.sample_count,
            start_odometer=self.start_odometer,
            end_odometer=self.end_odometer,
            start_cumulative_charge_ah=self.start_cumulative_charge_ah,
            end_cumulative_charge_ah=self.end_cumulative_charge_ah,
        )


class ChargingSessionDetector:
    """Sole owner of the (at most one) open charging session.

    Args:
        thresholds: Detector tunables.
    """

    def __init__(self, thresholds: ChargingThresholds | None = None) -> None:
        self._t = thresholds or ChargingThresholds()
        self._state = DetectorState.IDLE
        self._start_run = 0
        self._open: _OpenSession | None = None
        self._last_cycle: int | None = None

    @property
    def state(self) -> DetectorState:
        return self._state

    @property
    def active_session(self) -> ChargingSession | None:
        """Frozen progress copy of the open session (``ended_at`` unset)."""
        if self._open is None:
            return None
        return self._open.freeze(ended_at=None)

    def observe(self, snapshot: TelemetrySnapshot) -> ChargingSession | None:
        """Feed one snapshot.

        Returns:
            The finalized session when this snapshot closes a significant
            session, else ``None``.
        """
        if self._last_cycle is not None and snapshot.cycle <= self._last_cycle:
            logger.warning(
                "Ignoring out-of-order snapshot cycle %d (last %d)",
                snapshot.cycle,
                self._last_cycle,
            )
            return None
        self._last_cycle = snapshot.cycle

        vs = vehicle_state(snapshot)
        if self._open is None:
            self._observe_idle(vs)
            return None
        return self._observe_charging(self._open, vs)

    # -- Idle --------------------------------------------------------------

    def _is_inflow(self, current_a: float) -> bool:
        return current_a < -self._t.current_deadband_a

    def _is_stationary(self, speed_kmh: float | None) -> bool:
        return speed_kmh is not None and speed_kmh < self._t.stationary_speed_kmh

    def _observe_idle(self, vs: VehicleState) -> None:
        current = vs.battery_current_a
        if current is None:
            self._start_run = 0
            return
        if self._is_inflow(current) and self._is_stationary(vs.speed_kmh):
            self._start_run += 1
        else:
            self._start_run = 0
        if self._start_run >= self._t.start_confirm_samples:
            self._start_run = 0
            self._open_session(vs)

    def _open_session(self, vs: VehicleState) -> None:
        started_at = vs.ts
        self._open = _OpenSession(
            id=f"charge_{int(started_at.timestamp() * 1000)}",
            started_at=started_at,
            last_ts=started_at,
            start_soc=vs.soc_pct,
            end_soc=vs.soc_pct,
            start_odometer=vs.odometer_km,
            end_odometer=vs.odometer_km,
            start_cumulative_charge_ah=vs.cumulative_charge_ah,
            end_cumulative_charge_ah=vs.cumulative_charge_ah,
        )
        self._state = DetectorState.CHARGING
        logger.info(
            "Charging session %s opened (current=%.1f A, soc=%s)",
            self._open.id,
            vs.battery_current_a,
            vs.soc_pct,
        )

    # -- Charging ----------------------------------------------------------

    def _observe_charging(
        self, session: _OpenSession, vs: VehicleState
    ) -> ChargingSession | None:
        self._accumulate(session, vs)

        current = vs.battery_current_a
        if current is None:
            session.stop_run = 0
            session.stop_run_started_at = None
            return None

        if self._is_inflow(current):
            session.stop_run = 0
            session.stop_run_started_at = None
            return None

        session.stop_run += 1
        if session.stop_run == 1:
            session.stop_run_started_at = vs.ts
        if session.stop_run < self._t.stop_confirm_samples:
            return None
        return self._close(session)

    def _accumulate(self, session: _OpenSession, vs: VehicleState) -> None:
        elapsed_h = (vs.ts - session.last_ts).total_seconds() / 3600.0
        session.last_ts = vs.ts
        session.sample_count += 1

        if vs.soc_pct is not None:
            if session.start_soc is None:
                session.start_soc = vs.soc_pct
            session.end_soc = vs.soc_pct
        if vs.odometer_km is not None:
            if session.start_odometer is None:
                session.start_odometer = vs.odometer_km
            session.end_odometer = vs.odometer_km
        if vs.cumulative_charge_ah is not None:
            if session.start_cumulative_charge_ah is None:
                session.start_cumulative_charge_ah = vs.cumulative_charge_ah
            session.end_cumulative_charge_ah = vs.cumulative_charge_ah

        if vs.power_kw is None:
            return
        charging_kw = max(0.0, -vs.power_kw)
        if elapsed_h > 0:
            session.energy_kwh += charging_kw * elapsed_h
        session.peak_power_kw = max(session.peak_power_kw, charging_kw)

        if (
            session.charging_type is ChargingType.UNKNOWN
            and charging_kw >= self._t.classification_min_power_kw
        ):
            session.charging_type = (
                ChargingType.DC if charging_kw > self._t.dc_power_threshold_kw else ChargingType.AC
            )
            logger.info(
                "Charging session %s classified %s at %.1f kW",
                session.id,
                session.charging_type,
                charging_kw,
            )

    def _close(self, session: _OpenSession) -> ChargingSession | None:
        ended_at = session.stop_run_started_at or session.last_ts
        finalized = session.freeze(ended_at=ended_at)
        self._open = None
        self._state = DetectorState.IDLE

        if self._is_insignificant(finalized):
            logger.info(
                "Charging session %s discarded (energy=%.3f kWh, soc_gain=%s, duration=%.0fs)",
                finalized.id,
                finalized.energy_kwh,
                finalized.soc_gained,
                finalized.duration_s or 0.0,
            )
            return None

        logger.info(
            "Charging session %s closed: %s, %.3f kWh, peak %.1f kW",
            finalized.id,
            finalized.charging_type,
            finalized.energy_kwh,
            finalized.peak_power_kw,
        )
        return finalized

    def _is_insignificant(self, session: ChargingSession) -> bool:
        soc_gain = session.soc_gained or 0.0
        duration = session.duration_s or 0.0
        return (
            session.energy_kwh < self._t.min_energy_kwh
            and soc_gain < self._t.min_soc_gain_pct
            and duration < self._t.min_duration_s
        )
