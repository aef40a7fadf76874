"""
Pure normalizer that maps a TelemetrySnapshot onto a VehicleState.

Each snapshot entry carries the :class:`ParameterRole` of its descriptor;
the normalizer picks the first valid entry per role and derives the
instantaneous battery power.  Profiles are free to name parameters as
they like, consumers only ever see the role-based fields.

Battery current keeps the vehicle convention (negative = into the pack),
so ``power_kw`` is negative while charging.

This is a pure function: no side effects, no I/O, no clock.  The
timestamp and cycle are taken from the snapshot.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

from evlink.src.models import ParameterRole, TelemetrySnapshot, VehicleState

# ---------------------------------------------------------------------------
# Mapping from VehicleState field names to parameter roles.
# ---------------------------------------------------------------------------

_FIELD_MAP: dict[str, ParameterRole] = {
    "speed_kmh": ParameterRole.SPEED,
    "soc_pct": ParameterRole.STATE_OF_CHARGE,
    "soh_pct": ParameterRole.STATE_OF_HEALTH,
    "battery_voltage_v": ParameterRole.BATTERY_VOLTAGE,
    "battery_current_a": ParameterRole.BATTERY_CURRENT,
    "battery_temp_c": ParameterRole.BATTERY_TEMPERATURE,
    "odometer_km": ParameterRole.ODOMETER,
    "cumulative_charge_ah": ParameterRole.CUMULATIVE_CHARGE,
    "cumulative_discharge_ah": ParameterRole.CUMULATIVE_DISCHARGE,
}
"""Maps VehicleState field name -> role of the snapshot entry feeding it."""


def power_kw(voltage_v: float | None, current_a: float | None) -> float | None:
    """Battery power in kW, or ``None`` when either input is missing."""
    if voltage_v is None or current_a is None:
        return None
    return voltage_v * current_a / 1000.0


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def vehicle_state(snapshot: TelemetrySnapshot) -> VehicleState:
    """Derive a :class:`VehicleState` from *snapshot*.

    Fields whose role has no valid entry in the snapshot are ``None``.

    Args:
        snapshot: A completed polling snapshot.

    Returns:
        The derived vehicle state.
    """
    fields: dict[str, float | None] = {}
    for field_name, role in _FIELD_MAP.items():
        reading = snapshot.by_role(role)
        fields[field_name] = reading.value if reading is not None else None

    fields["power_kw"] = power_kw(fields["battery_voltage_v"], fields["battery_current_a"])

    return VehicleState(ts=snapshot.taken_at, cycle=snapshot.cycle, **fields)
