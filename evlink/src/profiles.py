"""
Bundled vehicle profiles -- verified descriptor tables.

Byte indices are payload indices as produced by the decoder: for a
``22xxxx`` request the positive response is ``62 xx xx <data...>`` so the
first data byte is index 3; for a ``01xx`` request it is ``41 xx <data>``
and data starts at index 2.

XPENG G6 ECU headers:
    - Segment A, ``704`` -> ``784``: BMS (battery management), ``2211xx``.
    - Segment B, ``7E0`` -> ``7E8``: VCU (vehicle control), ``2201xx``.

CHANGELOG:
- 2026-10-18: Add generic OBD-II profile
- 2026-10-17: Initial creation with XPENG G6 table

TODO:
- None
"""

from __future__ import annotations

from evlink.src.catalog import ParameterDescriptor, SegmentDef, VehicleProfile
from evlink.src.decoder import ByteValue, MultiFrameArray, Uint16, Uint32
from evlink.src.models import BusSegment, ParameterRole, Priority

# ---------------------------------------------------------------------------
# XPENG G6
# ---------------------------------------------------------------------------

_G6_BMS: list[ParameterDescriptor] = [
    ParameterDescriptor(
        name="SOC",
        request="221109",
        segment=BusSegment.A,
        formula=Uint16(index=3, scale=0.1),
        unit="%",
        priority=Priority.HIGH,
        role=ParameterRole.STATE_OF_CHARGE,
        valid_range=(0, 100),
        description="State of charge",
    ),
    ParameterDescriptor(
        name="SOH",
        request="22110A",
        segment=BusSegment.A,
        formula=Uint16(index=3, scale=0.1),
        unit="%",
        priority=Priority.LOW,
        role=ParameterRole.STATE_OF_HEALTH,
        valid_range=(0, 100),
        description="State of health",
    ),
    ParameterDescriptor(
        name="HV_V",
        request="221101",
        segment=BusSegment.A,
        formula=Uint16(index=3, scale=0.1),
        unit="V",
        priority=Priority.HIGH,
        role=ParameterRole.BATTERY_VOLTAGE,
        valid_range=(0, 1000),
        description="HV battery voltage",
    ),
    ParameterDescriptor(
        name="HV_A",
        request="221103",
        segment=BusSegment.A,
        # Unsigned magnitude with fixed offset; negative means inflow.
        formula=Uint16(index=3, scale=0.5, offset=-1600),
        unit="A",
        priority=Priority.HIGH,
        role=ParameterRole.BATTERY_CURRENT,
        description="HV battery current",
    ),
    ParameterDescriptor(
        name="HV_C_V_MAX",
        request="221105",
        segment=BusSegment.A,
        formula=Uint16(index=3, scale=0.001),
        unit="V",
        priority=Priority.LOW,
        valid_range=(2.0, 5.0),
        description="Highest cell voltage",
    ),
    ParameterDescriptor(
        name="HV_C_V_MIN",
        request="221106",
        segment=BusSegment.A,
        formula=Uint16(index=3, scale=0.001),
        unit="V",
        priority=Priority.LOW,
        valid_range=(2.0, 5.0),
        description="Lowest cell voltage",
    ),
    ParameterDescriptor(
        name="HV_T_MAX",
        request="221107",
        segment=BusSegment.A,
        formula=ByteValue(index=3, offset=-40),
        unit="°C",
        priority=Priority.HIGH,
        role=ParameterRole.BATTERY_TEMPERATURE,
        description="Highest pack temperature",
    ),
    ParameterDescriptor(
        name="HV_T_MIN",
        request="221108",
        segment=BusSegment.A,
        formula=ByteValue(index=3, offset=-40),
        unit="°C",
        priority=Priority.LOW,
        description="Lowest pack temperature",
    ),
    ParameterDescriptor(
        name="CUMULATIVE_CHARGE",
        request="221120",
        segment=BusSegment.A,
        formula=Uint32(index=3),
        unit="Ah",
        priority=Priority.LOW,
        role=ParameterRole.CUMULATIVE_CHARGE,
        description="Lifetime charge counter (does not reset reliably)",
    ),
    ParameterDescriptor(
        name="CUMULATIVE_DISCHARGE",
        request="221121",
        segment=BusSegment.A,
        formula=Uint32(index=3),
        unit="Ah",
        priority=Priority.LOW,
        role=ParameterRole.CUMULATIVE_DISCHARGE,
        description="Lifetime discharge counter",
    ),
    ParameterDescriptor(
        name="CELL_V_AVG",
        request="221122",
        segment=BusSegment.A,
        formula=MultiFrameArray(start=3, scale=0.02, offset=2.0, valid_range=(2.5, 4.5)),
        unit="V",
        priority=Priority.LOW,
        role=ParameterRole.CELL_VOLTAGES,
        description="Per-cell voltages (mean reported)",
    ),
    ParameterDescriptor(
        name="CELL_T_AVG",
        request="221123",
        segment=BusSegment.A,
        formula=MultiFrameArray(start=3, offset=-40, valid_range=(-40, 80)),
        unit="°C",
        priority=Priority.LOW,
        role=ParameterRole.CELL_TEMPERATURES,
        description="Per-sensor cell temperatures (mean reported)",
    ),
    ParameterDescriptor(
        name="BMS_CHG_STATUS",
        request="22112D",
        segment=BusSegment.A,
        formula=ByteValue(index=3),
        priority=Priority.HIGH,
        role=ParameterRole.CHARGE_STATUS,
        description="BMS charge status code",
    ),
]

_G6_VCU: list[ParameterDescriptor] = [
    ParameterDescriptor(
        name="SPEED",
        request="220104",
        segment=BusSegment.B,
        formula=Uint16(index=3, scale=0.01),
        unit="km/h",
        priority=Priority.HIGH,
        role=ParameterRole.SPEED,
        valid_range=(0, 300),
        description="Vehicle speed",
    ),
    ParameterDescriptor(
        name="ODOMETER",
        request="220101",
        segment=BusSegment.B,
        formula=Uint16(index=4),
        unit="km",
        priority=Priority.LOW,
        role=ParameterRole.ODOMETER,
        description="Odometer",
    ),
    ParameterDescriptor(
        name="AUX_V",
        request="220102",
        segment=BusSegment.B,
        formula=ByteValue(index=3, scale=0.1),
        unit="V",
        priority=Priority.HIGH,
        description="12V auxiliary battery voltage",
    ),
]

XPENG_G6 = VehicleProfile(
    name="XPENG G6",
    segments={
        BusSegment.A: SegmentDef(request_header="704", response_header="784"),
        BusSegment.B: SegmentDef(request_header="7E0", response_header="7E8"),
    },
    init_commands=("ATSP6", "ATM0", "ATAT1"),
    parameters=tuple(_G6_BMS + _G6_VCU),
)

# ---------------------------------------------------------------------------
# Generic OBD-II (mode 01, engine ECU only)
# ---------------------------------------------------------------------------

GENERIC_OBD2 = VehicleProfile(
    name="Generic OBD-II",
    segments={BusSegment.A: SegmentDef(request_header="7E0")},
    init_commands=("ATSP6", "ATAT1"),
    parameters=(
        ParameterDescriptor(
            name="SPEED",
            request="010D",
            formula=ByteValue(index=2),
            unit="km/h",
            role=ParameterRole.SPEED,
        ),
        ParameterDescriptor(
            name="SOC",
            request="015B",
            formula=ByteValue(index=2, scale=100 / 255),
            unit="%",
            role=ParameterRole.STATE_OF_CHARGE,
            valid_range=(0, 100),
        ),
        ParameterDescriptor(
            name="MODULE_V",
            request="0142",
            formula=Uint16(index=2, scale=0.001),
            unit="V",
            priority=Priority.LOW,
        ),
        ParameterDescriptor(
            name="ODOMETER",
            request="01A6",
            formula=Uint32(index=2, scale=0.1),
            unit="km",
            priority=Priority.LOW,
            role=ParameterRole.ODOMETER,
        ),
    ),
)

# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

BUNDLED_PROFILES: dict[str, VehicleProfile] = {
    p.name: p for p in (XPENG_G6, GENERIC_OBD2)
}
"""Bundled profiles keyed by name."""
