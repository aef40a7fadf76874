"""
Parameter catalog -- the immutable, segment-ordered descriptor table.

A :class:`VehicleProfile` is the declarative input: bus segment
addressing, profile-specific adapter init commands and a list of
:class:`ParameterDescriptor` entries.  :func:`load_profile` validates it
and builds a :class:`ParameterCatalog`, which is what the scheduler
polls.  Loading always produces a brand new catalog; there is no merge
with a previously loaded one.

Parameters are stably sorted by bus segment so a full cycle reads every
Segment A parameter contiguously, then every Segment B parameter.  The
segment switch (``ATSH``/``ATCRA``/``ATFCSH``) is a round-trip of its own
and is only issued at segment boundaries.

CHANGELOG:
- 2026-10-18: Derive response header from request header when omitted
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator, Mapping
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from evlink.src.decoder import Formula
from evlink.src.errors import ProfileInvalid
from evlink.src.models import BusSegment, ParameterRole, Priority

logger = logging.getLogger(__name__)

_HEADER_RE = re.compile(r"^[0-9A-F]{3}$")
_REQUEST_RE = re.compile(r"^([0-9A-F]{2})+$")

_SEGMENT_ORDER: dict[BusSegment, int] = {BusSegment.A: 0, BusSegment.B: 1}


def response_header_for(request_header: str) -> str:
    """Derive the ECU response CAN id for an 11-bit request id.

    OBD-II physical addresses ``7E0``-``7EF`` answer on ``+0x08``; the
    vendor ECUs seen on this bus answer on ``+0x80`` (``704`` -> ``784``).
    """
    value = int(request_header, 16)
    if 0x7E0 <= value <= 0x7EF:
        return f"{value + 0x08:03X}"
    return f"{value + 0x80:03X}"


# ---------------------------------------------------------------------------
# Declarative profile models
# ---------------------------------------------------------------------------


class SegmentDef(BaseModel):
    """Addressing for one bus segment.

    Attributes:
        request_header: 3-hex-digit CAN id requests are sent to.
        response_header: CAN id the ECU answers on.  Derived with
            :func:`response_header_for` when omitted.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    request_header: str
    response_header: str = ""

    @field_validator("request_header", "response_header")
    @classmethod
    def header_must_be_hex(cls, v: str) -> str:
        """Normalize to upper case and require 3 hex digits."""
        v = v.strip().upper()
        if not _HEADER_RE.match(v):
            raise ValueError(f"CAN header must be 3 hex digits, got {v!r}")
        return v

    @model_validator(mode="before")
    @classmethod
    def _derive_response(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("response_header"):
            request = str(data.get("request_header", "")).strip().upper()
            if _HEADER_RE.match(request):
                data = {**data, "response_header": response_header_for(request)}
        return data

    def switch_commands(self) -> tuple[str, str, str]:
        """Commands that select this segment, sent as one unit."""
        return (
            f"ATSH{self.request_header}",
            f"ATCRA{self.response_header}",
            f"ATFCSH{self.request_header}",
        )


class ParameterDescriptor(BaseModel):
    """Definition of a single polled parameter.

    Attributes:
        name: Unique identifier used as snapshot key.
        request: Request code sent to the ECU (e.g. ``"221109"``).
        segment: Bus segment the parameter lives on.
        formula: Decode formula variant.
        unit: Engineering unit string.
        priority: Polling tier.
        role: Vehicle quantity the value feeds.
        valid_range: Optional ``(min, max)`` for the decoded value.
        interval_s: Refresh interval override for low-priority parameters.
        description: Free-text description.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    request: str
    segment: BusSegment = BusSegment.A
    formula: Formula
    unit: str = ""
    priority: Priority = Priority.HIGH
    role: ParameterRole = ParameterRole.CUSTOM
    valid_range: tuple[float, float] | None = None
    interval_s: float | None = Field(default=None, gt=0)
    description: str = ""

    @field_validator("request")
    @classmethod
    def request_must_be_hex(cls, v: str) -> str:
        """Request codes are whole hex bytes, at least service + id."""
        v = v.replace(" ", "").upper()
        if len(v) < 4 or not _REQUEST_RE.match(v):
            raise ValueError(f"request must be hex bytes (service + id), got {v!r}")
        return v

    @model_validator(mode="after")
    def _check_range(self) -> ParameterDescriptor:
        if self.valid_range is not None and self.valid_range[0] > self.valid_range[1]:
            raise ValueError(f"valid_range min > max for {self.name}")
        return self


class VehicleProfile(BaseModel):
    """Declarative vehicle profile.

    Attributes:
        name: Profile name (e.g. ``"XPENG G6"``).
        segments: Addressing per bus segment used by the parameters.
        init_commands: Profile-specific adapter commands replayed after
            the fixed base initialization on every (re)connect.
        parameters: Descriptor table.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    segments: dict[BusSegment, SegmentDef]
    init_commands: tuple[str, ...] = ()
    parameters: tuple[ParameterDescriptor, ...]

    @field_validator("init_commands")
    @classmethod
    def init_must_be_at_commands(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        """Init is adapter configuration only."""
        cleaned = tuple(c.strip().upper() for c in v if c.strip())
        for cmd in cleaned:
            if not cmd.startswith("AT"):
                raise ValueError(f"init command must be an AT command, got {cmd!r}")
        return cleaned

    @model_validator(mode="after")
    def _check_table(self) -> VehicleProfile:
        if not self.parameters:
            raise ValueError("profile has no parameters")
        seen: set[str] = set()
        for param in self.parameters:
            if param.name in seen:
                raise ValueError(f"duplicate parameter name {param.name!r}")
            seen.add(param.name)
            if param.segment not in self.segments:
                raise ValueError(
                    f"parameter {param.name!r} uses undefined segment {param.segment}"
                )
        return self


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class ParameterCatalog:
    """Immutable, segment-ordered parameter table built from a profile.

    Args:
        profile: A validated :class:`VehicleProfile`.
    """

    def __init__(self, profile: VehicleProfile) -> None:
        self._profile = profile
        self._parameters: tuple[ParameterDescriptor, ...] = tuple(
            sorted(profile.parameters, key=lambda p: _SEGMENT_ORDER[p.segment])
        )
        self._by_name = {p.name: p for p in self._parameters}

    @property
    def profile(self) -> VehicleProfile:
        return self._profile

    @property
    def name(self) -> str:
        return self._profile.name

    @property
    def parameters(self) -> tuple[ParameterDescriptor, ...]:
        """Descriptors in read order (segment A block, then segment B)."""
        return self._parameters

    @property
    def init_commands(self) -> tuple[str, ...]:
        return self._profile.init_commands

    def segment(self, segment: BusSegment) -> SegmentDef:
        """Addressing for *segment*."""
        return self._profile.segments[segment]

    def segments_in_order(self) -> list[BusSegment]:
        """Segments used by the parameter table, in read order."""
        ordered: list[BusSegment] = []
        for param in self._parameters:
            if param.segment not in ordered:
                ordered.append(param.segment)
        return ordered

    def get(self, name: str) -> ParameterDescriptor | None:
        return self._by_name.get(name)

    def __iter__(self) -> Iterator[ParameterDescriptor]:
        return iter(self._parameters)

    def __len__(self) -> int:
        return len(self._parameters)

    def __repr__(self) -> str:
        return f"ParameterCatalog({self.name!r}, {len(self)} parameters)"


def load_profile(profile: VehicleProfile | Mapping[str, Any]) -> ParameterCatalog:
    """Validate *profile* and build a fresh :class:`ParameterCatalog`.

    Args:
        profile: A :class:`VehicleProfile` or its mapping form (e.g. parsed
            JSON).

    Returns:
        A new catalog; callers replace their previous one wholesale.

    Raises:
        ProfileInvalid: The descriptor table is malformed.
    """
    if isinstance(profile, VehicleProfile):
        validated = profile
    else:
        try:
            validated = VehicleProfile.model_validate(profile)
        except ValidationError as exc:
            raise ProfileInvalid(f"invalid vehicle profile: {exc}") from exc

    catalog = ParameterCatalog(validated)
    logger.info(
        "Loaded profile %r: %d parameters, segments %s",
        catalog.name,
        len(catalog),
        [str(s) for s in catalog.segments_in_order()],
    )
    return catalog
