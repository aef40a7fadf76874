"""
Pure byte decoder for adapter responses.

Two stages, both free of I/O, clocks and hidden state:

1. :func:`parse_response` turns the adapter's text response into one
   reassembled ISO-TP payload.  It strips the responding ECU's CAN id,
   joins multi-frame chains (first frame ``1L LL``, consecutive frames
   ``2N``), and classifies failures: ``NO DATA`` is :class:`NoResponse`,
   a rejected command or a ``7F`` negative response is
   :class:`ParameterUnsupported`, and everything malformed is
   :class:`DecodeError`.
2. :func:`decode` evaluates a formula over that payload.  Formulas are a
   closed set of tagged variants (:class:`ByteValue`, :class:`Uint16`,
   :class:`Uint32`, :class:`MultiFrameArray`) rather than free-form
   expression text.

Byte indices address the reassembled payload: index 0 is the positive
response service byte (``0x62`` for a ``22xxxx`` request), so data of a
two-byte identifier request starts at index 3.

CHANGELOG:
- 2026-10-18: Validate service/identifier echo against the request
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from evlink.src.errors import DecodeError, NoResponse, ParameterUnsupported

logger = logging.getLogger(__name__)

_HEX_RE = re.compile(r"^[0-9A-F]+$")

_NEGATIVE_RESPONSE = 0x7F
_POSITIVE_OFFSET = 0x40

# Adapter status lines that are not data and not an error.
_INFO_PREFIXES = ("SEARCHING", "BUS INIT...OK", "OK")

# Adapter error strings, checked after the status lines above.
_ADAPTER_ERRORS = (
    "CAN ERROR",
    "BUS INIT",
    "BUS BUSY",
    "BUS ERROR",
    "FB ERROR",
    "DATA ERROR",
    "BUFFER FULL",
    "UNABLE TO CONNECT",
    "STOPPED",
    "ERROR",
)

# Services whose positive response echoes the full request identifier.
_ECHOING_SERVICES = {0x01, 0x09, 0x22}


# ---------------------------------------------------------------------------
# Formula variants
# ---------------------------------------------------------------------------


class _FormulaBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    scale: float = 1.0
    offset: float = 0.0


class ByteValue(_FormulaBase):
    """Single byte: ``payload[index] * scale + offset``."""

    kind: Literal["byte"] = "byte"
    index: int = Field(ge=0)


class Uint16(_FormulaBase):
    """Two bytes big-endian from ``index``, optionally two's complement.

    Currents encoded as an unsigned magnitude with a fixed offset use
    ``signed=False`` with a negative ``offset`` (e.g. ``raw*0.5 - 1600``).
    """

    kind: Literal["u16"] = "u16"
    index: int = Field(ge=0)
    signed: bool = False


class Uint32(_FormulaBase):
    """Four bytes big-endian from ``index`` (cumulative counters)."""

    kind: Literal["u32"] = "u32"
    index: int = Field(ge=0)


class MultiFrameArray(_FormulaBase):
    """Every byte from ``start`` decoded as one array element.

    Elements whose raw byte is listed in ``skip`` are padding.  Elements
    whose scaled value falls outside ``valid_range`` are dropped.  The
    reported value is the mean of the remaining elements.
    """

    kind: Literal["array"] = "array"
    start: int = Field(ge=0)
    skip: tuple[int, ...] = (0xFF,)
    valid_range: tuple[float, float] | None = None


Formula = Annotated[
    ByteValue | Uint16 | Uint32 | MultiFrameArray,
    Field(discriminator="kind"),
]
"""Tagged union of all supported decode formulas."""


@dataclass(frozen=True, slots=True)
class Decoded:
    """Result of :func:`decode`.

    Attributes:
        value: Scalar value (the mean for array formulas).
        values: Element values for array formulas, empty otherwise.
    """

    value: float
    values: tuple[float, ...] = ()


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def _classify_text(line: str) -> None:
    """Raise the matching error for adapter status text, if any."""
    if "NO DATA" in line:
        raise NoResponse("adapter reported NO DATA")
    if line == "?":
        raise ParameterUnsupported("adapter rejected the command")
    for marker in _ADAPTER_ERRORS:
        if marker in line:
            raise DecodeError(f"adapter error: {line}")


def split_frames(text: str, *, response_header: str | None = None) -> list[bytes]:
    """Split a raw text response into CAN frames with the id stripped.

    Args:
        text: Response text as returned by the link driver (lines
            separated by ``\\n`` or ``\\r``, prompt already removed).
        response_header: Expected 3-hex-digit CAN id of the responding
            ECU (e.g. ``"784"``).  Frames from other ids are ignored.
            When ``None``, odd-length lines are assumed to start with a
            3-digit id, which is stripped.

    Returns:
        List of frame byte strings, in arrival order.

    Raises:
        NoResponse: The adapter reported ``NO DATA``.
        ParameterUnsupported: The adapter rejected the command.
        DecodeError: Adapter error text, non-hex content, or no frames.
    """
    header = response_header.upper() if response_header else None
    frames: list[bytes] = []

    for raw_line in re.split(r"[\r\n]+", text):
        line = raw_line.strip().upper()
        if not line:
            continue
        if line.startswith(_INFO_PREFIXES):
            continue
        _classify_text(line)

        compact = line.replace(" ", "")
        if not _HEX_RE.match(compact):
            raise DecodeError(f"non-hex response line: {raw_line.strip()!r}")

        if header is not None:
            if not compact.startswith(header):
                logger.debug("Ignoring frame from other ECU: %s", compact)
                continue
            compact = compact[len(header):]
        elif len(compact) % 2 == 1:
            compact = compact[3:]

        if len(compact) % 2 != 0 or not compact:
            raise DecodeError(f"truncated frame: {raw_line.strip()!r}")
        frames.append(bytes.fromhex(compact))

    if not frames:
        raise DecodeError("response contained no frames")
    return frames


def reassemble(frames: list[bytes]) -> bytes:
    """Join ISO-TP frames into one payload.

    Raises:
        DecodeError: Unknown frame type, a consecutive frame without a
            first frame, a sequence gap, or a chain shorter than the
            announced length.
    """
    first = frames[0]
    frame_type = first[0] >> 4

    if frame_type == 0:
        length = first[0] & 0x0F
        payload = first[1 : 1 + length]
        if length == 0 or len(payload) < length:
            raise DecodeError(
                f"single frame announces {length} bytes, carries {len(first) - 1}"
            )
        if len(frames) > 1:
            logger.debug("Ignoring %d trailing frame(s) after single frame", len(frames) - 1)
        return payload

    if frame_type == 1:
        if len(first) < 2:
            raise DecodeError("first frame missing length byte")
        length = ((first[0] & 0x0F) << 8) | first[1]
        data = bytearray(first[2:])
        expected_seq = 1
        for frame in frames[1:]:
            if frame[0] >> 4 != 2:
                raise DecodeError(f"expected consecutive frame, got 0x{frame[0]:02X}")
            seq = frame[0] & 0x0F
            if seq != expected_seq:
                raise DecodeError(
                    f"multi-frame sequence gap: expected {expected_seq}, got {seq}"
                )
            data.extend(frame[1:])
            expected_seq = (expected_seq + 1) & 0x0F
            if len(data) >= length:
                break
        if len(data) < length:
            raise DecodeError(f"multi-frame chain short: {len(data)} of {length} bytes")
        return bytes(data[:length])

    if frame_type == 2:
        raise DecodeError("consecutive frame without a first frame")
    raise DecodeError(f"unknown frame type 0x{first[0]:02X}")


def _check_echo(payload: bytes, request: str) -> None:
    """Validate a positive response against the request it answers."""
    compact = request.replace(" ", "").upper()
    if len(compact) < 2 or len(compact) % 2 or not _HEX_RE.match(compact):
        return
    req = bytes.fromhex(compact)
    expected = req[0] + _POSITIVE_OFFSET
    if payload[0] != expected:
        raise DecodeError(
            f"response service 0x{payload[0]:02X} does not answer request {compact}"
        )
    if req[0] in _ECHOING_SERVICES:
        echo = req[1:]
        if payload[1 : 1 + len(echo)] != echo:
            raise DecodeError(
                f"response identifier {payload[1 : 1 + len(echo)].hex().upper()} "
                f"does not match request {compact}"
            )


def parse_response(
    text: str,
    *,
    request: str = "",
    response_header: str | None = None,
) -> bytes:
    """Parse a text response into a validated positive-response payload.

    Args:
        text: Response text from the link driver.
        request: Request code that produced the response; used to check
            the service and identifier echo.  Empty skips the check.
        response_header: Expected responding CAN id (see
            :func:`split_frames`).

    Returns:
        The reassembled payload, starting with the positive response
        service byte.

    Raises:
        NoResponse, ParameterUnsupported, DecodeError: See module docs.
    """
    payload = reassemble(split_frames(text, response_header=response_header))
    if payload[0] == _NEGATIVE_RESPONSE:
        nrc = payload[2] if len(payload) > 2 else None
        raise ParameterUnsupported(
            f"negative response to {request or 'request'}"
            + (f" (NRC 0x{nrc:02X})" if nrc is not None else ""),
            nrc=nrc,
        )
    if request:
        _check_echo(payload, request)
    return payload


# ---------------------------------------------------------------------------
# Formula evaluation
# ---------------------------------------------------------------------------


def _require(payload: bytes, last_index: int) -> None:
    if len(payload) <= last_index:
        raise DecodeError(
            f"payload too short: need byte {last_index}, got {len(payload)} bytes"
        )


def decode(formula: ByteValue | Uint16 | Uint32 | MultiFrameArray, payload: bytes) -> Decoded:
    """Evaluate *formula* over *payload*.

    Deterministic: the same formula and bytes always give the same result.

    Raises:
        DecodeError: The payload is too short for the formula, or an
            array formula yields no elements.
    """
    if isinstance(formula, ByteValue):
        _require(payload, formula.index)
        raw = payload[formula.index]
    elif isinstance(formula, Uint16):
        _require(payload, formula.index + 1)
        raw = int.from_bytes(
            payload[formula.index : formula.index + 2], "big", signed=formula.signed
        )
    elif isinstance(formula, Uint32):
        _require(payload, formula.index + 3)
        raw = int.from_bytes(payload[formula.index : formula.index + 4], "big")
    elif isinstance(formula, MultiFrameArray):
        return _decode_array(formula, payload)
    else:
        raise DecodeError(f"unsupported formula {type(formula).__name__}")

    return Decoded(value=raw * formula.scale + formula.offset)


def _decode_array(formula: MultiFrameArray, payload: bytes) -> Decoded:
    values: list[float] = []
    for raw in payload[formula.start :]:
        if raw in formula.skip:
            continue
        value = raw * formula.scale + formula.offset
        if formula.valid_range is not None:
            lo, hi = formula.valid_range
            if not (lo <= value <= hi):
                continue
        values.append(value)
    if not values:
        raise DecodeError("array payload contained no valid elements")
    return Decoded(value=sum(values) / len(values), values=tuple(values))


def decode_response(
    formula: ByteValue | Uint16 | Uint32 | MultiFrameArray,
    text: str,
    *,
    request: str = "",
    response_header: str | None = None,
) -> Decoded:
    """Parse *text* and evaluate *formula* in one step."""
    payload = parse_response(text, request=request, response_header=response_header)
    return decode(formula, payload)
