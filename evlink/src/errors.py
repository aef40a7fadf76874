"""
Error taxonomy for the telemetry core.

Link-level errors abort the current poll cycle and hand control to the
reconnection supervisor.  Parameter-level errors only invalidate a single
snapshot entry.  ``ProfileInvalid`` is raised synchronously by profile
loading and leaves the previous profile active.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""


class EvlinkError(Exception):
    """Base error for the telemetry core."""


# ---------------------------------------------------------------------------
# Link errors
# ---------------------------------------------------------------------------


class LinkError(EvlinkError):
    """Base error for adapter link failures."""


class LinkTimeout(LinkError):
    """Raised when the adapter does not answer within the command timeout."""


class LinkDisconnected(LinkError):
    """Raised when the physical connection is lost or cannot be opened."""


# ---------------------------------------------------------------------------
# Parameter errors
# ---------------------------------------------------------------------------


class ParameterError(EvlinkError):
    """Base error for a single failed parameter read."""


class ParameterUnsupported(ParameterError):
    """Raised on an explicit negative acknowledgement from adapter or ECU."""

    def __init__(self, message: str, *, nrc: int | None = None) -> None:
        super().__init__(message)
        self.nrc = nrc


class NoResponse(ParameterError):
    """Raised when the adapter reports that no ECU answered (``NO DATA``)."""


class DecodeError(ParameterError):
    """Raised when a response payload is malformed or too short."""


# ---------------------------------------------------------------------------
# Profile errors
# ---------------------------------------------------------------------------


class ProfileInvalid(EvlinkError):
    """Raised when a vehicle profile's descriptor table is malformed."""
