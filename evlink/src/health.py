"""
Health file writer for the telemetry daemon.

Writes a JSON health file with:
- link_state: Current link phase (``active``, ``reconnecting``, ...).
- last_exchange_ts: ISO timestamp of the last completed adapter exchange.
- last_snapshot_ts: ISO timestamp of the most recent snapshot.
- last_cycle: Cycle number of that snapshot.
- stale_parameters: Entries carried forward from earlier cycles.
- last_session_id: Id of the most recently finalized charging session.
- sessions_recorded: Number of sessions finalized since start.

The file is rewritten on every state change, providing a simple liveness
signal that a container HEALTHCHECK or monitoring can inspect.

CHANGELOG:
- 2026-10-18: Report when the adapter last answered
- 2026-10-18: Track link state and charging sessions
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
from pathlib import Path

from evlink.src.models import ChargingSession, LinkState, TelemetrySnapshot


class HealthWriter:
    """Writes telemetry health status to a JSON file.

    Each mutating method updates the in-memory state and immediately
    rewrites the health file so it always reflects the latest status.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._link_state: str = "disconnected"
        self._last_exchange_ts: str | None = None
        self._last_snapshot_ts: str | None = None
        self._last_cycle: int | None = None
        self._stale_parameters: list[str] = []
        self._last_session_id: str | None = None
        self._sessions_recorded: int = 0

    def record_link_state(self, state: LinkState) -> None:
        """Record a link state transition and write health file."""
        self._link_state = str(state.phase)
        if state.last_exchange_at is not None:
            self._last_exchange_ts = state.last_exchange_at.isoformat()
        self._write()

    def record_snapshot(self, snapshot: TelemetrySnapshot) -> None:
        """Record a completed poll cycle and write health file."""
        self._last_snapshot_ts = snapshot.taken_at.isoformat()
        self._last_cycle = snapshot.cycle
        self._stale_parameters = snapshot.stale_names()
        self._write()

    def record_session(self, session: ChargingSession) -> None:
        """Record a finalized charging session and write health file."""
        self._last_session_id = session.id
        self._sessions_recorded += 1
        self._write()

    def _write(self) -> None:
        """Write the health JSON file with current state."""
        data = {
            "link_state": self._link_state,
            "last_exchange_ts": self._last_exchange_ts,
            "last_snapshot_ts": self._last_snapshot_ts,
            "last_cycle": self._last_cycle,
            "stale_parameters": self._stale_parameters,
            "last_session_id": self._last_session_id,
            "sessions_recorded": self._sessions_recorded,
        }
        self.path.write_text(json.dumps(data))
