"""
Priority-tiered polling scheduler.

One call to :meth:`PollingScheduler.poll_cycle` walks the catalog once,
in catalog order (all Segment A parameters, then all Segment B), and
returns one immutable :class:`TelemetrySnapshot`:

- High-priority parameters are read every cycle; their entries carry the
  cycle timestamp.
- Low-priority parameters are read only when their cached entry is older
  than their interval (``interval_s`` on the descriptor, else the
  scheduler default); otherwise the cached entry is carried forward with
  its original ``read_at`` and ``cycle``.  An explicit negative response
  is cached the same way, so an unsupported low-priority parameter is
  retried once per interval instead of every cycle.
- The segment switch goes through the supervisor, which only sends it
  when the segment actually changes.
- Per-parameter failures (unsupported, no response, decode error, out of
  range, a single timeout) mark that entry invalid and the cycle goes on.
  Two consecutive timeouts, or a lost connection, abort the cycle by
  raising the link error.
- The cancel event is checked before every read; a cancelled cycle
  returns ``None`` and commits nothing (no cycle number, no cache).

CHANGELOG:
- 2026-10-18: ECU wake-up requests after repeated early failures
- 2026-10-18: Stage cache updates until the cycle completes
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime

from evlink.src.catalog import ParameterCatalog, ParameterDescriptor
from evlink.src.decoder import decode_response
from evlink.src.errors import (
    DecodeError,
    LinkError,
    LinkTimeout,
    NoResponse,
    ParameterUnsupported,
)
from evlink.src.models import (
    ParameterReading,
    Priority,
    ReadingStatus,
    TelemetrySnapshot,
)
from evlink.src.supervisor import ReconnectionSupervisor

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MAX_CONSECUTIVE_TIMEOUTS: int = 2
"""Consecutive read timeouts that abort the cycle as a dead link."""

WAKE_UP_WINDOW_CYCLES: int = 3
"""Cycles after (re)connect during which wake-up requests may be sent."""

WAKE_UP_FAILURE_THRESHOLD: int = 5
"""Unanswered reads in one cycle that trigger the wake-up requests."""

_WAKE_UP_STATUSES = {ReadingStatus.UNSUPPORTED, ReadingStatus.NO_RESPONSE}


class PollingScheduler:
    """Drives the link driver through the catalog once per cycle.

    Args:
        supervisor: Connection owner; provides the driver and segment
            selection.
        catalog: Initial parameter catalog.
        low_priority_interval_s: Default refresh interval for low-priority
            parameters.
        inter_command_delay_ms: Pause between consecutive reads.
        cancel: Event checked before every read.
        clock: Wall clock for cycle timestamps.
    """

    def __init__(
        self,
        supervisor: ReconnectionSupervisor,
        catalog: ParameterCatalog,
        *,
        low_priority_interval_s: float = 300.0,
        inter_command_delay_ms: int = 50,
        cancel: asyncio.Event | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._supervisor = supervisor
        self._catalog = catalog
        self._low_priority_interval_s = low_priority_interval_s
        self._inter_command_delay_s = inter_command_delay_ms / 1000.0
        self._cancel = cancel if cancel is not None else asyncio.Event()
        self._clock = clock

        self._cycle = 0
        self._cache: dict[str, ParameterReading] = {}
        self._cycles_since_connect = 0
        self._wake_up_sent = False

    @property
    def catalog(self) -> ParameterCatalog:
        return self._catalog

    @property
    def cycle(self) -> int:
        """Number of the last completed cycle (0 before the first)."""
        return self._cycle

    def set_catalog(self, catalog: ParameterCatalog) -> None:
        """Replace the catalog and drop every cached entry."""
        self._catalog = catalog
        self._cache = {}
        self.reset_connection_state()

    def reset_connection_state(self) -> None:
        """Re-arm the wake-up requests after a (re)connect."""
        self._cycles_since_connect = 0
        self._wake_up_sent = False

    def _interval_for(self, desc: ParameterDescriptor) -> float:
        return desc.interval_s if desc.interval_s is not None else self._low_priority_interval_s

    def _cached_if_fresh(
        self, desc: ParameterDescriptor, taken_at: datetime
    ) -> ParameterReading | None:
        if desc.priority is Priority.HIGH:
            return None
        cached = self._cache.get(desc.name)
        if cached is None or cached.read_at is None:
            return None
        age = (taken_at - cached.read_at).total_seconds()
        if age >= self._interval_for(desc):
            return None
        return cached

    # -- Cycle ---------------------------------------------------------------

    async def poll_cycle(self) -> TelemetrySnapshot | None:
        """Run one cycle and return its snapshot.

        Returns:
            The snapshot, or ``None`` if the cycle was cancelled.

        Raises:
            LinkTimeout: Two consecutive reads timed out.
            LinkDisconnected: The connection was lost mid-cycle.
        """
        catalog = self._catalog
        cycle = self._cycle + 1
        taken_at = self._clock()

        readings: list[ParameterReading] = []
        staged: dict[str, ParameterReading] = {}
        consecutive_timeouts = 0
        unanswered = 0
        reads = 0

        for desc in catalog:
            if self._cancel.is_set():
                logger.info("Cycle %d cancelled before %s", cycle, desc.name)
                return None

            cached = self._cached_if_fresh(desc, taken_at)
            if cached is not None:
                readings.append(cached)
                continue

            if reads and self._inter_command_delay_s > 0:
                await asyncio.sleep(self._inter_command_delay_s)
            reads += 1

            try:
                await self._supervisor.ensure_segment(desc.segment)
                reading = await self._read(desc, catalog, cycle, taken_at)
            except LinkTimeout as exc:
                consecutive_timeouts += 1
                if consecutive_timeouts >= MAX_CONSECUTIVE_TIMEOUTS:
                    logger.warning(
                        "Cycle %d aborted: %d consecutive timeouts", cycle, consecutive_timeouts
                    )
                    raise
                logger.warning("Timeout reading %s: %s", desc.name, exc)
                reading = _invalid(desc, ReadingStatus.TIMEOUT, cycle, taken_at, str(exc))
            else:
                consecutive_timeouts = 0

            if reading.status in _WAKE_UP_STATUSES:
                unanswered += 1
            if desc.priority is Priority.LOW and (
                reading.valid or reading.status is ReadingStatus.UNSUPPORTED
            ):
                staged[desc.name] = reading
            readings.append(reading)

        if self._cancel.is_set() or catalog is not self._catalog:
            logger.info("Cycle %d cancelled after last read", cycle)
            return None

        self._cycle = cycle
        self._cache.update(staged)
        snapshot = TelemetrySnapshot(
            cycle=cycle,
            taken_at=taken_at,
            profile=catalog.name,
            readings=tuple(readings),
        )
        logger.debug(
            "Cycle %d: %d reads, %d carried forward",
            cycle,
            reads,
            len(readings) - reads,
        )

        self._cycles_since_connect += 1
        if (
            not self._wake_up_sent
            and self._cycles_since_connect <= WAKE_UP_WINDOW_CYCLES
            and unanswered >= WAKE_UP_FAILURE_THRESHOLD
        ):
            await self._wake_up(catalog, unanswered)

        return snapshot

    async def _read(
        self,
        desc: ParameterDescriptor,
        catalog: ParameterCatalog,
        cycle: int,
        taken_at: datetime,
    ) -> ParameterReading:
        """Read and decode one parameter.

        Link errors propagate; parameter errors become invalid entries.
        """
        text = await self._supervisor.driver.send(desc.request)
        segment = catalog.segment(desc.segment)
        try:
            decoded = decode_response(
                desc.formula,
                text,
                request=desc.request,
                response_header=segment.response_header,
            )
        except ParameterUnsupported as exc:
            logger.warning("Parameter %s unsupported: %s", desc.name, exc)
            return _invalid(desc, ReadingStatus.UNSUPPORTED, cycle, taken_at, str(exc))
        except NoResponse as exc:
            logger.warning("Parameter %s no response: %s", desc.name, exc)
            return _invalid(desc, ReadingStatus.NO_RESPONSE, cycle, taken_at, str(exc))
        except DecodeError as exc:
            logger.warning("Parameter %s decode error: %s", desc.name, exc)
            return _invalid(desc, ReadingStatus.DECODE_ERROR, cycle, taken_at, str(exc))

        if desc.valid_range is not None:
            lo, hi = desc.valid_range
            if not (lo <= decoded.value <= hi):
                detail = f"value {decoded.value} outside [{lo}, {hi}]"
                logger.warning("Parameter %s out of range: %s", desc.name, detail)
                return _invalid(desc, ReadingStatus.OUT_OF_RANGE, cycle, taken_at, detail)

        return ParameterReading(
            name=desc.name,
            role=desc.role,
            priority=desc.priority,
            unit=desc.unit,
            status=ReadingStatus.OK,
            value=decoded.value,
            values=decoded.values,
            read_at=taken_at,
            cycle=cycle,
        )

    async def _wake_up(self, catalog: ParameterCatalog, unanswered: int) -> None:
        """Send one read per segment to wake sleeping ECUs."""
        self._wake_up_sent = True
        logger.info("ECU wake-up: %d unanswered reads, reading each segment once", unanswered)
        for segment in catalog.segments_in_order():
            first = next(p for p in catalog if p.segment is segment)
            try:
                await self._supervisor.ensure_segment(segment)
                await self._supervisor.driver.send(first.request)
            except LinkError as exc:
                logger.warning("ECU wake-up read on segment %s failed: %s", segment, exc)
                break
        self._supervisor.forget_segment()


def _invalid(
    desc: ParameterDescriptor,
    status: ReadingStatus,
    cycle: int,
    taken_at: datetime,
    detail: str,
) -> ParameterReading:
    return ParameterReading(
        name=desc.name,
        role=desc.role,
        priority=desc.priority,
        unit=desc.unit,
        status=status,
        read_at=taken_at,
        cycle=cycle,
        detail=detail,
    )
