"""
Telemetry engine -- the facade collaborators talk to.

Wires the reconnection supervisor, the polling scheduler and the
charging session detector into one polling loop and exposes:

- Commands: :meth:`TelemetryEngine.load_profile`, :meth:`connect`,
  :meth:`disconnect`, :meth:`set_poll_interval`, :meth:`pause_polling`,
  :meth:`resume_polling`.
- Streams: :meth:`subscribe_snapshots` and :meth:`subscribe_sessions`
  return async iterators; every subscriber receives every item, in
  order.  Items are frozen models, so subscribers never share mutable
  state with the core.
- Observation: :meth:`on_link_state` registers a link state callback.

The detector is called inline in the polling loop, before fan-out, so it
observes every snapshot exactly once and in cycle order regardless of
how slow the subscribers are.

Link-level failures during a cycle hand control to the supervisor's
reconnect loop; nothing in here terminates the process.

CHANGELOG:
- 2026-10-18: Bound subscriber queues, dropping the oldest items
- 2026-10-18: Link errors caused by a command mid-cycle do not trigger a reconnect
- 2026-10-18: Pause/resume polling without dropping the link
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from evlink.src.catalog import ParameterCatalog, VehicleProfile, load_profile
from evlink.src.charging import ChargingSessionDetector, ChargingThresholds
from evlink.src.errors import LinkError
from evlink.src.models import ChargingSession, LinkPhase, LinkState, TelemetrySnapshot
from evlink.src.poller import PollingScheduler
from evlink.src.supervisor import LinkStateObserver, ReconnectionSupervisor, TransportFactory
from evlink.src.transports import Transport, make_transport

if TYPE_CHECKING:
    from evlink.src.config import EngineSettings
    from evlink.src.sources import AddressSource

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CLOSED = object()

SUBSCRIBER_QUEUE_SIZE: int = 256
"""Items buffered per subscriber before the oldest is dropped."""


# ---------------------------------------------------------------------------
# Fan-out streams
# ---------------------------------------------------------------------------


class Subscription(Generic[T]):
    """Async iterator over one subscriber's queue.

    Registered at creation, so nothing published after
    :meth:`Broadcast.subscribe` returns is missed.  A subscriber that falls
    more than *maxsize* items behind loses the oldest ones; ``dropped``
    counts them.
    """

    def __init__(self, hub: Broadcast[T], maxsize: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self._hub = hub
        self._maxsize = maxsize
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self.dropped = 0

    def _put(self, item: Any) -> None:
        if self._maxsize > 0 and self._queue.qsize() >= self._maxsize:
            self._queue.get_nowait()
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning("Slow subscriber: %d item(s) dropped so far", self.dropped)
        self._queue.put_nowait(item)

    def __aiter__(self) -> Subscription[T]:
        return self

    async def __anext__(self) -> T:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        """Stop receiving items."""
        self._hub._remove(self)
        self._queue.put_nowait(_CLOSED)


class Broadcast(Generic[T]):
    """Ordered fan-out of immutable items to any number of subscribers."""

    def __init__(self, maxsize: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self._maxsize = maxsize
        self._subscribers: list[Subscription[T]] = []

    def subscribe(self) -> Subscription[T]:
        sub: Subscription[T] = Subscription(self, self._maxsize)
        self._subscribers.append(sub)
        return sub

    def publish(self, item: T) -> None:
        for sub in self._subscribers:
            sub._put(item)

    def close(self) -> None:
        for sub in list(self._subscribers):
            sub.close()

    def _remove(self, sub: Subscription[T]) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    def __len__(self) -> int:
        return len(self._subscribers)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TelemetryEngine:
    """Telemetry acquisition and charging analytics core.

    Args:
        profile: Initial vehicle profile.
        transport_factory: Builds an unopened transport for an address.
        poll_interval_s: Period of high-priority cycles.
        low_priority_interval_s: Default low-priority refresh interval.
        inter_command_delay_ms: Pause between reads.
        command_timeout_s: Deadline per adapter command.
        idle_timeout_s: Idle period completing a prompt-less reply.
        reset_timeout_s: Deadline for the adapter reset.
        reconnect_base_delay_s: First reconnect delay.
        reconnect_max_delay_s: Reconnect delay cap.
        thresholds: Charging detector tunables.
        address_source: Where the last successful address is saved.

    Raises:
        ProfileInvalid: The initial profile is malformed.
    """

    def __init__(
        self,
        profile: VehicleProfile | Mapping[str, Any],
        *,
        transport_factory: TransportFactory = make_transport,
        poll_interval_s: float = 5.0,
        low_priority_interval_s: float = 300.0,
        inter_command_delay_ms: int = 50,
        command_timeout_s: float = 2.0,
        idle_timeout_s: float = 0.3,
        reset_timeout_s: float = 5.0,
        reconnect_base_delay_s: float = 2.0,
        reconnect_max_delay_s: float = 60.0,
        thresholds: ChargingThresholds | None = None,
        address_source: AddressSource | None = None,
    ) -> None:
        catalog = load_profile(profile)
        self._poll_interval_s = poll_interval_s
        self._address_source = address_source
        self._interrupt = asyncio.Event()
        self._wake = asyncio.Event()
        self._paused = False
        self._needs_recovery = False

        self._supervisor = ReconnectionSupervisor(
            transport_factory,
            command_timeout_s=command_timeout_s,
            idle_timeout_s=idle_timeout_s,
            reset_timeout_s=reset_timeout_s,
            base_delay_s=reconnect_base_delay_s,
            max_delay_s=reconnect_max_delay_s,
        )
        self._supervisor.configure(catalog)
        self._scheduler = PollingScheduler(
            self._supervisor,
            catalog,
            low_priority_interval_s=low_priority_interval_s,
            inter_command_delay_ms=inter_command_delay_ms,
            cancel=self._interrupt,
        )
        self._detector = ChargingSessionDetector(thresholds)
        self._snapshots: Broadcast[TelemetrySnapshot] = Broadcast()
        self._sessions: Broadcast[ChargingSession] = Broadcast()

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        profile: VehicleProfile | Mapping[str, Any],
        *,
        transport_factory: TransportFactory | None = None,
        address_source: AddressSource | None = None,
    ) -> TelemetryEngine:
        """Build an engine from :class:`EngineSettings`."""

        def _factory(address: str) -> Transport:
            return make_transport(
                address,
                baudrate=settings.adapter_baudrate,
                rfcomm_channel=settings.rfcomm_channel,
            )

        return cls(
            profile,
            transport_factory=transport_factory or _factory,
            poll_interval_s=settings.poll_interval_s,
            low_priority_interval_s=settings.low_priority_interval_s,
            inter_command_delay_ms=settings.inter_command_delay_ms,
            command_timeout_s=settings.command_timeout_s,
            idle_timeout_s=settings.idle_timeout_s,
            reset_timeout_s=settings.reset_timeout_s,
            reconnect_base_delay_s=settings.reconnect_base_delay_s,
            reconnect_max_delay_s=settings.reconnect_max_delay_s,
            thresholds=ChargingThresholds.from_settings(settings),
            address_source=address_source,
        )

    # -- Observation -------------------------------------------------------

    @property
    def link_state(self) -> LinkState:
        return self._supervisor.state

    @property
    def catalog(self) -> ParameterCatalog:
        return self._scheduler.catalog

    @property
    def poll_interval_s(self) -> float:
        return self._poll_interval_s

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def active_session(self) -> ChargingSession | None:
        """Frozen progress copy of the open charging session, if any."""
        return self._detector.active_session

    def on_link_state(self, callback: LinkStateObserver) -> None:
        self._supervisor.add_observer(callback)

    def subscribe_snapshots(self) -> Subscription[TelemetrySnapshot]:
        """Stream of snapshots, one per completed poll cycle."""
        return self._snapshots.subscribe()

    def subscribe_sessions(self) -> Subscription[ChargingSession]:
        """Stream of finalized charging sessions."""
        return self._sessions.subscribe()

    # -- Commands ----------------------------------------------------------

    def load_profile(self, profile: VehicleProfile | Mapping[str, Any]) -> ParameterCatalog:
        """Replace the active catalog with *profile*.

        The in-flight cycle is cancelled and its partial results dropped.
        An open charging session is unaffected.

        Raises:
            ProfileInvalid: Malformed profile; the previous one stays active.
        """
        catalog = load_profile(profile)
        self._interrupt.set()
        self._scheduler.set_catalog(catalog)
        self._supervisor.configure(catalog)
        self._wake.set()
        return catalog

    async def connect(self, address: str) -> None:
        """Connect to the adapter at *address*.

        On failure the polling loop keeps retrying with backoff.

        Raises:
            LinkError: The first attempt failed.
        """
        self._interrupt.set()
        try:
            await self._supervisor.connect(address)
        except LinkError:
            self._needs_recovery = True
            self._wake.set()
            raise
        self._needs_recovery = False
        self._scheduler.reset_connection_state()
        if self._address_source is not None:
            self._address_source.save(address)
        self._wake.set()

    async def disconnect(self) -> None:
        """Cancel polling and any reconnect wait, then close the link."""
        self._needs_recovery = False
        self._interrupt.set()
        await self._supervisor.disconnect()
        self._wake.set()

    def set_poll_interval(self, seconds: float) -> None:
        """Change the high-priority cycle period.

        Raises:
            ValueError: *seconds* is not positive.
        """
        if seconds <= 0:
            raise ValueError("poll interval must be > 0")
        self._poll_interval_s = seconds
        logger.info("Poll interval set to %.1fs", seconds)
        self._wake.set()

    def pause_polling(self) -> None:
        """Suspend cycles without dropping the link."""
        self._paused = True
        self._interrupt.set()
        logger.info("Polling paused")

    def resume_polling(self) -> None:
        self._paused = False
        self._wake.set()
        logger.info("Polling resumed")

    # -- Loop --------------------------------------------------------------

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Poll until *shutdown_event* is set, then close the streams."""
        logger.info("Polling loop started (interval=%ss)", self._poll_interval_s)
        loop = asyncio.get_running_loop()
        watcher = asyncio.ensure_future(self._cancel_on_shutdown(shutdown_event))
        try:
            while not shutdown_event.is_set():
                started = loop.time()
                ran = await self.run_once()
                if ran:
                    remaining = self._poll_interval_s - (loop.time() - started)
                    await self._sleep(shutdown_event, max(0.0, remaining))
                else:
                    await self._sleep(shutdown_event, self._poll_interval_s)
        finally:
            watcher.cancel()
            self._snapshots.close()
            self._sessions.close()
            logger.info("Polling loop stopped")

    async def _cancel_on_shutdown(self, shutdown_event: asyncio.Event) -> None:
        """Abort an in-flight cycle or reconnect wait once shutdown starts."""
        await shutdown_event.wait()
        self._interrupt.set()
        self._supervisor.cancelled.set()

    async def run_once(self) -> bool:
        """One loop iteration: recover, or poll one cycle.

        Catches everything so the caller's loop is never broken.

        Returns:
            ``True`` when a poll cycle was attempted.
        """
        try:
            if self._paused:
                return False
            if self._needs_recovery:
                await self._recover()
                return False
            if self._supervisor.state.phase is not LinkPhase.ACTIVE:
                return False
            self._interrupt.clear()
            await self._cycle()
            return True
        except Exception:
            logger.error("Polling loop error", exc_info=True)
            return False

    async def _cycle(self) -> None:
        try:
            snapshot = await self._scheduler.poll_cycle()
        except LinkError as exc:
            if self._supervisor.cancelled.is_set():
                return
            if self._interrupt.is_set():
                # Raised by our own connect/profile/pause command, not a lost link.
                logger.info("Cycle interrupted by a command: %s", exc)
                return
            logger.warning("Link lost during cycle: %s", exc)
            self._needs_recovery = True
            await self._recover()
            return
        if snapshot is None:
            return
        self._deliver(snapshot)

    async def _recover(self) -> None:
        recovered = await self._supervisor.recover()
        self._needs_recovery = False
        if recovered:
            self._scheduler.reset_connection_state()

    def _deliver(self, snapshot: TelemetrySnapshot) -> None:
        session = self._detector.observe(snapshot)
        self._snapshots.publish(snapshot)
        if session is not None:
            self._sessions.publish(session)

    async def _sleep(self, shutdown_event: asyncio.Event, timeout: float) -> None:
        """Wait *timeout* seconds, or until shutdown or a command wakes us."""
        if timeout <= 0:
            return
        waiters = [
            asyncio.ensure_future(shutdown_event.wait()),
            asyncio.ensure_future(self._wake.wait()),
        ]
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
            self._wake.clear()
