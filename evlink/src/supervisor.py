"""
Reconnection supervisor -- sole owner of the adapter connection lifecycle.

State machine (observable as :class:`LinkState`)::

    disconnected -> connecting -> initializing -> active(segment)
                        ^                              |
                        |        timeout / loss        v
                        +------------------------ reconnecting(attempt, next_retry_at)

Every (re)connect opens a fresh transport, replays the fixed base
initialization, then the profile's own init commands, then queries the
protocol (``ATDPN``).  After a reconnect the last-used bus segment is
selected again before the link is reported active, so the scheduler
resumes exactly where it left off.

Reconnect attempts back off exponentially (``base * 2**(n-1)``, capped
at ``max_delay_s``).  The wait between attempts is cancellable through
:meth:`ReconnectionSupervisor.disconnect`.

CHANGELOG:
- 2026-10-18: Carry the last exchange time in every link state
- 2026-10-18: Restore last-used segment after reconnect
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from evlink.src.catalog import ParameterCatalog
from evlink.src.errors import LinkDisconnected, LinkError
from evlink.src.link import LinkDriver
from evlink.src.models import BusSegment, LinkPhase, LinkState
from evlink.src.transports import Transport

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

BASE_INIT_COMMANDS: tuple[str, ...] = (
    "ATZ",  # full reset
    "ATE0",  # echo off
    "ATL0",  # linefeeds off
    "ATS0",  # spaces off
    "ATH1",  # headers on: replies carry the responding ECU id
    "ATAL",  # allow long messages
    "ATCFC1",  # automatic flow control
    "ATFCSD300000",  # flow control data: continue, no block limit, no delay
    "ATFCSM1",  # user-defined flow control
)
"""Profile-independent adapter initialization."""

PROTOCOL_QUERY: str = "ATDPN"

BASE_BACKOFF_S: float = 2.0
"""Initial reconnect delay in seconds."""

MAX_BACKOFF_S: float = 60.0
"""Maximum reconnect delay in seconds (cap for exponential growth)."""

TransportFactory = Callable[[str], Transport]
LinkStateObserver = Callable[[LinkState], None]


def backoff_delay(attempt: int, base_s: float, max_s: float) -> float:
    """Delay before reconnect *attempt* (1-based)."""
    return min(base_s * (2 ** (attempt - 1)), max_s)


class ReconnectionSupervisor:
    """Owns the link driver and the connection state machine.

    Args:
        transport_factory: Builds an unopened transport for an address.
        command_timeout_s: Deadline per adapter command.
        idle_timeout_s: Idle period completing a prompt-less reply.
        reset_timeout_s: Deadline for the ``ATZ`` reset.
        base_delay_s: First reconnect backoff delay.
        max_delay_s: Reconnect backoff cap.
        clock: Wall clock for ``next_retry_at`` and exchange timestamps.
    """

    def __init__(
        self,
        transport_factory: TransportFactory,
        *,
        command_timeout_s: float = 2.0,
        idle_timeout_s: float = 0.3,
        reset_timeout_s: float = 5.0,
        base_delay_s: float = BASE_BACKOFF_S,
        max_delay_s: float = MAX_BACKOFF_S,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._transport_factory = transport_factory
        self._command_timeout_s = command_timeout_s
        self._idle_timeout_s = idle_timeout_s
        self._reset_timeout_s = reset_timeout_s
        self._base_delay_s = base_delay_s
        self._max_delay_s = max_delay_s
        self._clock = clock

        self._state = LinkState()
        self._observers: list[LinkStateObserver] = []
        self._driver: LinkDriver | None = None
        self._catalog: ParameterCatalog | None = None
        self._address: str | None = None
        self._last_segment: BusSegment | None = None
        self._profile_init_pending = False
        self._last_exchange_at: datetime | None = None
        self._cancel = asyncio.Event()
        self.protocol: str | None = None

    # -- Observation -------------------------------------------------------

    @property
    def state(self) -> LinkState:
        return self._state

    @property
    def address(self) -> str | None:
        return self._address

    @property
    def last_exchange_at(self) -> datetime | None:
        """When the adapter last answered, across reconnects."""
        if self._driver is not None and self._driver.last_exchange_at is not None:
            return self._driver.last_exchange_at
        return self._last_exchange_at

    @property
    def cancelled(self) -> asyncio.Event:
        """Set while a disconnect has been requested."""
        return self._cancel

    @property
    def driver(self) -> LinkDriver:
        """Link driver of the active connection.

        Raises:
            LinkDisconnected: No connection is active.
        """
        if self._driver is None or self._state.phase is not LinkPhase.ACTIVE:
            raise LinkDisconnected(f"link is {self._state.phase}")
        return self._driver

    def add_observer(self, observer: LinkStateObserver) -> None:
        """Register a callback invoked on every state transition."""
        self._observers.append(observer)

    def _set_state(self, phase: LinkPhase, **fields: object) -> None:
        self._state = LinkState(
            phase=phase,
            address=self._address,
            last_exchange_at=self.last_exchange_at,
            **fields,
        )
        logger.info(
            "Link state -> %s%s",
            phase,
            f" {fields}" if fields else "",
        )
        for observer in self._observers:
            try:
                observer(self._state)
            except Exception:
                logger.warning("Link state observer failed", exc_info=True)

    # -- Configuration -----------------------------------------------------

    def configure(self, catalog: ParameterCatalog) -> None:
        """Adopt a new catalog's addressing and init commands.

        While active, the profile init is replayed lazily before the next
        segment selection.
        """
        self._catalog = catalog
        self._last_segment = None
        if self._state.phase is LinkPhase.ACTIVE:
            self._profile_init_pending = True
            self._set_state(LinkPhase.ACTIVE, segment=None)

    # -- Lifecycle ---------------------------------------------------------

    async def connect(self, address: str) -> None:
        """Open and initialize the link to *address*.

        Raises:
            LinkError: The adapter could not be opened or initialized; the
                state is back to ``disconnected``.
        """
        if self._state.phase is LinkPhase.ACTIVE and address == self._address:
            return
        await self._close_driver()
        self._cancel.clear()
        self._address = address
        self._last_segment = None
        try:
            await self._establish()
        except LinkError:
            self._set_state(LinkPhase.DISCONNECTED)
            raise

    async def disconnect(self) -> None:
        """Cancel any pending reconnect and close the link."""
        self._cancel.set()
        await self._close_driver()
        self._last_segment = None
        if self._state.phase is not LinkPhase.DISCONNECTED:
            self._set_state(LinkPhase.DISCONNECTED)

    async def recover(self) -> bool:
        """Reconnect with exponential backoff until active or cancelled.

        Returns:
            ``True`` once active again, ``False`` when cancelled.
        """
        if self._address is None:
            raise LinkDisconnected("no adapter address to reconnect to")
        await self._close_driver()
        if self._last_exchange_at is not None:
            silent_s = (self._clock() - self._last_exchange_at).total_seconds()
            logger.warning("Adapter last answered %.1fs ago", silent_s)

        attempt = 0
        while not self._cancel.is_set():
            attempt += 1
            delay = backoff_delay(attempt, self._base_delay_s, self._max_delay_s)
            self._set_state(
                LinkPhase.RECONNECTING,
                attempt=attempt,
                next_retry_at=self._clock() + timedelta(seconds=delay),
            )
            logger.warning(
                "Backoff: reconnecting in %.1fs (attempt %d)", delay, attempt
            )
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._cancel.wait(), timeout=delay)
            if self._cancel.is_set():
                break
            try:
                await self._establish()
            except LinkError as exc:
                logger.warning("Reconnect attempt %d failed: %s", attempt, exc)
                continue
            logger.info("Reconnected after %d attempt(s)", attempt)
            return True

        if self._state.phase is not LinkPhase.DISCONNECTED:
            self._set_state(LinkPhase.DISCONNECTED)
        return False

    async def _establish(self) -> None:
        if self._address is None:
            raise LinkDisconnected("no adapter address")
        driver = LinkDriver(
            self._transport_factory(self._address),
            command_timeout_s=self._command_timeout_s,
            idle_timeout_s=self._idle_timeout_s,
            clock=self._clock,
        )
        self._set_state(LinkPhase.CONNECTING)
        await driver.open()
        self._set_state(LinkPhase.INITIALIZING)
        try:
            await self._initialize(driver)
            if self._last_segment is not None:
                await self._switch(driver, self._last_segment)
        except LinkError:
            await driver.close()
            raise
        self._driver = driver
        self._set_state(LinkPhase.ACTIVE, segment=self._last_segment)

    async def _initialize(self, driver: LinkDriver) -> None:
        for cmd in BASE_INIT_COMMANDS:
            timeout = self._reset_timeout_s if cmd == "ATZ" else None
            await self._init_command(driver, cmd, timeout)
        if self._catalog is not None:
            for cmd in self._catalog.init_commands:
                await self._init_command(driver, cmd, None)
        self._profile_init_pending = False
        self.protocol = await driver.send(PROTOCOL_QUERY)
        logger.info("Adapter initialized, protocol %s", self.protocol)

    @staticmethod
    async def _init_command(driver: LinkDriver, cmd: str, timeout: float | None) -> None:
        reply = await driver.send(cmd, timeout_s=timeout)
        if reply.strip() == "?":
            logger.warning("Adapter rejected init command %s", cmd)

    async def _close_driver(self) -> None:
        if self._driver is not None:
            driver, self._driver = self._driver, None
            if driver.last_exchange_at is not None:
                self._last_exchange_at = driver.last_exchange_at
            await driver.close()

    # -- Segment selection -------------------------------------------------

    async def ensure_segment(self, segment: BusSegment) -> bool:
        """Select *segment* unless it already is the active one.

        Returns:
            ``True`` when switch commands were sent.

        Raises:
            LinkTimeout, LinkDisconnected: The switch exchange failed.
        """
        driver = self.driver
        if self._profile_init_pending and self._catalog is not None:
            for cmd in self._catalog.init_commands:
                await self._init_command(driver, cmd, None)
            self._profile_init_pending = False
        if self._state.segment == segment:
            return False
        # Partially applied switch must not look selected.
        self._set_state(LinkPhase.ACTIVE, segment=None)
        await self._switch(driver, segment)
        self._last_segment = segment
        self._set_state(LinkPhase.ACTIVE, segment=segment)
        return True

    def forget_segment(self) -> None:
        """Force the next :meth:`ensure_segment` to resend the switch."""
        if self._state.phase is LinkPhase.ACTIVE and self._state.segment is not None:
            self._set_state(LinkPhase.ACTIVE, segment=None)

    async def _switch(self, driver: LinkDriver, segment: BusSegment) -> None:
        if self._catalog is None:
            raise LinkDisconnected("no profile configured")
        for cmd in self._catalog.segment(segment).switch_commands():
            await driver.send(cmd)
        logger.debug("Selected bus segment %s", segment)
