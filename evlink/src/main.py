"""
Telemetry daemon: adapter polling, charging detection, session persistence.

Runs three concurrent asyncio tasks:
1. **Engine loop**: the telemetry engine polls the adapter, feeds every
   snapshot to the charging session detector and fans snapshots and
   finalized sessions out to subscribers.
2. **Snapshot consumer**: updates the health file from every snapshot.
3. **Session consumer**: records finalized sessions in the SQLite session
   store and the health file.

Consumers are resilient: an exception for one item is logged and the
consumer keeps going.  Graceful shutdown on SIGTERM/SIGINT sets a shared
asyncio.Event; the engine finishes its current cycle, closes the streams
(which ends both consumers) and the link is closed.

Structured JSON logging is used for all events.

CHANGELOG:
- 2026-10-18: Resolve adapter address from last-known address file
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from evlink.src.errors import LinkError

if TYPE_CHECKING:
    from evlink.src.catalog import VehicleProfile
    from evlink.src.config import EngineSettings
    from evlink.src.engine import Subscription, TelemetryEngine
    from evlink.src.health import HealthWriter
    from evlink.src.models import ChargingSession, TelemetrySnapshot
    from evlink.src.session_store import SessionStore
    from evlink.src.sources import AddressSource

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def configure_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging on the root logger (stderr)."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())


# ---------------------------------------------------------------------------
# Startup helpers
# ---------------------------------------------------------------------------


def log_config_summary(settings: EngineSettings) -> None:
    """Log a config summary at startup."""
    logger.info(
        "Telemetry daemon starting with config: "
        "adapter_address=%s, vehicle_profile=%s, profile_path=%s, "
        "poll_interval_s=%s, low_priority_interval_s=%s, "
        "inter_command_delay_ms=%s, command_timeout_s=%s, "
        "reconnect_base_delay_s=%s, reconnect_max_delay_s=%s, state_dir=%s",
        settings.adapter_address or "<last known>",
        settings.vehicle_profile,
        settings.profile_path or "<bundled>",
        settings.poll_interval_s,
        settings.low_priority_interval_s,
        settings.inter_command_delay_ms,
        settings.command_timeout_s,
        settings.reconnect_base_delay_s,
        settings.reconnect_max_delay_s,
        settings.state_dir,
    )


def resolve_profile(settings: EngineSettings) -> VehicleProfile:
    """Load the configured profile from the JSON file or the bundled table.

    Raises:
        ProfileInvalid: Unknown or malformed profile.
    """
    from evlink.src.sources import BundledProfileSource, JsonFileProfileSource

    if settings.profile_path:
        return JsonFileProfileSource(settings.profile_path).get(settings.vehicle_profile)
    return BundledProfileSource().get(settings.vehicle_profile)


def resolve_address(settings: EngineSettings, source: AddressSource) -> str | None:
    """Configured adapter address, else the last known one."""
    if settings.adapter_address:
        return settings.adapter_address
    return source.load()


# ---------------------------------------------------------------------------
# Consumers
# ---------------------------------------------------------------------------


async def _consume_snapshots(
    snapshots: Subscription[TelemetrySnapshot],
    *,
    health: HealthWriter | None,
) -> None:
    """Update the health file from every snapshot until the stream ends."""
    async for snapshot in snapshots:
        try:
            if health is not None:
                health.record_snapshot(snapshot)
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)
    logger.info("Snapshot consumer stopped")


async def _consume_sessions(
    sessions: Subscription[ChargingSession],
    *,
    store: SessionStore,
    health: HealthWriter | None,
) -> None:
    """Persist every finalized session until the stream ends."""
    async for session in sessions:
        try:
            await store.record(session)
            if health is not None:
                health.record_session(session)
        except Exception:
            logger.error("Failed to record charging session %s", session.id, exc_info=True)
    logger.info("Session consumer stopped")


async def run_daemon(
    *,
    engine: TelemetryEngine,
    store: SessionStore,
    address: str | None,
    shutdown_event: asyncio.Event,
    health: HealthWriter | None = None,
) -> None:
    """Connect, run the engine and both consumers until shutdown.

    A failed first connection is not fatal: the engine keeps retrying
    with backoff.

    Args:
        engine: The telemetry engine.
        store: Open session store.
        address: Adapter address, or ``None`` to wait idle.
        shutdown_event: Event to signal graceful shutdown.
        health: HealthWriter instance, or None to skip health writes.
    """
    if health is not None:
        engine.on_link_state(health.record_link_state)

    snapshots = engine.subscribe_snapshots()
    sessions = engine.subscribe_sessions()

    if address:
        try:
            await engine.connect(address)
        except LinkError as exc:
            logger.warning("Initial connect to %s failed, retrying: %s", address, exc)
    else:
        logger.warning("No adapter address configured or remembered; idle until shutdown")

    try:
        await asyncio.gather(
            engine.run(shutdown_event),
            _consume_snapshots(snapshots, health=health),
            _consume_sessions(sessions, store=store, health=health),
        )
    finally:
        await engine.disconnect()
    logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main() -> None:
    """Async entrypoint: load config, build components, run until signalled.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.
    """
    from evlink.src.config import EngineSettings
    from evlink.src.engine import TelemetryEngine
    from evlink.src.health import HealthWriter
    from evlink.src.session_store import SessionStore
    from evlink.src.sources import FileAddressSource

    settings = EngineSettings()
    configure_logging(settings.log_level)
    log_config_summary(settings)

    Path(settings.state_dir).mkdir(parents=True, exist_ok=True)
    address_source = FileAddressSource(settings.address_file)
    profile = resolve_profile(settings)
    engine = TelemetryEngine.from_settings(
        settings, profile, address_source=address_source
    )

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(shutdown_event),
        )

    health = HealthWriter(settings.health_file)

    async with SessionStore(settings.sessions_db) as store:
        await run_daemon(
            engine=engine,
            store=store,
            address=resolve_address(settings, address_source),
            shutdown_event=shutdown_event,
            health=health,
        )


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event."""
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the telemetry daemon."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
