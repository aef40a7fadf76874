"""
Telemetry daemon configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
All values come from environment variables or a .env file; the adapter
address may also be left unset and resolved from the last-known address
file at startup.

CHANGELOG:
- 2026-10-18: Add charging detector tunables
- 2026-10-17: Initial creation

TODO:
- None
"""

import os

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings


class EngineSettings(BaseSettings):
    """Telemetry engine configuration.

    Attributes:
        adapter_address: Serial device path, ``tcp://host:port`` or a
            Bluetooth MAC address.  Empty means "use the last known one".
        adapter_baudrate: Serial baud rate for wired/rfcomm tty adapters.
        rfcomm_channel: RFCOMM channel for MAC-address adapters.
        vehicle_profile: Name of the bundled vehicle profile to load.
        profile_path: Optional JSON profile file overriding the bundled one.
        poll_interval_s: Seconds between high-priority poll cycles.
        low_priority_interval_s: Default refresh interval for low-priority
            parameters.
        inter_command_delay_ms: Pause between consecutive parameter reads.
        command_timeout_s: Deadline for one adapter exchange.
        idle_timeout_s: Quiet period after which a partial response
            without prompt is returned.
        reset_timeout_s: Deadline for the ``ATZ`` reset exchange.
        reconnect_base_delay_s: First reconnect backoff delay.
        reconnect_max_delay_s: Reconnect backoff cap.
        charge_current_deadband_a: Inflow current (A) that must be exceeded
            before a sample counts as charging.
        stationary_speed_kmh: Speeds below this count as stationary.
        dc_power_threshold_kw: Charging power above this classifies DC.
        classification_min_power_kw: Charging power required before a
            session is classified at all.
        start_confirm_samples: Consecutive inflow+stationary samples that
            open a session.
        stop_confirm_samples: Consecutive non-inflow samples that close it.
        min_session_energy_kwh: Significance threshold (energy).
        min_session_soc_gain_pct: Significance threshold (SoC gain).
        min_session_duration_s: Significance threshold (duration).
        state_dir: Directory for last adapter address, session db and
            health file.
        log_level: Root log level name.
    """

    adapter_address: str = ""
    adapter_baudrate: int = 38400
    rfcomm_channel: int = 1
    vehicle_profile: str = "XPENG G6"
    profile_path: str = ""
    poll_interval_s: float = 5.0
    low_priority_interval_s: float = 300.0
    inter_command_delay_ms: int = 50
    command_timeout_s: float = 2.0
    idle_timeout_s: float = 0.3
    reset_timeout_s: float = 5.0
    reconnect_base_delay_s: float = 2.0
    reconnect_max_delay_s: float = 60.0
    charge_current_deadband_a: float = 0.5
    stationary_speed_kmh: float = 1.0
    dc_power_threshold_kw: float = 11.0
    classification_min_power_kw: float = 1.0
    start_confirm_samples: int = 2
    stop_confirm_samples: int = 2
    min_session_energy_kwh: float = 0.05
    min_session_soc_gain_pct: float = 1.0
    min_session_duration_s: float = 300.0
    state_dir: str = "/data"
    log_level: str = "INFO"

    @field_validator(
        "poll_interval_s",
        "low_priority_interval_s",
        "command_timeout_s",
        "idle_timeout_s",
        "reset_timeout_s",
        "reconnect_base_delay_s",
    )
    @classmethod
    def intervals_must_be_positive(cls, v: float) -> float:
        """Reject zero or negative timing values."""
        if v <= 0:
            raise ValueError("intervals and timeouts must be > 0")
        return v

    @field_validator("inter_command_delay_ms")
    @classmethod
    def inter_command_delay_must_be_non_negative(cls, v: int) -> int:
        """Validate inter-command delay is non-negative."""
        if v < 0:
            raise ValueError("INTER_COMMAND_DELAY_MS must be >= 0")
        return v

    @field_validator("start_confirm_samples", "stop_confirm_samples")
    @classmethod
    def confirm_samples_must_be_positive(cls, v: int) -> int:
        """Debounce needs at least one sample."""
        if v < 1:
            raise ValueError("confirmation sample counts must be >= 1")
        return v

    @field_validator("rfcomm_channel")
    @classmethod
    def rfcomm_channel_must_be_valid(cls, v: int) -> int:
        """Validate RFCOMM channel is in range (1-30)."""
        if v < 1 or v > 30:
            raise ValueError("RFCOMM_CHANNEL must be between 1 and 30")
        return v

    @model_validator(mode="after")
    def _check_ordering(self) -> "EngineSettings":
        """Low tier must not poll faster than high tier; cap >= base."""
        if self.low_priority_interval_s < self.poll_interval_s:
            raise ValueError("LOW_PRIORITY_INTERVAL_S must be >= POLL_INTERVAL_S")
        if self.reconnect_max_delay_s < self.reconnect_base_delay_s:
            raise ValueError("RECONNECT_MAX_DELAY_S must be >= RECONNECT_BASE_DELAY_S")
        return self

    @property
    def address_file(self) -> str:
        """Path of the last-known adapter address file."""
        return os.path.join(self.state_dir, "last_adapter.txt")

    @property
    def sessions_db(self) -> str:
        """Path of the finalized-session SQLite database."""
        return os.path.join(self.state_dir, "sessions.db")

    @property
    def health_file(self) -> str:
        """Path of the health JSON file."""
        return os.path.join(self.state_dir, "health.json")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
