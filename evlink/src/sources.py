"""
Collaborator sources consumed by the engine.

The engine only depends on two small protocols:

- :class:`ProfileSource` resolves a profile name to a
  :class:`VehicleProfile`.
- :class:`AddressSource` loads and saves the last known adapter address
  for reconnect-on-start.

Storage fallbacks and remote fetching are the caller's concern; the
implementations here cover the bundled table, a JSON file and a plain
text address file.

CHANGELOG:
- 2026-10-18: Unreadable address file is treated as no address
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from evlink.src.catalog import VehicleProfile
from evlink.src.errors import ProfileInvalid
from evlink.src.profiles import BUNDLED_PROFILES

logger = logging.getLogger(__name__)


class ProfileSource(Protocol):
    def get(self, name: str) -> VehicleProfile:
        """Return the profile called *name*.

        Raises:
            ProfileInvalid: Unknown name or malformed definition.
        """
        ...


class AddressSource(Protocol):
    def load(self) -> str | None: ...

    def save(self, address: str) -> None: ...


# ---------------------------------------------------------------------------
# Profile sources
# ---------------------------------------------------------------------------


class BundledProfileSource:
    """Profiles shipped in :mod:`evlink.src.profiles`."""

    def __init__(self, profiles: dict[str, VehicleProfile] | None = None) -> None:
        self._profiles = BUNDLED_PROFILES if profiles is None else profiles

    def names(self) -> list[str]:
        return sorted(self._profiles)

    def get(self, name: str) -> VehicleProfile:
        try:
            return self._profiles[name]
        except KeyError:
            raise ProfileInvalid(
                f"unknown vehicle profile {name!r}; bundled: {self.names()}"
            ) from None


class JsonFileProfileSource:
    """A single profile definition stored as JSON.

    The file holds one :class:`VehicleProfile` in its mapping form.  The
    requested name must match the profile's own name.

    Args:
        path: JSON file path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def get(self, name: str) -> VehicleProfile:
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ProfileInvalid(f"cannot read profile file {self.path}: {exc}") from exc
        try:
            profile = VehicleProfile.model_validate_json(text)
        except ValidationError as exc:
            raise ProfileInvalid(f"invalid profile file {self.path}: {exc}") from exc
        if name and profile.name != name:
            raise ProfileInvalid(
                f"profile file {self.path} defines {profile.name!r}, not {name!r}"
            )
        return profile


# ---------------------------------------------------------------------------
# Address source
# ---------------------------------------------------------------------------


class FileAddressSource:
    """Last known adapter address kept in a one-line text file.

    Args:
        path: Text file path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> str | None:
        try:
            address = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError):
            logger.warning("Cannot read adapter address from %s", self.path, exc_info=True)
            return None
        return address or None

    def save(self, address: str) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(address + "\n", encoding="utf-8")
        except OSError:
            logger.warning("Failed to persist adapter address to %s", self.path, exc_info=True)
