"""
Unit tests for the parameter catalog, bundled profiles and profile sources.

Tests verify:
- Descriptor and segment validation (hex request codes, CAN headers).
- Response headers are derived from request headers when omitted.
- The catalog orders Segment A before Segment B, stably.
- load_profile wraps validation failures in ProfileInvalid.
- Bundled profiles are valid and use the expected addressing.
- JSON file and bundled profile sources, and the address file (unreadable files load as no address).

CHANGELOG:
- 2026-10-18: Unreadable address files, in-segment order, request code fixture name
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
from conftest import make_test_profile
from evlink.src.catalog import (
    ParameterDescriptor,
    SegmentDef,
    VehicleProfile,
    load_profile,
    response_header_for,
)
from evlink.src.decoder import ByteValue, MultiFrameArray, Uint16
from evlink.src.errors import ProfileInvalid
from evlink.src.models import BusSegment, Priority
from evlink.src.profiles import BUNDLED_PROFILES, GENERIC_OBD2, XPENG_G6
from evlink.src.sources import (
    BundledProfileSource,
    FileAddressSource,
    JsonFileProfileSource,
)
from pydantic import ValidationError

# ---------------------------------------------------------------------------
# Segment addressing
# ---------------------------------------------------------------------------


class TestSegmentDef:
    """CAN header validation and derivation."""

    @pytest.mark.parametrize(
        ("request_header", "expected"),
        [("7E0", "7E8"), ("7E4", "7EC"), ("704", "784"), ("7E5", "7ED")],
    )
    def test_response_header_derivation(self, request_header: str, expected: str) -> None:
        """OBD-II ids answer on +8, vendor ids on +0x80."""
        assert response_header_for(request_header) == expected

    def test_response_header_derived_when_omitted(self) -> None:
        """An omitted response header is filled in."""
        seg = SegmentDef(request_header="704")

        assert seg.response_header == "784"

    def test_headers_are_upper_cased(self) -> None:
        """Lower-case input is normalized."""
        seg = SegmentDef(request_header="7e0", response_header="7e8")

        assert seg.request_header == "7E0"
        assert seg.response_header == "7E8"

    def test_invalid_header_rejected(self) -> None:
        """Headers must be exactly three hex digits."""
        with pytest.raises(ValidationError):
            SegmentDef(request_header="7G0")

    def test_switch_commands(self) -> None:
        """Segment switch is ATSH, ATCRA, ATFCSH."""
        seg = SegmentDef(request_header="704")

        assert seg.switch_commands() == ("ATSH704", "ATCRA784", "ATFCSH704")


# ---------------------------------------------------------------------------
# Descriptors and profiles
# ---------------------------------------------------------------------------


class TestParameterDescriptor:
    """Descriptor field validation."""

    def test_request_normalized(self) -> None:
        """Spaces are removed and hex upper-cased."""
        desc = ParameterDescriptor(name="X", request="22 11 0a", formula=ByteValue(index=3))

        assert desc.request == "22110A"

    @pytest.mark.parametrize("code", ["22", "2211X9", "221"])
    def test_bad_request_rejected(self, code: str) -> None:
        """Requests are whole hex bytes, service plus identifier."""
        with pytest.raises(ValidationError):
            ParameterDescriptor(name="X", request=code, formula=ByteValue(index=3))

    def test_inverted_range_rejected(self) -> None:
        """valid_range min must not exceed max."""
        with pytest.raises(ValidationError):
            ParameterDescriptor(
                name="X", request="221109", formula=ByteValue(index=3), valid_range=(10, 0)
            )

    def test_formula_from_mapping(self) -> None:
        """Formulas validate from their tagged mapping form."""
        desc = ParameterDescriptor.model_validate(
            {
                "name": "CELLS",
                "request": "221122",
                "formula": {"kind": "array", "start": 3, "scale": 0.02, "offset": 2.0},
            }
        )

        assert isinstance(desc.formula, MultiFrameArray)


class TestVehicleProfile:
    """Whole-table validation."""

    def test_duplicate_names_rejected(self) -> None:
        """Parameter names are unique snapshot keys."""
        dup = ParameterDescriptor(name="SOC", request="221109", formula=Uint16(index=3))

        with pytest.raises(ValidationError, match="duplicate"):
            make_test_profile(parameters=(dup, dup))

    def test_undefined_segment_rejected(self) -> None:
        """Every parameter's segment needs addressing."""
        param = ParameterDescriptor(
            name="SPEED", request="220104", segment=BusSegment.B, formula=Uint16(index=3)
        )

        with pytest.raises(ValidationError, match="undefined segment"):
            make_test_profile(
                segments={BusSegment.A: SegmentDef(request_header="704")},
                parameters=(param,),
            )

    def test_empty_table_rejected(self) -> None:
        """A profile polls at least one parameter."""
        with pytest.raises(ValidationError, match="no parameters"):
            make_test_profile(parameters=())

    def test_non_at_init_command_rejected(self) -> None:
        """Profile init is adapter configuration only."""
        with pytest.raises(ValidationError, match="AT command"):
            make_test_profile(init_commands=("221109",))


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class TestParameterCatalog:
    """Catalog ordering and lookup."""

    def test_segment_a_block_precedes_segment_b(self) -> None:
        """SPEED is declared first but read after every Segment A parameter."""
        catalog = load_profile(make_test_profile())

        names = [p.name for p in catalog]

        assert names == ["SOC", "HV_V", "HV_A", "HV_T_MIN", "SPEED"]
        assert catalog.segments_in_order() == [BusSegment.A, BusSegment.B]

    def test_priority_does_not_reorder_within_a_segment(self) -> None:
        """A low-priority parameter declared first stays first in its segment."""
        base = make_test_profile()
        low_first = (base.parameters[-1], *base.parameters[:-1])

        catalog = load_profile(make_test_profile(parameters=low_first))

        names = [p.name for p in catalog]
        assert names == ["HV_T_MIN", "SOC", "HV_V", "HV_A", "SPEED"]
        assert catalog.get("HV_T_MIN").priority is Priority.LOW

    def test_lookup_and_len(self) -> None:
        """Parameters are addressable by name."""
        catalog = load_profile(make_test_profile())

        assert len(catalog) == 5
        assert catalog.get("HV_T_MIN").priority is Priority.LOW
        assert catalog.get("MISSING") is None
        assert catalog.segment(BusSegment.A).response_header == "784"

    def test_load_from_mapping(self) -> None:
        """Mapping input (parsed JSON) is validated into a catalog."""
        data = json.loads(make_test_profile().model_dump_json())

        catalog = load_profile(data)

        assert catalog.name == "Test EV"
        assert catalog.init_commands == ("ATSP6",)

    def test_malformed_mapping_raises_profile_invalid(self) -> None:
        """Validation failures surface as ProfileInvalid."""
        with pytest.raises(ProfileInvalid):
            load_profile({"name": "Broken", "segments": {}, "parameters": []})

    def test_every_load_builds_a_new_catalog(self) -> None:
        """Loading never merges with a previous catalog."""
        profile = make_test_profile()

        assert load_profile(profile) is not load_profile(profile)


# ---------------------------------------------------------------------------
# Bundled profiles
# ---------------------------------------------------------------------------


class TestBundledProfiles:
    """The shipped descriptor tables."""

    def test_bundled_profiles_keyed_by_name(self) -> None:
        """Both profiles are registered under their own names."""
        assert BUNDLED_PROFILES["XPENG G6"] is XPENG_G6
        assert BUNDLED_PROFILES["Generic OBD-II"] is GENERIC_OBD2

    def test_g6_addressing(self) -> None:
        """BMS on 704/784, VCU on 7E0/7E8."""
        catalog = load_profile(XPENG_G6)

        assert catalog.segment(BusSegment.A).switch_commands() == (
            "ATSH704",
            "ATCRA784",
            "ATFCSH704",
        )
        assert catalog.segment(BusSegment.B).response_header == "7E8"
        assert catalog.parameters[-1].segment is BusSegment.B

    def test_g6_has_both_priority_tiers(self) -> None:
        """SOC is high priority, SOH low."""
        assert XPENG_G6.parameters[0].name == "SOC"
        catalog = load_profile(XPENG_G6)
        assert catalog.get("SOC").priority is Priority.HIGH
        assert catalog.get("SOH").priority is Priority.LOW

    def test_generic_profile_uses_mode_01(self) -> None:
        """Generic OBD-II reads mode 01 PIDs from the engine ECU."""
        catalog = load_profile(GENERIC_OBD2)

        assert all(p.request.startswith("01") for p in catalog)
        assert catalog.segment(BusSegment.A).response_header == "7E8"


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


class TestProfileSources:
    """Bundled and JSON-file profile resolution."""

    def test_bundled_source_unknown_name(self) -> None:
        """Unknown names raise ProfileInvalid listing what exists."""
        with pytest.raises(ProfileInvalid, match="XPENG G6"):
            BundledProfileSource().get("Tesla Model 3")

    def test_json_source_round_trips_profile(self, tmp_path: Path) -> None:
        """A profile dumped to JSON loads back equal."""
        path = tmp_path / "profile.json"
        path.write_text(make_test_profile().model_dump_json())

        profile = JsonFileProfileSource(path).get("Test EV")

        assert profile == make_test_profile()

    def test_json_source_name_mismatch(self, tmp_path: Path) -> None:
        """The file must define the requested profile."""
        path = tmp_path / "profile.json"
        path.write_text(make_test_profile().model_dump_json())

        with pytest.raises(ProfileInvalid, match="not 'Other'"):
            JsonFileProfileSource(path).get("Other")

    def test_json_source_missing_file(self, tmp_path: Path) -> None:
        """An unreadable file is ProfileInvalid, not OSError."""
        with pytest.raises(ProfileInvalid, match="cannot read"):
            JsonFileProfileSource(tmp_path / "nope.json").get("Test EV")

    def test_json_source_invalid_content(self, tmp_path: Path) -> None:
        """Malformed JSON content is ProfileInvalid."""
        path = tmp_path / "profile.json"
        path.write_text('{"name": "Bad"}')

        with pytest.raises(ProfileInvalid, match="invalid profile file"):
            JsonFileProfileSource(path).get("Bad")


class TestFileAddressSource:
    """Last known adapter address persistence."""

    def test_load_missing_returns_none(self, tmp_path: Path) -> None:
        """No file yet means no remembered address."""
        assert FileAddressSource(tmp_path / "addr.txt").load() is None

    def test_save_then_load(self, tmp_path: Path) -> None:
        """Saved address is read back, parent dirs created."""
        source = FileAddressSource(tmp_path / "state" / "addr.txt")

        source.save("AA:BB:CC:DD:EE:FF")

        assert source.load() == "AA:BB:CC:DD:EE:FF"

    def test_blank_file_returns_none(self, tmp_path: Path) -> None:
        """A blank file is treated as no address."""
        path = tmp_path / "addr.txt"
        path.write_text("\n")

        assert FileAddressSource(path).load() is None

    def test_directory_path_returns_none(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        """An unreadable path is logged and treated as no address."""
        path = tmp_path / "addr.txt"
        path.mkdir()

        with caplog.at_level(logging.WARNING):
            assert FileAddressSource(path).load() is None

        assert "Cannot read adapter address" in caplog.text

    def test_undecodable_file_returns_none(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Bytes that are not UTF-8 are logged and treated as no address."""
        path = tmp_path / "addr.txt"
        path.write_bytes(b"\xff\xfe\x80")

        with caplog.at_level(logging.WARNING):
            assert FileAddressSource(path).load() is None

        assert "Cannot read adapter address" in caplog.text
