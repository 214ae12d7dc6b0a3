"""Unit tests for the core layer.

Covers:
- :class:`~listingstore.core.models.Record` coercions, aliases, and row helpers.
- :mod:`~listingstore.core.keys` key derivation and shard routing.
- :class:`~listingstore.core.settings.Settings` loading, validation, and helpers.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

import pytest
from pydantic import ValidationError

from listingstore.core.exceptions import ConfigError
from listingstore.core.keys import (
    FALLBACK_SHARD_KEY,
    composite_key,
    discriminator,
    key_parts,
    primary_key,
    shard_key,
)
from listingstore.core.models import (
    COORDINATE_SENTINEL,
    STORE_COLUMNS,
    Classification,
    Record,
)
from listingstore.core.settings import Settings, load_settings

logger = logging.getLogger(__name__)


# ===========================================================================
# Record
# ===========================================================================


class TestRecord:
    def test_defaults(self) -> None:
        record = Record()
        assert record.address == ""
        assert record.latitude == COORDINATE_SENTINEL
        assert record.longitude == COORDINATE_SENTINEL
        assert not record.is_well_formed

    def test_accepts_upper_case_aliases(self) -> None:
        record = Record.model_validate({"ADDRESS": "1 Main St", "POSTAL": "M5V3A8", "PRICE": "$1"})
        assert record.address == "1 Main St"
        assert record.postal == "M5V3A8"
        assert record.price == "$1"

    def test_accepts_field_names(self, make_record: Callable[..., Record]) -> None:
        record = make_record(city="Ottawa")
        assert record.city == "Ottawa"

    def test_none_and_numbers_become_text(self) -> None:
        record = Record.model_validate({"ADDRESS": None, "POSTAL": 12345, "LATITUDE": 43.5})
        assert record.address == ""
        assert record.postal == "12345"
        assert record.latitude == "43.5"

    def test_blank_coordinates_become_sentinel(self) -> None:
        record = Record(latitude="  ", longitude=None)  # type: ignore[arg-type]
        assert record.latitude == COORDINATE_SENTINEL
        assert record.longitude == COORDINATE_SENTINEL

    def test_frozen(self, make_record: Callable[..., Record]) -> None:
        record = make_record()
        with pytest.raises(ValidationError):
            record.address = "2 Other St"  # type: ignore[misc]

    @pytest.mark.parametrize(
        ("address", "postal", "expected"),
        [
            ("1 Main St", "M5V3A8", True),
            ("   ", "M5V3A8", False),
            ("1 Main St", "", False),
        ],
    )
    def test_is_well_formed(
        self,
        make_record: Callable[..., Record],
        address: str,
        postal: str,
        expected: bool,
    ) -> None:
        assert make_record(address=address, postal=postal).is_well_formed is expected

    def test_as_row_follows_store_columns(self, make_record: Callable[..., Record]) -> None:
        row = make_record().as_row()
        assert len(row) == len(STORE_COLUMNS)
        assert row[STORE_COLUMNS.index("ADDRESS")] == "1 Main St"
        assert row[STORE_COLUMNS.index("PRICE")] == "$800,000"

    def test_from_row_pads_short_rows(self) -> None:
        record = Record.from_row(("2025-01-01", "1 Main St", "Toronto"))
        assert record.address == "1 Main St"
        assert record.postal == ""
        assert record.longitude == COORDINATE_SENTINEL

    def test_from_row_ignores_extra_cells(self, make_record: Callable[..., Record]) -> None:
        original = make_record()
        assert Record.from_row(original.as_row() + ("junk",)) == original

    def test_model_dump_by_alias_uses_column_names(self, make_record: Callable[..., Record]) -> None:
        dumped = make_record().model_dump(by_alias=True)
        assert tuple(dumped) == STORE_COLUMNS


def test_classification_is_new() -> None:
    assert Classification.ACCEPTED.is_new
    assert Classification.VARIANT.is_new
    assert not Classification.EXACT_DUPLICATE.is_new


# ===========================================================================
# Keys
# ===========================================================================


class TestKeys:
    def test_primary_key_normalises(self, make_record: Callable[..., Record]) -> None:
        record = make_record(address=" 1 main st ", postal="m5v3a8")
        assert primary_key(record) == "1 MAIN ST-M5V3A8"

    def test_discriminator(self, make_record: Callable[..., Record]) -> None:
        assert discriminator(make_record(agent="smith")) == "$800,000-SMITH"

    def test_composite_key(self, make_record: Callable[..., Record]) -> None:
        assert composite_key(make_record()) == "1 MAIN ST-M5V3A8-$800,000-SMITH"

    def test_case_differences_share_keys(self, make_record: Callable[..., Record]) -> None:
        a = make_record(address="1 Main St", agent="Smith")
        b = make_record(address="1 MAIN ST", agent="SMITH")
        assert composite_key(a) == composite_key(b)

    def test_key_parts(self, make_record: Callable[..., Record]) -> None:
        record = make_record(address=" 1 main st", price="$1-X", agent="y")
        assert key_parts(record) == ("1 MAIN ST", "M5V3A8", "$1-X", "Y")
        assert key_parts(record) != key_parts(make_record(address="1 Main St", price="$1", agent="X-Y"))

    @pytest.mark.parametrize(
        ("postal", "expected"),
        [
            ("M5V3A8", "M5"),
            ("m5v 3a8", "M5"),
            ("  L4Z1A1", "L4"),
            ("9", FALLBACK_SHARD_KEY),
            ("", FALLBACK_SHARD_KEY),
            ("#1234", FALLBACK_SHARD_KEY),
        ],
    )
    def test_shard_key(self, make_record: Callable[..., Record], postal: str, expected: str) -> None:
        assert shard_key(make_record(postal=postal)) == expected


# ===========================================================================
# Settings
# ===========================================================================


class TestSettings:
    def test_defaults(self, clean_env: None) -> None:
        settings = Settings()
        assert settings.store_path == "master-listings.xlsx"
        assert settings.spill_buffer_threshold == 50
        assert settings.shard_max_rows == 50_000
        assert settings.store_safe_max_rows == 1_000_000
        assert settings.health_invalid_row_ratio == pytest.approx(0.10)
        assert settings.health_empty_row_ratio == pytest.approx(0.05)
        assert settings.health_capacity_warning_ratio == pytest.approx(0.80)
        assert settings.spill_prefix == "temp-scrape-"
        assert settings.rebuild_on_startup is True

    def test_reads_environment(self, clean_env: None, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SHARD_MAX_ROWS", "10")
        monkeypatch.setenv("SPILL_BUFFER_THRESHOLD", "5")
        monkeypatch.setenv("REBUILD_ON_STARTUP", "false")
        settings = Settings()
        assert settings.shard_max_rows == 10
        assert settings.spill_buffer_threshold == 5
        assert settings.rebuild_on_startup is False

    def test_rejects_non_xlsx_store(self, clean_env: None) -> None:
        with pytest.raises(ValidationError, match="xlsx"):
            Settings(store_path="listings.csv")

    def test_rejects_shard_larger_than_store(self, clean_env: None) -> None:
        with pytest.raises(ValidationError, match="shard_max_rows"):
            Settings(shard_max_rows=20, store_safe_max_rows=10)

    def test_rejects_zero_threshold(self, clean_env: None) -> None:
        with pytest.raises(ValidationError):
            Settings(spill_buffer_threshold=0)

    def test_log_level_normalised(self, clean_env: None) -> None:
        assert Settings(log_level="debug").log_level == "DEBUG"

    def test_log_format_rejected(self, clean_env: None) -> None:
        with pytest.raises(ValidationError):
            Settings(log_format="xml")

    def test_resolved_paths_are_absolute(self, clean_env: None) -> None:
        settings = Settings(store_path="data/store.xlsx")
        assert settings.store_path_resolved.is_absolute()
        assert settings.store_path_resolved.name == "store.xlsx"
        assert isinstance(settings.spill_dir_resolved, Path)

    def test_load_settings_wraps_validation_errors(self, clean_env: None) -> None:
        with pytest.raises(ConfigError, match="store_path"):
            load_settings(store_path="listings.csv")
        assert load_settings(shard_max_rows=10).shard_max_rows == 10
