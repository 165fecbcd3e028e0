"""Tests for ticker symbol normalization."""

from __future__ import annotations

import logging

import pytest

from Stock_Screener.services.symbols import (
    NATIVE_SUFFIXES,
    SUFFIX_MAP,
    is_native_suffix,
    normalize_symbol,
    split_symbol,
    to_secondary_symbol,
)


class TestSplitSymbol:
    """Tests for split_symbol()."""

    def test_no_suffix(self) -> None:
        assert split_symbol("AAPL") == ("AAPL", None)

    def test_splits_at_first_dot(self) -> None:
        assert split_symbol("BRK.B.TO") == ("BRK", "B.TO")

    def test_strips_whitespace(self) -> None:
        assert split_symbol("  SHOP.TO ") == ("SHOP", "TO")


class TestNormalizeSymbol:
    """Tests for normalize_symbol()."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("AAPL.LON", "AAPL.L"),
            ("SAP.STU", "SAP.DE"),
            ("BMW.FRK", "BMW.F"),
            ("XYZ.OTC", "XYZ"),
            ("ABC.PNK", "ABC"),
            ("ABC.TRV", "ABC.V"),
            ("SHOP.TRT", "SHOP.TO"),
            ("VOD.L", "VOD.L"),
            ("SHOP.to", "SHOP.TO"),
            ("0700.HK", "0700.HK"),
            ("AAPL", "AAPL"),
        ],
    )
    def test_known_mappings(self, raw: str, expected: str) -> None:
        assert normalize_symbol(raw) == expected

    def test_unknown_suffix_passes_through_with_warning(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.WARNING, logger="Stock_Screener.services.symbols"):
            assert normalize_symbol("ABC.ZZZ") == "ABC.ZZZ"
        assert "Unknown exchange suffix 'ZZZ'" in caplog.text

    @pytest.mark.parametrize(
        "raw",
        ["AAPL.LON", "XYZ.OTC", "SHOP.to", "ABC.ZZZ", "AAPL", "SAP.STU", "  VOD.l  "],
    )
    def test_idempotent(self, raw: str) -> None:
        once = normalize_symbol(raw)
        assert normalize_symbol(once) == once

    def test_every_mapped_suffix_normalizes_to_a_native_one(self) -> None:
        for source, target in SUFFIX_MAP.items():
            normalized = normalize_symbol(f"TEST.{source}")
            if target:
                assert is_native_suffix(normalized.split(".", 1)[1])
            else:
                assert normalized == "TEST"

    def test_native_suffix_lookup_is_case_insensitive(self) -> None:
        assert is_native_suffix("to")
        assert "TO" in NATIVE_SUFFIXES
        assert not is_native_suffix("LON")


class TestToSecondarySymbol:
    """Tests for to_secondary_symbol()."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("VOD.L", "VOD.LON"),
            ("SHOP.TO", "SHOP.TRT"),
            ("SAP.STU", "SAP.DEX"),
            ("AAPL", "AAPL"),
            ("XYZ.OTC", "XYZ"),
            ("0700.HK", "0700.HK"),
        ],
    )
    def test_translation(self, raw: str, expected: str) -> None:
        assert to_secondary_symbol(raw) == expected

    @pytest.mark.parametrize("symbol", ["ABC.V", "SHOP.TO", "VOD.L"])
    def test_secondary_venue_normalizes_back(self, symbol: str) -> None:
        assert normalize_symbol(to_secondary_symbol(symbol)) == symbol
