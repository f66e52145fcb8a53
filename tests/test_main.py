#!/usr/bin/env python3
"""
Test suite for the sync command-line trigger: argument parsing, window
resolution and the printed summary.
"""
import sys
from datetime import timedelta
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from core.models import ReconcileResult, StoreSyncResult, SyncSummary
from services.sync.engine import SyncSettings
from services.sync.main import build_parser, format_summary, main, resolve_window

SETTINGS = SyncSettings(window_hours=6)


def parse(*argv):
    return build_parser().parse_args(list(argv))


def test_explicit_epoch_window():
    window = resolve_window(parse("--all", "--from", "1704067200", "--to", "1704153600"), SETTINGS)
    assert (window.start_epoch, window.end_epoch) == (1704067200, 1704153600)


def test_half_open_epoch_range_is_rejected():
    with pytest.raises(ValueError):
        resolve_window(parse("--all", "--from", "1704067200"), SETTINGS)


def test_preset_and_default_window():
    week = resolve_window(parse("--all", "--last", "week"), SETTINGS)
    default = resolve_window(parse("--store", "123"), SETTINGS)

    assert week.end - week.start == timedelta(days=7)
    assert default.end - default.start == timedelta(hours=6)


def test_targets_are_mutually_exclusive():
    with pytest.raises(SystemExit):
        parse("--all", "--store", "123")


def test_a_target_is_required():
    with pytest.raises(SystemExit):
        main([])


def test_format_summary():
    print("\n=== Test: Summary Output ===")
    ok = StoreSyncResult(
        store_id="99887766",
        marketplace="mercado_livre",
        store_name="Loja Centro",
        discovered=3,
        inserted=2,
        financials=ReconcileResult(total=1, inserted=1),
    )
    broken = StoreSyncResult(
        store_id="123456",
        marketplace="shopee",
        success=False,
        failure_kind="auth",
        errors=[f"error {i}" for i in range(7)],
    )
    summary = SyncSummary(correlation_id="abcd1234", per_store=[ok, broken], cancelled=True)

    text = format_summary(summary)

    assert "Correlation ID:     abcd1234" in text
    assert "1/2 succeeded" in text
    assert "[mercado_livre] Loja Centro: ok" in text
    assert "[shopee] 123456: FAILED (auth)" in text
    assert "financials: 1 inserted" in text
    assert "Cancelled:          yes" in text
    assert "! ... 2 more" in text
    print(text)
