"""
History ledger ring buffer tests.
"""

from datetime import datetime, timedelta

import pytest

from backend.app.domain.tracking.history import HistoryFix, HistoryLedger


def _fix(n, start=datetime(2024, 1, 1)):
    return HistoryFix(latitude=n * 0.0001, longitude=80.0, recorded_at=start + timedelta(seconds=n))


def test_window_returns_most_recent_oldest_first():
    ledger = HistoryLedger(capacity=10, fixes=[_fix(n) for n in range(5)])
    assert ledger.window(3) == [_fix(2), _fix(3), _fix(4)]
    assert ledger.window(100) == [_fix(n) for n in range(5)]
    assert ledger.window(0) == []


def test_initial_fixes_beyond_capacity_are_trimmed():
    ledger = HistoryLedger(capacity=3, fixes=[_fix(n) for n in range(5)])
    assert list(ledger) == [_fix(2), _fix(3), _fix(4)]


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        HistoryLedger(capacity=0)
