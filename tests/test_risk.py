import math

import pytest

from engine.ledger import make_account, open_position
from engine.models import RejectReason
from risk.manager import MarginPolicy, RiskManager, margin_snapshot, sanitize_leverage

NOW = 1_700_000_000_000


def test_sanitize_leverage():
    assert sanitize_leverage(10) == 5
    assert sanitize_leverage(2.6) == 3
    assert sanitize_leverage(2.5) == 3
    assert sanitize_leverage(1.5) == 2
    assert sanitize_leverage(0.4) == 1
    assert sanitize_leverage(float("nan")) == 1
    assert sanitize_leverage(None) == 1
    assert sanitize_leverage(8, MarginPolicy(max_leverage=10)) == 8


def test_margin_level_infinite_without_positions():
    snap = margin_snapshot(make_account(500.0, NOW), 100.0)
    assert snap.used_margin_usd == 0.0
    assert math.isinf(snap.margin_level_pct)


def test_margin_snapshot_marks_only_matching_symbol():
    acc = open_position(make_account(10000.0, NOW), "BTCUSDT", "long", 0.1, 50000.0, NOW).account

    same = margin_snapshot(acc, 40000.0, "BTCUSDT")
    other = margin_snapshot(acc, 40000.0, "ETHUSDT")

    assert same.equity_usd == pytest.approx(9000.0)
    assert same.margin_level_pct == pytest.approx(180.0)
    assert other.equity_usd == pytest.approx(10000.0)


def test_evaluate_open_rejects_short_balance():
    rm = RiskManager()
    decision = rm.evaluate_open(make_account(100.0, NOW), 150.0, 10.0, "BTCUSDT")
    assert not decision.allowed
    assert decision.reason == RejectReason.INSUFFICIENT_BALANCE


def test_needs_liquidation_uses_policy_level():
    acc = open_position(make_account(1000.0, NOW), "BTCUSDT", "long", 0.1, 50000.0, NOW, leverage=5).account

    assert not RiskManager().needs_liquidation(acc, 45000.0, "BTCUSDT")
    assert RiskManager(MarginPolicy(liquidation_level_pct=60.0)).needs_liquidation(acc, 45000.0, "BTCUSDT")
