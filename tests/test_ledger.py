import pytest

from engine.ledger import (
    EVENT_RETENTION,
    ORDER_HISTORY_LIMIT,
    cancel_order,
    close_position_manually,
    fill_order,
    make_account,
    modify_exit_order,
    open_position,
    place_entry_order,
    place_exit_order,
    set_slippage_config,
)
from engine.models import RejectReason, SlippageConfig

NOW = 1_700_000_000_000


def _long(account, amount=0.1, price=50000.0, leverage=1):
    t = open_position(account, "BTCUSDT", "long", amount, price, NOW, leverage)
    assert t.ok
    return t.account, t.position_id


def test_open_long_reserves_margin(account):
    t = open_position(account, "BTCUSDT", "long", 0.1, 50000.0, NOW)

    assert t.ok
    assert t.account.usd == pytest.approx(5000.0)
    assert len(t.account.open_positions) == 1
    pos = t.account.open_positions[0]
    assert pos.amount == 0.1
    assert pos.entry_price == 50000.0
    assert pos.margin_used_usd == pytest.approx(5000.0)
    assert account.usd == 10000.0
    assert [e.kind for e in t.events] == ["position_opened"]


def test_open_rejected_when_usd_short(account):
    t = open_position(account, "BTCUSDT", "long", 1.0, 50000.0, NOW)

    assert t.rejection.reason == RejectReason.INSUFFICIENT_BALANCE
    assert [e.kind for e in t.events] == ["error"]
    assert t.account.execution_events[0] == t.events[0]
    assert t.account.usd == account.usd
    assert t.account.open_positions == ()


def test_open_rejected_when_margin_level_would_drop(account):
    acc, _ = _long(account)
    # a second open on the same symbol marks the first one at 30000
    t = open_position(acc, "BTCUSDT", "long", 0.15, 30000.0, NOW + 1)

    assert t.rejection.reason == RejectReason.MARGIN_LEVEL_TOO_LOW
    assert t.account.usd == acc.usd
    assert t.account.open_positions == acc.open_positions
    assert t.account.execution_events[0].kind == "error"


def test_leverage_is_clamped(account):
    t = open_position(account, "BTCUSDT", "long", 0.1, 50000.0, NOW, leverage=10)
    assert t.account.open_positions[0].leverage == 5
    assert t.account.usd == pytest.approx(9000.0)

    t = open_position(account, "BTCUSDT", "short", 0.1, 50000.0, NOW, leverage=0)
    assert t.account.open_positions[0].leverage == 1

    t = open_position(account, "BTCUSDT", "long", 0.1, 50000.0, NOW, leverage=2.5)
    assert t.account.open_positions[0].leverage == 3
    assert t.account.open_positions[0].margin_used_usd == pytest.approx(5000.0 / 3)


def test_open_rejects_non_finite(account):
    t = open_position(account, "BTCUSDT", "long", float("inf"), 50000.0, NOW)
    assert t.rejection.reason == RejectReason.NON_FINITE_INPUT
    assert t.account is account


def test_exit_order_validation(account):
    acc, pid = _long(account)

    assert place_exit_order(acc, "pos_missing", "stop-loss", NOW, price=49000.0).rejection.reason == RejectReason.UNKNOWN_POSITION
    assert place_exit_order(acc, pid, "stop-loss", NOW, price=49000.0, close_percent=0).rejection.reason == RejectReason.INVALID_PERCENT
    assert place_exit_order(acc, pid, "stop-loss", NOW, price=49000.0, close_percent=150).rejection.reason == RejectReason.INVALID_PERCENT
    assert place_exit_order(acc, pid, "stop-loss", NOW, price=-1.0).rejection.reason == RejectReason.INVALID_PARAMETER
    assert place_exit_order(acc, pid, "stop-loss-limit", NOW, price=49000.0).rejection.reason == RejectReason.INVALID_PARAMETER
    assert place_exit_order(acc, pid, "market", NOW, price=49000.0).rejection.reason == RejectReason.INVALID_PARAMETER
    trailing = place_exit_order(acc, pid, "trailing-stop", NOW, trailing_offset=120.0, trailing_offset_unit="percent")
    assert trailing.rejection.reason == RejectReason.INVALID_PARAMETER
    nan = place_exit_order(acc, pid, "take-profit", NOW, price=float("nan"))
    assert nan.rejection.reason == RejectReason.NON_FINITE_INPUT
    assert nan.account is acc


def test_exit_order_side_follows_position(account):
    acc, long_id = _long(account)
    t = open_position(acc, "ETHUSDT", "short", 1.0, 2000.0, NOW)
    acc, short_id = t.account, t.position_id

    sl_long = place_exit_order(acc, long_id, "stop-loss", NOW, price=49000.0)
    sl_short = place_exit_order(sl_long.account, short_id, "stop-loss", NOW, price=2100.0)

    assert sl_long.account.find_open_order(sl_long.order_id).side == "sell"
    assert sl_short.account.find_open_order(sl_short.order_id).side == "buy"


def test_wrong_side_stop_is_created_with_warning(account):
    acc, pid = _long(account)
    t = place_exit_order(acc, pid, "stop-loss", NOW, price=51000.0, market_price=50000.0)

    assert t.ok
    order = t.account.find_open_order(t.order_id)
    assert order.warning
    assert t.warnings == (order.warning,)
    assert "warning" in [e.kind for e in t.events]


def test_partial_then_full_close_records_one_history_item(account):
    acc, pid = _long(account)
    sl = place_exit_order(acc, pid, "stop-loss", NOW, price=49000.0, close_percent=50.0)

    filled = fill_order(sl.account, sl.order_id, 48900.0, NOW + 1)
    acc = filled.account
    assert acc.usd == pytest.approx(5000.0 + 0.05 * 48900.0)
    assert acc.open_positions[0].amount == pytest.approx(0.05)
    assert acc.position_history == ()

    closed = close_position_manually(acc, pid, 1.0, 51000.0, NOW + 2)
    acc = closed.account
    assert acc.open_positions == ()
    assert acc.usd == pytest.approx(5000.0 + 2445.0 + 2550.0)
    assert len(acc.position_history) == 1
    item = acc.position_history[0]
    assert item.amount == pytest.approx(0.1)
    assert item.exit_price == 51000.0
    assert item.realized_pnl == pytest.approx(-55.0 + 50.0)


def test_short_settlement(account):
    t = open_position(account, "ETHUSDT", "short", 1.0, 100.0, NOW)
    closed = close_position_manually(t.account, t.position_id, 1.0, 90.0, NOW + 1)

    assert closed.account.usd == pytest.approx(10010.0)
    assert closed.account.position_history[0].realized_pnl == pytest.approx(10.0)


def test_loss_never_drives_usd_negative():
    acc = make_account(100.0, NOW, SlippageConfig(enabled=False))
    t = open_position(acc, "ETHUSDT", "short", 1.0, 100.0, NOW)
    assert t.account.usd == pytest.approx(0.0)

    closed = close_position_manually(t.account, t.position_id, 1.0, 250.0, NOW + 1)
    assert closed.account.usd == 0.0
    assert closed.account.position_history[0].realized_pnl == pytest.approx(-150.0)


def test_second_fill_is_noop(account):
    acc, pid = _long(account)
    sl = place_exit_order(acc, pid, "stop-loss", NOW, price=49000.0)
    first = fill_order(sl.account, sl.order_id, 48900.0, NOW + 1)
    second = fill_order(first.account, sl.order_id, 48000.0, NOW + 2)

    assert second.account is first.account
    assert second.fills == ()
    assert second.rejection.reason == RejectReason.ORDER_NOT_OPEN


def test_cancel_after_fill_is_noop(account):
    acc, pid = _long(account)
    sl = place_exit_order(acc, pid, "stop-loss", NOW, price=49000.0, close_percent=50.0)
    after_fill = fill_order(sl.account, sl.order_id, 48900.0, NOW + 1).account

    race = cancel_order(after_fill, sl.order_id, NOW + 2)

    assert race.account is after_fill
    assert race.rejection.reason == RejectReason.ORDER_NOT_OPEN
    assert after_fill.find_order(sl.order_id).status == "filled"


def test_cancel_unknown_order(account):
    t = cancel_order(account, "ord_missing", NOW)
    assert t.account is account
    assert t.rejection.reason == RejectReason.UNKNOWN_ORDER


def test_cancel_moves_order_to_history(account):
    acc, pid = _long(account)
    tp = place_exit_order(acc, pid, "take-profit", NOW, price=52000.0)
    t = cancel_order(tp.account, tp.order_id, NOW + 1)

    assert t.account.open_orders == ()
    assert t.account.order_history[0].status == "canceled"
    assert t.account.order_history[0].canceled_at == NOW + 1


def test_oco_sibling_canceled_on_fill(account):
    acc, pid = _long(account)
    sl = place_exit_order(acc, pid, "stop-loss", NOW, price=49000.0, close_percent=50.0, oco_group_id="g1")
    tp = place_exit_order(sl.account, pid, "take-profit", NOW, price=52000.0, close_percent=50.0, oco_group_id="g1")

    t = fill_order(tp.account, tp.order_id, 52000.0, NOW + 1)

    assert t.account.open_orders == ()
    assert t.account.find_order(sl.order_id).status == "canceled"
    assert t.account.open_positions[0].amount == pytest.approx(0.05)


def test_without_oco_group_orders_survive_partial_fill(account):
    acc, pid = _long(account)
    sl = place_exit_order(acc, pid, "stop-loss", NOW, price=49000.0, close_percent=50.0)
    tp = place_exit_order(sl.account, pid, "take-profit", NOW, price=52000.0, close_percent=50.0)

    t = fill_order(tp.account, tp.order_id, 52000.0, NOW + 1)

    assert t.account.find_open_order(sl.order_id) is not None


def test_full_close_cancels_remaining_exit_orders(account):
    acc, pid = _long(account)
    sl = place_exit_order(acc, pid, "stop-loss", NOW, price=49000.0)
    tp = place_exit_order(sl.account, pid, "take-profit", NOW, price=52000.0)

    t = close_position_manually(tp.account, pid, 1.0, 50500.0, NOW + 1)

    assert t.account.open_orders == ()
    assert {o.status for o in t.account.order_history} == {"canceled"}


def test_modify_exit_order(account):
    acc, pid = _long(account)
    sl = place_exit_order(acc, pid, "stop-loss", NOW, price=49000.0)

    t = modify_exit_order(sl.account, sl.order_id, NOW + 1, price=48000.0, close_percent=25.0)

    order = t.account.find_open_order(sl.order_id)
    assert order.price == 48000.0
    assert order.close_percent == 25.0
    assert [e.kind for e in t.events] == ["order_modified"]
    bad = modify_exit_order(t.account, sl.order_id, NOW + 2, close_percent=101.0)
    assert bad.rejection.reason == RejectReason.INVALID_PERCENT
    assert bad.account is t.account


def test_modify_trailing_rejects_explicit_trigger(account):
    acc, pid = _long(account)
    tr = place_exit_order(acc, pid, "trailing-stop", NOW, trailing_offset=2.0, market_price=50000.0)

    t = modify_exit_order(tr.account, tr.order_id, NOW + 1, price=49500.0)
    assert t.rejection.reason == RejectReason.INVALID_PARAMETER

    widened = modify_exit_order(tr.account, tr.order_id, NOW + 1, trailing_offset=4.0)
    assert widened.account.find_open_order(tr.order_id).price == pytest.approx(48000.0)

    no_limit = modify_exit_order(tr.account, tr.order_id, NOW + 1, limit_offset=10.0)
    assert no_limit.rejection.reason == RejectReason.INVALID_PARAMETER


def test_modify_fixed_exit_rejects_trailing_fields(account):
    acc, pid = _long(account)
    sl = place_exit_order(acc, pid, "stop-loss", NOW, price=49000.0)

    for fields in ({"trailing_offset": 2.0}, {"trailing_offset_unit": "price"}, {"limit_offset": 5.0}):
        t = modify_exit_order(sl.account, sl.order_id, NOW + 1, **fields)
        assert t.rejection.reason == RejectReason.INVALID_PARAMETER
        assert t.account is sl.account

    order = sl.account.find_open_order(sl.order_id)
    assert order.trailing_offset is None
    assert order.limit_offset is None


def test_entry_limit_fill_opens_position(account):
    t = place_entry_order(account, "BTCUSDT", "buy", "limit", 0.1, NOW, price=49000.0)
    assert t.account.open_positions == ()

    filled = fill_order(t.account, t.order_id, 49000.0, NOW + 1)

    assert len(filled.account.open_positions) == 1
    assert filled.account.open_positions[0].side == "long"
    assert filled.account.usd == pytest.approx(10000.0 - 4900.0)
    assert filled.account.find_order(t.order_id).status == "filled"


def test_entry_fill_rejected_cancels_order(account):
    t = place_entry_order(account, "BTCUSDT", "buy", "limit", 1.0, NOW, price=49000.0)

    filled = fill_order(t.account, t.order_id, 49000.0, NOW + 1)

    assert filled.rejection.reason == RejectReason.INSUFFICIENT_BALANCE
    assert filled.account.open_positions == ()
    assert filled.account.find_order(t.order_id).status == "canceled"
    assert filled.account.usd == 10000.0
    assert [e.kind for e in filled.events] == ["error", "order_canceled"]
    assert [e.kind for e in filled.account.execution_events[:2]] == ["order_canceled", "error"]


def test_history_and_events_are_capped(account):
    acc = account
    for i in range(ORDER_HISTORY_LIMIT + 5):
        placed = place_entry_order(acc, "BTCUSDT", "buy", "limit", 0.01, NOW + i, price=40000.0)
        acc = cancel_order(placed.account, placed.order_id, NOW + i).account

    assert len(acc.order_history) == ORDER_HISTORY_LIMIT
    assert len(acc.execution_events) == EVENT_RETENTION
    assert acc.order_history[0].created_at == NOW + ORDER_HISTORY_LIMIT + 4


def test_slippage_config_validation(account):
    ok = set_slippage_config(account, SlippageConfig(enabled=True, percent_bps=5.0), NOW)
    assert ok.account.slippage_config.percent_bps == 5.0

    bad = set_slippage_config(account, SlippageConfig(enabled=True, percent_bps=-1.0), NOW)
    assert bad.rejection.reason == RejectReason.INVALID_PARAMETER
    assert bad.account is account
