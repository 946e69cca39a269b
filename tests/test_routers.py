import pytest

from bot.routers import (
    CommandParseError,
    parse_close,
    parse_entry,
    parse_modify,
    parse_open,
    parse_slippage,
    parse_trail,
    parse_trigger_exit,
)


def test_parse_open():
    cmd = parse_open("/open btcusdt long 0.1 lev=3", request_id="tg:1:1")

    assert cmd.symbol == "BTCUSDT"
    assert cmd.side == "long"
    assert cmd.amount == 0.1
    assert cmd.leverage == 3.0
    assert cmd.entry_price is None
    assert cmd.request_id == "tg:1:1"


def test_parse_open_errors():
    with pytest.raises(CommandParseError):
        parse_open("/open BTCUSDT up 1")
    with pytest.raises(CommandParseError):
        parse_open("/open BTCUSDT long lots")
    with pytest.raises(CommandParseError):
        parse_open("/open BTCUSDT")


def test_parse_entry_limit():
    cmd = parse_entry("/entry ethusdt buy limit 2 price=1800 oco=a")

    assert cmd.order_type == "limit"
    assert cmd.price == 1800.0
    assert cmd.oco_group_id == "a"


def test_parse_stop_and_take_profit():
    sl = parse_trigger_exit("/sl pos_1 49000 pct=50", "sl")
    assert sl.order_type == "stop-loss"
    assert sl.price == 49000.0
    assert sl.close_percent == 50.0

    tp = parse_trigger_exit("/tp pos_1 52000 limit=51950", "tp")
    assert tp.order_type == "take-profit-limit"
    assert tp.price2 == 51950.0
    assert tp.close_percent == 100.0


def test_parse_trail():
    plain = parse_trail("/trail pos_1 2")
    assert plain.order_type == "trailing-stop"
    assert plain.trailing_offset_unit == "percent"

    limited = parse_trail("/trail pos_1 150 unit=price limit_offset=10")
    assert limited.order_type == "trailing-stop-limit"
    assert limited.trailing_offset == 150.0
    assert limited.limit_offset == 10.0


def test_parse_modify_requires_changes():
    with pytest.raises(CommandParseError):
        parse_modify("/modify ord_1")

    cmd = parse_modify("/modify ord_1 offset=3 unit=PRICE")
    assert cmd.trailing_offset == 3.0
    assert cmd.trailing_offset_unit == "price"
    assert cmd.price is None


def test_parse_close_and_slippage():
    assert parse_close("/close pos_1").percent == 100.0
    assert parse_close("/close pos_1 25").percent == 25.0

    off = parse_slippage("/slippage off")
    assert not off.enabled
    assert parse_slippage("/slippage on 4").percent_bps == 4.0
    with pytest.raises(CommandParseError):
        parse_slippage("/slippage maybe")
