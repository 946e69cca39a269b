import json
import sqlite3

from data.store import SQLiteStore
from engine.ledger import open_position, place_exit_order
from engine.persistence import ACCOUNT_KEY, PaperAccountGateway, decode_account, encode_account

NOW = 1_700_000_000_000


class BrokenStore(SQLiteStore):
    def set_raw_setting(self, user_id, key, value):
        raise sqlite3.OperationalError("disk I/O error")

    def get_raw_setting(self, user_id, key):
        raise sqlite3.OperationalError("disk I/O error")


def _busy_account(account):
    opened = open_position(account, "BTCUSDT", "long", 0.1, 50000.0, NOW)
    placed = place_exit_order(
        opened.account, opened.position_id, "trailing-stop", NOW, trailing_offset=2.0, market_price=50000.0
    )
    return placed.account


def test_write_then_read_round_trips(store, account):
    gateway = PaperAccountGateway(store, user_id=1)
    busy = _busy_account(account)

    assert gateway.write(busy)
    loaded = gateway.read()

    assert loaded.model_dump() == busy.model_dump()


def test_encoding_uses_camel_case(account):
    data = json.loads(encode_account(_busy_account(account)))

    assert data["version"] == 1
    assert data["balances"]["USD"] == 5000.0
    assert "openPositions" in data
    assert data["openOrders"][0]["trailRefPrice"] == 50000.0
    assert data["slippageConfig"] == {"enabled": False, "model": "percentage", "percentBps": 2.0}


def test_read_absent_or_invalid_records(store):
    gateway = PaperAccountGateway(store, user_id=1)
    assert gateway.read() is None

    for raw in ("", "not json", "[1, 2]", '{"version": 2, "balances": {"USD": 1}}', '{"version": 1}'):
        store.set_raw_setting(1, ACCOUNT_KEY, raw)
        assert gateway.read() is None


def test_decode_rejects_bad_shapes():
    assert decode_account(None) is None
    assert decode_account({"version": 1, "balances": []}) is None
    assert decode_account({"version": 1, "balances": {"USD": 1.0}}) is None
    assert decode_account({"version": 1, "balances": {"USD": 1.0}, "createdAt": 1, "updatedAt": 2}).usd == 1.0


def test_write_none_deletes(store, account):
    gateway = PaperAccountGateway(store, user_id=1)
    gateway.write(account)

    assert gateway.write(None)
    assert gateway.read() is None
    assert store.get_raw_setting(1, ACCOUNT_KEY) is None


def test_store_failures_are_reported_not_raised(tmp_path, account):
    gateway = PaperAccountGateway(BrokenStore(str(tmp_path / "broken.db")), user_id=1)

    assert gateway.write(account) is False
    assert gateway.read() is None


def test_accounts_are_scoped_per_user(store, account):
    PaperAccountGateway(store, user_id=1).write(account)
    assert PaperAccountGateway(store, user_id=2).read() is None


def test_decode_requires_integer_version():
    base = {"balances": {"USD": 1.0}, "createdAt": 1, "updatedAt": 2}

    assert decode_account({**base, "version": True}) is None
    assert decode_account({**base, "version": 1.0}) is None
    assert decode_account({**base, "version": "1"}) is None
    assert decode_account('{"version": 1.0, "balances": {"USD": 1.0}, "createdAt": 1, "updatedAt": 2}') is None
    assert decode_account({**base, "version": 1}).usd == 1.0
