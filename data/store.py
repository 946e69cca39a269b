from __future__ import annotations

import json
import sqlite3
import time
from pathlib import Path
from typing import Any

import psycopg
from psycopg.rows import dict_row


class BaseStore:
    def ensure_user(self, user_id: int, username: str | None) -> None:
        raise NotImplementedError

    def set_raw_setting(self, user_id: int, key: str, value: str) -> None:
        raise NotImplementedError

    def get_raw_setting(self, user_id: int, key: str) -> str | None:
        raise NotImplementedError

    def delete_setting(self, user_id: int, key: str) -> None:
        raise NotImplementedError

    def add_fill(
        self,
        user_id: int,
        symbol: str,
        side: str,
        amount: float,
        price: float,
        order_id: str | None,
        position_id: str | None,
        filled_at: int,
    ) -> None:
        raise NotImplementedError

    def list_fills(self, user_id: int, limit: int = 10) -> list[dict[str, Any]]:
        raise NotImplementedError

    def set_setting(self, user_id: int, key: str, value: Any) -> None:
        self.set_raw_setting(user_id, key, json.dumps(value))

    def get_setting(self, user_id: int, key: str, default: Any = None) -> Any:
        raw = self.get_raw_setting(user_id, key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return default


class SQLiteStore(BaseStore):
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        schema_path = Path(__file__).with_name("schema.sql")
        with self._connect() as conn:
            conn.executescript(schema_path.read_text())

    def ensure_user(self, user_id: int, username: str | None) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO users (user_id, username, created_at) VALUES (?, ?, ?)",
                (user_id, username, int(time.time())),
            )

    def set_raw_setting(self, user_id: int, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO user_settings (user_id, key, value) VALUES (?, ?, ?) "
                "ON CONFLICT(user_id, key) DO UPDATE SET value=excluded.value",
                (user_id, key, value),
            )

    def get_raw_setting(self, user_id: int, key: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM user_settings WHERE user_id=? AND key=?",
                (user_id, key),
            ).fetchone()
            return row["value"] if row else None

    def delete_setting(self, user_id: int, key: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM user_settings WHERE user_id=? AND key=?", (user_id, key))

    def add_fill(
        self,
        user_id: int,
        symbol: str,
        side: str,
        amount: float,
        price: float,
        order_id: str | None,
        position_id: str | None,
        filled_at: int,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO fills (user_id, symbol, side, amount, price, order_id, position_id, filled_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (user_id, symbol, side, amount, price, order_id, position_id, filled_at),
            )

    def list_fills(self, user_id: int, limit: int = 10) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM fills WHERE user_id=? ORDER BY filled_at DESC, id DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
            return [dict(r) for r in rows]


class PostgresStore(BaseStore):
    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self._ensure_schema()

    def _connect(self):
        return psycopg.connect(self.dsn, row_factory=dict_row)

    def _ensure_schema(self) -> None:
        schema_path = Path(__file__).with_name("schema_pg.sql")
        with self._connect() as conn:
            statements = [s.strip() for s in schema_path.read_text().split(";") if s.strip()]
            for stmt in statements:
                conn.execute(stmt)

    def ensure_user(self, user_id: int, username: str | None) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO users (user_id, username, created_at) VALUES (%s, %s, %s) ON CONFLICT DO NOTHING",
                (user_id, username, int(time.time())),
            )

    def set_raw_setting(self, user_id: int, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO user_settings (user_id, key, value) VALUES (%s, %s, %s) "
                "ON CONFLICT (user_id, key) DO UPDATE SET value=excluded.value",
                (user_id, key, value),
            )

    def get_raw_setting(self, user_id: int, key: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM user_settings WHERE user_id=%s AND key=%s",
                (user_id, key),
            ).fetchone()
            return row["value"] if row else None

    def delete_setting(self, user_id: int, key: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM user_settings WHERE user_id=%s AND key=%s", (user_id, key))

    def add_fill(
        self,
        user_id: int,
        symbol: str,
        side: str,
        amount: float,
        price: float,
        order_id: str | None,
        position_id: str | None,
        filled_at: int,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO fills (user_id, symbol, side, amount, price, order_id, position_id, filled_at) "
                "VALUES (%s, %s, %s, %s, %s, %s, %s, %s)",
                (user_id, symbol, side, amount, price, order_id, position_id, filled_at),
            )

    def list_fills(self, user_id: int, limit: int = 10) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM fills WHERE user_id=%s ORDER BY filled_at DESC, id DESC LIMIT %s",
                (user_id, limit),
            ).fetchall()
            return [dict(r) for r in rows]


def create_store(database_url: str | None, sqlite_path: str) -> BaseStore:
    if database_url:
        return PostgresStore(database_url)
    return SQLiteStore(sqlite_path)
