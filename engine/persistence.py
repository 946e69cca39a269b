from __future__ import annotations

import json
from typing import Any

from loguru import logger
from pydantic import ValidationError

from data.store import BaseStore
from engine.models import PaperAccount

ACCOUNT_KEY = "PAPER_ACCOUNT_V1"


def encode_account(account: PaperAccount) -> str:
    return account.model_dump_json(by_alias=True)


def decode_account(raw: Any) -> PaperAccount | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.debug("Stored paper account is not JSON")
            return None
    else:
        data = raw
    if not isinstance(data, dict):
        return None
    version = data.get("version")
    if type(version) is not int or version != 1 or not isinstance(data.get("balances"), dict):
        logger.debug("Stored paper account has unsupported shape (version={!r})", version)
        return None
    try:
        return PaperAccount.model_validate(data)
    except ValidationError as exc:
        logger.warning("Stored paper account failed validation: {}", exc.error_count())
        return None


class PaperAccountGateway:
    def __init__(self, store: BaseStore, user_id: int, key: str = ACCOUNT_KEY) -> None:
        self.store = store
        self.user_id = user_id
        self.key = key

    def read(self) -> PaperAccount | None:
        try:
            raw = self.store.get_raw_setting(self.user_id, self.key)
        except Exception:
            logger.exception("Failed to read paper account for user {}", self.user_id)
            return None
        account = decode_account(raw)
        if account is None:
            logger.debug("No usable paper account for user {}", self.user_id)
        return account

    def write(self, account: PaperAccount | None) -> bool:
        try:
            if account is None:
                self.store.delete_setting(self.user_id, self.key)
            else:
                self.store.set_raw_setting(self.user_id, self.key, encode_account(account))
        except Exception:
            logger.exception("Failed to persist paper account for user {}", self.user_id)
            return False
        return True
