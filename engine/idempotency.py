from __future__ import annotations

from data.store import BaseStore


class Idempotency:
    def __init__(self, store: BaseStore, user_id: int, max_keys: int = 200, key: str = "COMMAND_REQUEST_IDS") -> None:
        self.store = store
        self.user_id = user_id
        self.max_keys = max_keys
        self.key = key

    def _load(self) -> list[str]:
        ids = self.store.get_setting(self.user_id, self.key, [])
        if not isinstance(ids, list):
            return []
        return ids

    def _save(self, ids: list[str]) -> None:
        self.store.set_setting(self.user_id, self.key, ids)

    def seen(self, request_id: str) -> bool:
        return request_id in self._load()

    def remember(self, request_id: str) -> None:
        ids = self._load()
        if request_id in ids:
            return
        ids.append(request_id)
        self._save(ids[-self.max_keys :])
