from __future__ import annotations

import time
from typing import Awaitable, Callable

from aiogram import BaseMiddleware
from aiogram.types import CallbackQuery, Message

from bot.messages import access_denied_text
from services.config_service import EngineSettings


def admin_ids(settings: EngineSettings) -> set[int]:
    return {int(x.strip()) for x in settings.ADMIN_TELEGRAM_IDS.split(",") if x.strip()}


def _is_admin(user_id: int, settings: EngineSettings) -> bool:
    return user_id in admin_ids(settings)


def _is_allowed(user_id: int, settings: EngineSettings) -> bool:
    return settings.ALLOW_ALL_USERS or _is_admin(user_id, settings)


def _sender_id(event) -> int | None:
    if isinstance(event, (Message, CallbackQuery)) and event.from_user:
        return event.from_user.id
    return None


class AdminOnlyMiddleware(BaseMiddleware):
    def __init__(self, settings: EngineSettings) -> None:
        self.settings = settings

    async def __call__(self, handler: Callable, event, data) -> Awaitable:
        user_id = _sender_id(event)
        if user_id is not None and not _is_allowed(user_id, self.settings):
            if isinstance(event, CallbackQuery):
                await event.answer(access_denied_text(), show_alert=True)
            else:
                await event.answer(access_denied_text())
            return
        return await handler(event, data)


class ThrottleMiddleware(BaseMiddleware):
    """Drops updates from a user arriving faster than ``cooldown`` seconds apart."""

    def __init__(self, cooldown: float = 0.5) -> None:
        self.cooldown = cooldown
        self._last: dict[int, float] = {}

    def allow(self, user_id: int, now: float | None = None) -> bool:
        now = time.monotonic() if now is None else now
        last = self._last.get(user_id)
        if last is not None and now - last < self.cooldown:
            return False
        self._last[user_id] = now
        return True

    async def __call__(self, handler: Callable, event, data) -> Awaitable:
        user_id = _sender_id(event)
        if user_id is not None and not self.allow(user_id):
            if isinstance(event, CallbackQuery):
                await event.answer("Slow down.")
            return
        return await handler(event, data)
