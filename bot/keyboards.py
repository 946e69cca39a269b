from __future__ import annotations

from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup

from engine.models import PositionView


def main_menu() -> InlineKeyboardMarkup:
    buttons = [
        [InlineKeyboardButton(text="💰 Balance", callback_data="balance")],
        [InlineKeyboardButton(text="📈 Positions", callback_data="positions")],
        [InlineKeyboardButton(text="🧾 Open Orders", callback_data="orders")],
        [InlineKeyboardButton(text="🗂 History", callback_data="history")],
    ]
    return InlineKeyboardMarkup(inline_keyboard=buttons)


def positions_menu(views: list[PositionView]) -> InlineKeyboardMarkup:
    buttons = [
        [InlineKeyboardButton(text=f"Close {v.symbol} {v.side} {v.amount:g}", callback_data=f"close:{v.id}")]
        for v in views
    ]
    buttons.append([InlineKeyboardButton(text="Back", callback_data="main_menu")])
    return InlineKeyboardMarkup(inline_keyboard=buttons)


def confirm_reset() -> InlineKeyboardMarkup:
    buttons = [[InlineKeyboardButton(text="CONFIRM RESET", callback_data="confirm_reset")]]
    return InlineKeyboardMarkup(inline_keyboard=buttons)
