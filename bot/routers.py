from __future__ import annotations

from aiogram import Router
from aiogram.filters import Command, CommandStart
from aiogram.types import CallbackQuery, Message

from bot import keyboards, messages
from data.store import BaseStore
from services.commands import (
    CancelOrder,
    ClosePosition,
    ModifyExitOrder,
    OpenPosition,
    PlaceEntryOrder,
    PlaceExitOrder,
    ResetAccount,
    SetSlippage,
)
from services.config_service import ConfigService
from services.orchestrator import EngineOrchestrator


class CommandParseError(ValueError):
    pass


USAGE = {
    "open": "/open SYMBOL long|short AMOUNT [lev=N] [price=P]",
    "entry": "/entry SYMBOL buy|sell market|limit AMOUNT [price=P] [lev=N] [oco=GROUP]",
    "sl": "/sl POSITION_ID PRICE [limit=P] [pct=N] [oco=GROUP]",
    "tp": "/tp POSITION_ID PRICE [limit=P] [pct=N] [oco=GROUP]",
    "trail": "/trail POSITION_ID OFFSET [unit=percent|price] [limit_offset=X] [pct=N] [oco=GROUP]",
    "modify": "/modify ORDER_ID [price=P] [limit=P] [pct=N] [offset=X] [unit=percent|price] [limit_offset=X]",
    "cancel": "/cancel ORDER_ID",
    "close": "/close POSITION_ID [PERCENT]",
    "slippage": "/slippage on|off [BPS]",
    "reset": "/reset [USD]",
}


def split_args(text: str | None) -> tuple[list[str], dict[str, str]]:
    tokens = (text or "").split()[1:]
    positional = [t for t in tokens if "=" not in t]
    options = {}
    for token in tokens:
        if "=" in token:
            key, value = token.split("=", 1)
            options[key.lower()] = value
    return positional, options


def _num(raw: str | None, name: str, usage: str) -> float | None:
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        raise CommandParseError(f"{name} must be a number\nUsage: {usage}") from None


def _need(positional: list[str], count: int, usage: str) -> None:
    if len(positional) < count:
        raise CommandParseError(f"Usage: {usage}")


def parse_open(text: str, request_id: str | None = None) -> OpenPosition:
    usage = USAGE["open"]
    pos, opts = split_args(text)
    _need(pos, 3, usage)
    side = pos[1].lower()
    if side not in ("long", "short"):
        raise CommandParseError(f"Side must be long or short\nUsage: {usage}")
    return OpenPosition(
        symbol=pos[0].upper(),
        side=side,
        amount=_num(pos[2], "AMOUNT", usage),
        entry_price=_num(opts.get("price"), "price", usage),
        leverage=_num(opts.get("lev", "1"), "lev", usage),
        request_id=request_id,
    )


def parse_entry(text: str, request_id: str | None = None) -> PlaceEntryOrder:
    usage = USAGE["entry"]
    pos, opts = split_args(text)
    _need(pos, 4, usage)
    side, order_type = pos[1].lower(), pos[2].lower()
    if side not in ("buy", "sell") or order_type not in ("market", "limit"):
        raise CommandParseError(f"Usage: {usage}")
    return PlaceEntryOrder(
        symbol=pos[0].upper(),
        side=side,
        order_type=order_type,
        amount=_num(pos[3], "AMOUNT", usage),
        price=_num(opts.get("price"), "price", usage),
        leverage=_num(opts.get("lev", "1"), "lev", usage),
        oco_group_id=opts.get("oco"),
        request_id=request_id,
    )


def parse_trigger_exit(text: str, kind: str, request_id: str | None = None) -> PlaceExitOrder:
    usage = USAGE[kind]
    pos, opts = split_args(text)
    _need(pos, 2, usage)
    base = "stop-loss" if kind == "sl" else "take-profit"
    limit = _num(opts.get("limit"), "limit", usage)
    return PlaceExitOrder(
        position_id=pos[0],
        order_type=f"{base}-limit" if limit is not None else base,
        price=_num(pos[1], "PRICE", usage),
        price2=limit,
        close_percent=_num(opts.get("pct", "100"), "pct", usage),
        oco_group_id=opts.get("oco"),
        request_id=request_id,
    )


def parse_trail(text: str, request_id: str | None = None) -> PlaceExitOrder:
    usage = USAGE["trail"]
    pos, opts = split_args(text)
    _need(pos, 2, usage)
    limit_offset = _num(opts.get("limit_offset"), "limit_offset", usage)
    return PlaceExitOrder(
        position_id=pos[0],
        order_type="trailing-stop-limit" if limit_offset is not None else "trailing-stop",
        trailing_offset=_num(pos[1], "OFFSET", usage),
        trailing_offset_unit=opts.get("unit", "percent").lower(),
        limit_offset=limit_offset,
        close_percent=_num(opts.get("pct", "100"), "pct", usage),
        oco_group_id=opts.get("oco"),
        request_id=request_id,
    )


def parse_modify(text: str, request_id: str | None = None) -> ModifyExitOrder:
    usage = USAGE["modify"]
    pos, opts = split_args(text)
    _need(pos, 1, usage)
    if not opts:
        raise CommandParseError(f"Nothing to modify\nUsage: {usage}")
    unit = opts.get("unit")
    return ModifyExitOrder(
        order_id=pos[0],
        price=_num(opts.get("price"), "price", usage),
        price2=_num(opts.get("limit"), "limit", usage),
        close_percent=_num(opts.get("pct"), "pct", usage),
        trailing_offset=_num(opts.get("offset"), "offset", usage),
        trailing_offset_unit=unit.lower() if unit else None,
        limit_offset=_num(opts.get("limit_offset"), "limit_offset", usage),
        request_id=request_id,
    )


def parse_close(text: str, request_id: str | None = None) -> ClosePosition:
    usage = USAGE["close"]
    pos, _ = split_args(text)
    _need(pos, 1, usage)
    percent = _num(pos[1], "PERCENT", usage) if len(pos) > 1 else 100.0
    return ClosePosition(position_id=pos[0], percent=percent, request_id=request_id)


def parse_slippage(text: str, request_id: str | None = None) -> SetSlippage:
    usage = USAGE["slippage"]
    pos, _ = split_args(text)
    _need(pos, 1, usage)
    switch = pos[0].lower()
    if switch not in ("on", "off"):
        raise CommandParseError(f"Usage: {usage}")
    bps = _num(pos[1], "BPS", usage) if len(pos) > 1 else 2.0
    return SetSlippage(enabled=switch == "on", percent_bps=bps, request_id=request_id)


def _request_id(message: Message) -> str:
    return f"tg:{message.chat.id}:{message.message_id}"


def build_router(
    orchestrator: EngineOrchestrator,
    store: BaseStore,
    config_service: ConfigService,
) -> Router:
    router = Router()

    async def _engine(user_id: int, chat_id: str):
        await orchestrator.start(user_id, chat_id=chat_id)
        return orchestrator.engine(user_id)

    async def _run(message: Message, command, done: str) -> None:
        result = await orchestrator.execute(message.from_user.id, command, chat_id=str(message.chat.id))
        await message.answer(messages.result_text(result, done))

    async def _parse_and_run(message: Message, parse, done: str) -> None:
        try:
            command = parse(message.text, request_id=_request_id(message))
        except CommandParseError as exc:
            await message.answer(str(exc))
            return
        await _run(message, command, done)

    @router.message(CommandStart())
    async def start_cmd(message: Message) -> None:
        store.ensure_user(message.from_user.id, message.from_user.username)
        await orchestrator.start(message.from_user.id, chat_id=str(message.chat.id))
        await message.answer(messages.main_menu_text(), reply_markup=keyboards.main_menu())

    @router.callback_query(lambda c: c.data == "main_menu")
    async def main_menu_cb(query: CallbackQuery) -> None:
        await query.message.edit_text(messages.main_menu_text(), reply_markup=keyboards.main_menu())

    async def _balance(user_id: int, chat_id: str) -> str:
        engine = await _engine(user_id, chat_id)
        return messages.balance_text(engine.balances(), engine.margin_level())

    async def _positions(user_id: int, chat_id: str):
        engine = await _engine(user_id, chat_id)
        views = engine.position_views()
        return messages.positions_text(views), keyboards.positions_menu(views)

    async def _orders(user_id: int, chat_id: str) -> str:
        engine = await _engine(user_id, chat_id)
        return messages.orders_text(engine.open_orders())

    async def _history(user_id: int, chat_id: str) -> str:
        engine = await _engine(user_id, chat_id)
        limit = config_service.load(user_id).order_history_display
        return messages.history_text(engine.position_history(limit), engine.order_history(limit))

    @router.message(Command("balance"))
    async def balance_cmd(message: Message) -> None:
        await message.answer(await _balance(message.from_user.id, str(message.chat.id)))

    @router.callback_query(lambda c: c.data == "balance")
    async def balance_cb(query: CallbackQuery) -> None:
        text = await _balance(query.from_user.id, str(query.message.chat.id))
        await query.message.edit_text(text, reply_markup=keyboards.main_menu())

    @router.message(Command("positions"))
    async def positions_cmd(message: Message) -> None:
        text, markup = await _positions(message.from_user.id, str(message.chat.id))
        await message.answer(text, reply_markup=markup)

    @router.callback_query(lambda c: c.data == "positions")
    async def positions_cb(query: CallbackQuery) -> None:
        text, markup = await _positions(query.from_user.id, str(query.message.chat.id))
        await query.message.edit_text(text, reply_markup=markup)

    @router.message(Command("orders"))
    async def orders_cmd(message: Message) -> None:
        await message.answer(await _orders(message.from_user.id, str(message.chat.id)))

    @router.callback_query(lambda c: c.data == "orders")
    async def orders_cb(query: CallbackQuery) -> None:
        text = await _orders(query.from_user.id, str(query.message.chat.id))
        await query.message.edit_text(text, reply_markup=keyboards.main_menu())

    @router.message(Command("history"))
    async def history_cmd(message: Message) -> None:
        await message.answer(await _history(message.from_user.id, str(message.chat.id)))

    @router.callback_query(lambda c: c.data == "history")
    async def history_cb(query: CallbackQuery) -> None:
        text = await _history(query.from_user.id, str(query.message.chat.id))
        await query.message.edit_text(text, reply_markup=keyboards.main_menu())

    @router.callback_query(lambda c: c.data.startswith("close:"))
    async def close_cb(query: CallbackQuery) -> None:
        position_id = query.data.split(":", 1)[1]
        result = await orchestrator.execute(
            query.from_user.id,
            ClosePosition(position_id=position_id, request_id=f"cb:{query.id}"),
            chat_id=str(query.message.chat.id),
        )
        await query.message.answer(messages.result_text(result, "Position closed."))
        await query.answer()

    @router.message(Command("open"))
    async def open_cmd(message: Message) -> None:
        await _parse_and_run(message, parse_open, "Position opened.")

    @router.message(Command("entry"))
    async def entry_cmd(message: Message) -> None:
        await _parse_and_run(message, parse_entry, "Entry order placed.")

    @router.message(Command("sl"))
    async def sl_cmd(message: Message) -> None:
        await _parse_and_run(
            message, lambda text, request_id: parse_trigger_exit(text, "sl", request_id), "Stop-loss placed."
        )

    @router.message(Command("tp"))
    async def tp_cmd(message: Message) -> None:
        await _parse_and_run(
            message, lambda text, request_id: parse_trigger_exit(text, "tp", request_id), "Take-profit placed."
        )

    @router.message(Command("trail"))
    async def trail_cmd(message: Message) -> None:
        await _parse_and_run(message, parse_trail, "Trailing stop placed.")

    @router.message(Command("modify"))
    async def modify_cmd(message: Message) -> None:
        await _parse_and_run(message, parse_modify, "Order modified.")

    @router.message(Command("cancel"))
    async def cancel_cmd(message: Message) -> None:
        pos, _ = split_args(message.text)
        if not pos:
            await message.answer(f"Usage: {USAGE['cancel']}")
            return
        await _run(message, CancelOrder(order_id=pos[0], request_id=_request_id(message)), "Order canceled.")

    @router.message(Command("close"))
    async def close_cmd(message: Message) -> None:
        await _parse_and_run(message, parse_close, "Position closed.")

    @router.message(Command("slippage"))
    async def slippage_cmd(message: Message) -> None:
        await _parse_and_run(message, parse_slippage, "Slippage updated.")

    @router.message(Command("reset"))
    async def reset_cmd(message: Message) -> None:
        pos, _ = split_args(message.text)
        if pos:
            try:
                amount = _num(pos[0], "USD", USAGE["reset"])
            except CommandParseError as exc:
                await message.answer(str(exc))
                return
            await _run(message, ResetAccount(initial_usd=amount, request_id=_request_id(message)), "Account reset.")
            return
        initial = config_service.load(message.from_user.id).initial_usd
        await message.answer(messages.confirm_reset_text(initial), reply_markup=keyboards.confirm_reset())

    @router.callback_query(lambda c: c.data == "confirm_reset")
    async def confirm_reset_cb(query: CallbackQuery) -> None:
        result = await orchestrator.execute(
            query.from_user.id,
            ResetAccount(request_id=f"cb:{query.id}"),
            chat_id=str(query.message.chat.id),
        )
        await query.message.edit_text(messages.result_text(result, "Account reset."), reply_markup=keyboards.main_menu())

    return router
