"""finance_bot.py

Telegram bot companion of the Mini App.

The bot only opens the WebApp: /start answers with a button that launches it.
Polling is started from app.py lifespan when BOT_POLLING is enabled.
"""

from __future__ import annotations

import logging
import urllib.parse
from typing import Any, Optional, Tuple

from aiogram import Bot, Dispatcher, Router
from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError
from aiogram.filters import Command
from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup, Message, WebAppInfo

logger = logging.getLogger(__name__)

router = Router()


def require_https_webapp_url(url: str) -> Optional[str]:
    if not url:
        return None
    try:
        parsed = urllib.parse.urlparse(url)
    except ValueError:
        return None
    if parsed.scheme.lower() != "https" or not parsed.netloc:
        return None
    return url


def main_menu_kb(webapp_url: Optional[str]) -> InlineKeyboardMarkup:
    # Telegram refuses WebApp buttons with non-HTTPS urls
    url = require_https_webapp_url(webapp_url or "")
    if not url:
        return InlineKeyboardMarkup(inline_keyboard=[])
    return InlineKeyboardMarkup(
        inline_keyboard=[[InlineKeyboardButton(text="Открыть финансы", web_app=WebAppInfo(url=url))]]
    )


def format_telegram_exception(exc: Exception) -> str:
    msg = str(exc)
    lower = msg.lower()
    hint = ""
    if "chat not found" in lower:
        hint = "Chat not found: the user has to press /start first."
    elif "bot was blocked by the user" in lower:
        hint = "The bot is blocked by the user."
    return f"{msg}. {hint}".strip()


async def send_telegram_message(
    bot: Bot,
    chat_id: int,
    text: str,
    reply_markup: Optional[InlineKeyboardMarkup] = None,
    **options: Any,
) -> Tuple[bool, Optional[str]]:
    try:
        await bot.send_message(chat_id=chat_id, text=text, reply_markup=reply_markup, **options)
        return True, None
    except (TelegramForbiddenError, TelegramBadRequest) as exc:
        msg = format_telegram_exception(exc)
        logger.warning("Failed to send message to %s: %s", chat_id, msg)
        return False, msg


@router.message(Command("start"))
async def on_start(m: Message, webapp_url: Optional[str] = None):
    name = m.from_user.first_name if m.from_user else ""
    kb = main_menu_kb(webapp_url)
    if not kb.inline_keyboard:
        await m.answer(
            "Финансовый трекер пока недоступен: WebApp открывается только по HTTPS.\n"
            "Задайте WEBAPP_URL в .env."
        )
        return
    await m.answer(f"Привет, {name}! Учёт счетов и расходов в приложении:", reply_markup=kb)


def build_bot(cfg: Any) -> Tuple[Bot, Dispatcher]:
    from aiogram.client.default import DefaultBotProperties

    bot = Bot(token=cfg.BOT_TOKEN, default=DefaultBotProperties(parse_mode="HTML"))
    # passed to handlers as the `webapp_url` argument
    dp = Dispatcher(webapp_url=cfg.WEBAPP_URL or cfg.FRONTEND_URL)
    dp.include_router(router)
    return bot, dp
