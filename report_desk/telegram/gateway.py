from __future__ import annotations

import logging
from typing import Optional, Union

from telegram import Bot, InlineKeyboardMarkup, ReplyKeyboardMarkup, ReplyKeyboardRemove, User
from telegram.error import BadRequest, Forbidden, TelegramError
from telegram.ext import AIORateLimiter, ExtBot

logger = logging.getLogger(__name__)

ReplyMarkup = Union[InlineKeyboardMarkup, ReplyKeyboardMarkup, ReplyKeyboardRemove]


def build_bot(token: str) -> ExtBot:
    return ExtBot(token=token, rate_limiter=AIORateLimiter())


def _not_modified(exc: BadRequest) -> bool:
    return "message is not modified" in str(exc).lower()


class MessagingGateway:
    """Outbound Telegram calls that report failure instead of raising."""

    def __init__(self, bot: Bot):
        self.bot = bot

    async def initialize(self) -> None:
        await self.bot.initialize()

    async def shutdown(self) -> None:
        await self.bot.shutdown()

    async def get_me(self) -> Optional[User]:
        try:
            return await self.bot.get_me()
        except TelegramError as exc:
            logger.warning("getMe failed: %s", exc)
            return None

    async def set_webhook(self, url: str, secret_token: str) -> bool:
        try:
            return bool(
                await self.bot.set_webhook(
                    url=url,
                    secret_token=secret_token,
                    allowed_updates=["message", "callback_query"],
                )
            )
        except TelegramError as exc:
            logger.warning("setWebhook to %s failed: %s", url, exc)
            return False

    async def send_message(
        self,
        chat_id: int,
        text: str,
        *,
        reply_markup: Optional[ReplyMarkup] = None,
        parse_mode: Optional[str] = None,
    ) -> Optional[int]:
        """Send ``text``; returns the new message id or None on failure."""
        try:
            message = await self.bot.send_message(
                chat_id=chat_id,
                text=text,
                reply_markup=reply_markup,
                parse_mode=parse_mode,
            )
        except Forbidden as exc:
            logger.info("Chat %s blocked the bot or never started it: %s", chat_id, exc)
            return None
        except TelegramError as exc:
            logger.warning("sendMessage to %s failed: %s", chat_id, exc)
            return None
        return message.message_id

    async def edit_message(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        *,
        reply_markup: Optional[InlineKeyboardMarkup] = None,
        parse_mode: Optional[str] = None,
    ) -> bool:
        """Replace a message's text; without ``reply_markup`` the buttons are removed."""
        try:
            await self.bot.edit_message_text(
                chat_id=chat_id,
                message_id=message_id,
                text=text,
                reply_markup=reply_markup,
                parse_mode=parse_mode,
            )
        except BadRequest as exc:
            if _not_modified(exc):
                return True
            logger.warning("editMessageText %s/%s failed: %s", chat_id, message_id, exc)
            return False
        except TelegramError as exc:
            logger.warning("editMessageText %s/%s failed: %s", chat_id, message_id, exc)
            return False
        return True

    async def edit_keyboard(
        self,
        chat_id: int,
        message_id: int,
        reply_markup: Optional[InlineKeyboardMarkup],
    ) -> bool:
        try:
            await self.bot.edit_message_reply_markup(
                chat_id=chat_id,
                message_id=message_id,
                reply_markup=reply_markup,
            )
        except BadRequest as exc:
            if _not_modified(exc):
                return True
            logger.warning("editMessageReplyMarkup %s/%s failed: %s", chat_id, message_id, exc)
            return False
        except TelegramError as exc:
            logger.warning("editMessageReplyMarkup %s/%s failed: %s", chat_id, message_id, exc)
            return False
        return True

    async def delete_message(self, chat_id: int, message_id: Optional[int]) -> bool:
        if not message_id:
            return False
        try:
            return bool(await self.bot.delete_message(chat_id=chat_id, message_id=message_id))
        except TelegramError as exc:
            logger.warning("deleteMessage %s/%s failed: %s", chat_id, message_id, exc)
            return False

    async def answer_callback(self, callback_query_id: str, text: str = "", *, show_alert: bool = False) -> bool:
        try:
            return bool(
                await self.bot.answer_callback_query(
                    callback_query_id=callback_query_id,
                    text=text or None,
                    show_alert=show_alert,
                )
            )
        except TelegramError as exc:
            logger.warning("answerCallbackQuery %s failed: %s", callback_query_id, exc)
            return False
