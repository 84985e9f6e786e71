import logging
from typing import Any, Optional

from telegram import Bot, Message, ReplyParameters
from telegram.error import BadRequest, TelegramError

logger = logging.getLogger(__name__)

REPLY_TARGET_MISSING = "message to be replied not found"


def _reply_target_missing(err: BadRequest) -> bool:
    return REPLY_TARGET_MISSING in (err.message or "").lower()


async def send_with_fallback(
    bot: Bot,
    chat_id: int,
    text: str,
    reply_to: Optional[int] = None,
    **kwargs: Any,
) -> Message:
    """
    Send `text` as a reply to `reply_to`; if that message is gone, send it as a
    plain message in the same chat instead. Other errors propagate.
    """
    if reply_to is None:
        return await bot.send_message(chat_id=chat_id, text=text, **kwargs)
    try:
        return await bot.send_message(
            chat_id=chat_id,
            text=text,
            reply_parameters=ReplyParameters(message_id=reply_to),
            **kwargs,
        )
    except BadRequest as e:
        if not _reply_target_missing(e):
            raise
        logger.info("[notify] Reply target %s in chat %s is gone, sending unthreaded", reply_to, chat_id)
        return await bot.send_message(chat_id=chat_id, text=text, **kwargs)


class Notifier:
    """Best-effort delivery for subscription notifications. Never retries."""

    def __init__(self, bot: Bot) -> None:
        self.bot = bot

    async def notify(self, chat_id: int, text: str, reply_to: Optional[int] = None) -> bool:
        try:
            await send_with_fallback(self.bot, chat_id, text, reply_to)
            return True
        except TelegramError as e:
            logger.error("[notify] Failed to notify chat %s: %s", chat_id, e)
        except Exception:
            logger.exception("[notify] Unexpected error notifying chat %s", chat_id)
        return False
