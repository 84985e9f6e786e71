import base64
import logging
import random
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl, urlencode

from telegram import (
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    ReplyParameters,
    Update,
)
from telegram.constants import ChatAction, ChatType, ParseMode
from telegram.error import BadRequest, TelegramError
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    PollAnswerHandler,
    filters,
)

import settings
from activity import ActivityLog
from chat_llm import (
    FALLBACK_REPLY,
    TAROT_PROMPT,
    ChatHistoryStore,
    ChatTool,
    LLMError,
    OpenWebUIClient,
    build_model_messages,
    format_tarot,
    quote_reply,
    should_respond,
)
from jsondb import JsonFileDb
from notifier import Notifier, send_with_fallback
from number_feed import CurrentNumberSource
from number_watch import SubscriptionWatcher
from polls import (
    BYE_OPTIONS,
    RAMEN_OPTIONS,
    VOTE_OPTIONS,
    PollStore,
    is_ramen_poll,
    parse_ramen_result,
    ramen_live_total,
    short_hash,
    vote_head_count,
)
from quota import UsageQuota
from subscriptions import (
    DuplicateSubscriptionError,
    JsonSubscriptionStore,
    SubscriptionStore,
    new_subscription,
    validate_target_number,
)

logger = logging.getLogger(__name__)

# -------------------------
# User-facing texts
# -------------------------
WELCOME_TEXT = "安安，榮勾斯揪來了，怕的是他。有事嗎？\n想訂閱叫號可以打 `/number <你的號碼>`，偶會幫你訂閱，很ㄅㄧㄤˋ吧 ✨。"
NUMBER_UNAVAILABLE = "挖哩咧 😵‍💫，偶拿不到號碼，很遜欸。"
SUBSCRIBE_HINT = "\n\n想訂閱叫號？打 `/number <你的號碼>`，偶幫你記著，很ㄅㄧㄤˋ吧 ✨。"
INVALID_NUMBER = "\n🗣️ 告老師喔！號碼亂打，要輸入 {lo} 到 {hi} 的數字啦，你很兩光欸。"
NOT_SUBSCRIBED = "🗣️ 你又沒訂閱，是在取消什麼，告老師喔！"
BAD_PAYLOAD = "🤔 這個連結怪怪的，偶看不懂，很遜欸。"
ONLY_CREATOR = "🗣️ 告老師喔，只有發起人才能結束投票，你很奇欸。"
LIMIT_MSGS = [
    "😴 斯揪累累要睡覺了，明天再聊喔～",
    "🛌 斯揪要去蓋被被曬太陽了，明天再跟你 LDS～",
    "⏰ 斯揪先休息，kira kira 明天見！",
    "🍯 蜂蜜吃完了，斯揪沒電啦，明天再說 886～",
    "😴 斯揪累累要睡覺了，明天再嗨吧～",
    "🛌 斯揪去王國午休，明天再來 KUSO～",
    "🍯 蜂蜜耗盡，斯揪要充電，這裡今天先到此為止 886～",
]

# -------------------------
# Deep-link payloads (t.me/<bot>?start=...)
# Telegram allows 64 chars of [A-Za-z0-9_-], so keys are short and the
# encoding is url-safe base64 without padding.
# -------------------------
_PAYLOAD_KEYS = {
    "a": "action",
    "t": "target_number",
    "c": "group_chat_id",
    "m": "user_message_id",
    "g": "group_message_id",
}
_PAYLOAD_ACTIONS = {"s": "subscribe", "u": "unsubscribe"}


def encode_start_payload(action: str, **params: Any) -> str:
    short_action = {v: k for k, v in _PAYLOAD_ACTIONS.items()}[action]
    long_to_short = {v: k for k, v in _PAYLOAD_KEYS.items()}
    fields = [("a", short_action)] + [(long_to_short[k], str(v)) for k, v in params.items()]
    raw = urlencode(fields).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_start_payload(payload: str) -> Dict[str, str]:
    """Decode a deep-link payload into long parameter names. Raises ValueError."""
    padded = payload + "=" * (-len(payload) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (UnicodeError, ValueError) as e:
        raise ValueError(f"undecodable payload: {e}") from e
    params = {_PAYLOAD_KEYS.get(k, k): v for k, v in parse_qsl(raw)}
    params["action"] = _PAYLOAD_ACTIONS.get(params.get("action", ""), params.get("action", ""))
    if params["action"] not in ("subscribe", "unsubscribe"):
        raise ValueError(f"unknown action in payload: {raw!r}")
    return params


def deep_link(bot_username: str, payload: str) -> str:
    return f"https://t.me/{bot_username}?start={payload}"


# -------------------------
# Wiring
# -------------------------
@dataclass
class Services:
    store: SubscriptionStore
    source: CurrentNumberSource
    watcher: SubscriptionWatcher
    polls: PollStore
    activity: ActivityLog
    quota: UsageQuota
    histories: ChatHistoryStore
    llm: OpenWebUIClient


def _services(context: ContextTypes.DEFAULT_TYPE) -> Services:
    return context.bot_data["services"]


def _md_reply(context: ContextTypes.DEFAULT_TYPE, chat_id: int, text: str, reply_to: Optional[int], **kwargs: Any):
    return send_with_fallback(context.bot, chat_id, text, reply_to, parse_mode=ParseMode.MARKDOWN, **kwargs)


# -------------------------
# /start (deep links)
# -------------------------
async def start_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    svc = _services(context)
    chat = update.effective_chat
    user = update.effective_user
    payload = context.args[0] if context.args else ""
    svc.activity.record("start", user_id=user.id if user else None, chat_id=chat.id, payload=payload)
    if chat.type != ChatType.PRIVATE:
        return
    if not payload:
        await update.message.reply_text(WELCOME_TEXT, parse_mode=ParseMode.MARKDOWN)
        return

    try:
        params = decode_start_payload(payload)
        group_chat_id = int(params["group_chat_id"])
    except (KeyError, ValueError) as e:
        logger.warning("[start] Bad payload %r: %s", payload, e)
        await update.message.reply_text(BAD_PAYLOAD)
        return

    if params["action"] == "subscribe":
        await _subscribe_from_link(update, context, group_chat_id, params)
    else:
        await _unsubscribe_from_link(update, context, group_chat_id, params)


async def _subscribe_from_link(update: Update, context: ContextTypes.DEFAULT_TYPE, group_chat_id: int, params: Dict[str, str]) -> None:
    svc = _services(context)
    user = update.effective_user
    current = await svc.source.get_current_number()
    if current is None:
        await update.message.reply_text(NUMBER_UNAVAILABLE)
        return

    error = validate_target_number(params.get("target_number"), current, settings.MIN_NUMBER, settings.MAX_NUMBER)
    if error:
        await update.message.reply_text(
            _range_or_passed_text(error, params["target_number"]).strip(), parse_mode=ParseMode.MARKDOWN
        )
        return

    target = int(params["target_number"])
    user_message_id = int(params.get("user_message_id") or 0)
    try:
        svc.store.add(new_subscription(group_chat_id, user.id, user.first_name, target, user_message_id))
    except DuplicateSubscriptionError as e:
        await update.message.reply_text(
            f"⚠️ 你已經訂閱 *{e.existing.target_number}* 號了，不要重複訂，很遜。", parse_mode=ParseMode.MARKDOWN
        )
        return

    await update.message.reply_text(f"👑 哼嗯，*{target}* 號是吧？偶記下了，怕的是他。", parse_mode=ParseMode.MARKDOWN)
    try:
        await send_with_fallback(
            context.bot, group_chat_id, f"✅ {user.first_name} 已訂閱 {target} 號。", user_message_id or None
        )
    except TelegramError as e:
        logger.warning("[start] Could not confirm subscription in chat %s: %s", group_chat_id, e)


async def _unsubscribe_from_link(update: Update, context: ContextTypes.DEFAULT_TYPE, group_chat_id: int, params: Dict[str, str]) -> None:
    svc = _services(context)
    user = update.effective_user
    removed = svc.store.remove(group_chat_id, user.id)
    if removed is None:
        await update.message.reply_text(NOT_SUBSCRIBED)
        return
    await update.message.reply_text(
        f"🚫 哼嗯，偶幫你取消 *{removed.target_number}* 號的訂閱了。醬子。", parse_mode=ParseMode.MARKDOWN
    )
    group_message_id = params.get("group_message_id")
    if group_message_id:
        try:
            await context.bot.edit_message_text(
                chat_id=group_chat_id,
                message_id=int(group_message_id),
                text=f"✅ @{user.first_name} 已取消 {removed.target_number} 號的訂閱了。",
            )
        except (TelegramError, ValueError) as e:
            logger.warning("[start] Could not update group message %s: %s", group_message_id, e)


# -------------------------
# /number
# -------------------------
async def number_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    svc = _services(context)
    chat = update.effective_chat
    user = update.effective_user
    msg = update.effective_message
    svc.activity.record("number", user_id=user.id, chat_id=chat.id, text=msg.text)
    try:
        await context.bot.send_chat_action(chat.id, ChatAction.TYPING)
    except TelegramError:
        pass

    current = await svc.source.get_current_number()
    if current is None:
        await send_with_fallback(context.bot, chat.id, NUMBER_UNAVAILABLE, msg.message_id)
        return

    target_arg = context.args[0] if context.args else None
    text = f"👑 哼嗯，現在號碼是 *{current}*，醬子。"
    if chat.type == ChatType.PRIVATE:
        await _number_private(update, context, current, target_arg, text)
    else:
        await _number_group(update, context, current, target_arg, text)


def _range_or_passed_text(error: str, target_arg: Any) -> str:
    if error == "already_passed":
        # only reached for plain digit strings, so the parsed value is safe in Markdown
        return f"\n🤡 這位同學，*{int(target_arg)}* 已經過了，你很奇欸。"
    return INVALID_NUMBER.format(lo=settings.MIN_NUMBER, hi=settings.MAX_NUMBER)


async def _number_private(update: Update, context: ContextTypes.DEFAULT_TYPE, current: int, target_arg: Optional[str], text: str) -> None:
    svc = _services(context)
    chat = update.effective_chat
    user = update.effective_user
    msg = update.effective_message

    existing = svc.store.find(chat.id, user.id)
    if target_arg is None and existing:
        svc.store.remove(chat.id, user.id)
        await update.message.reply_text(
            f"🚫 哼嗯，偶幫你取消 *{existing.target_number}* 號的訂閱了。醬子。", parse_mode=ParseMode.MARKDOWN
        )
        return
    if existing:
        text += f"\n✅ 你已經訂閱 *{existing.target_number}* 號了。想取消？打 `/number` 就好，醬子。"
        await _md_reply(context, chat.id, text, msg.message_id)
        return

    if target_arg is None:
        text += SUBSCRIBE_HINT
    else:
        error = validate_target_number(target_arg, current, settings.MIN_NUMBER, settings.MAX_NUMBER)
        if error is None:
            target = int(target_arg)
            try:
                svc.store.add(new_subscription(chat.id, user.id, user.first_name, target, msg.message_id))
                text += f"\n👑 哼嗯，*{target}* 號是吧？偶記下了，怕的是他。想取消再打一次 `/number` 就好。"
            except DuplicateSubscriptionError as e:
                text += f"\n⚠️ 你已經訂閱 *{e.existing.target_number}* 號了，不要重複訂，很遜。"
        else:
            text += _range_or_passed_text(error, target_arg)
    await _md_reply(context, chat.id, text, msg.message_id)


async def _number_group(update: Update, context: ContextTypes.DEFAULT_TYPE, current: int, target_arg: Optional[str], text: str) -> None:
    svc = _services(context)
    chat = update.effective_chat
    user = update.effective_user
    msg = update.effective_message
    username = context.bot.username

    existing = svc.store.find(chat.id, user.id)
    if existing:
        text += f"\n✅ 你訂閱的 *{existing.target_number}* 號偶記下了，怕的是他。叫到再跟你說，安安。"
        sent = await _md_reply(context, chat.id, text, msg.message_id)
        payload = encode_start_payload("unsubscribe", group_chat_id=chat.id, group_message_id=sent.message_id)
        keyboard = InlineKeyboardMarkup([[InlineKeyboardButton("🚫 私訊偶取消", url=deep_link(username, payload))]])
        try:
            await context.bot.edit_message_reply_markup(chat_id=chat.id, message_id=sent.message_id, reply_markup=keyboard)
        except TelegramError as e:
            logger.warning("[number] Could not attach unsubscribe button: %s", e)
        return

    if target_arg is None:
        text += SUBSCRIBE_HINT
        await _md_reply(context, chat.id, text, msg.message_id)
        return

    error = validate_target_number(target_arg, current, settings.MIN_NUMBER, settings.MAX_NUMBER)
    if error is None:
        target = int(target_arg)
        text += f"\n🤔 你這 *{target}* 號還沒到，想訂閱就私訊偶，怕的是他。"
        payload = encode_start_payload(
            "subscribe", target_number=target, group_chat_id=chat.id, user_message_id=msg.message_id
        )
        keyboard = InlineKeyboardMarkup([[InlineKeyboardButton("🔔 私訊偶訂閱", url=deep_link(username, payload))]])
        await _md_reply(context, chat.id, text, msg.message_id, reply_markup=keyboard)
        return
    text += _range_or_passed_text(error, target_arg)
    await _md_reply(context, chat.id, text, msg.message_id)


# -------------------------
# Polls
# -------------------------
def _stop_keyboard(label: str, prefix: str, creator_id: int) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([[InlineKeyboardButton(label, callback_data=f"{prefix}_{short_hash(creator_id)}")]])


async def _send_poll(update: Update, context: ContextTypes.DEFAULT_TYPE, title: str, options: List[str], keyboard: Optional[InlineKeyboardMarkup]) -> None:
    svc = _services(context)
    chat = update.effective_chat
    user = update.effective_user
    msg = update.effective_message
    sent = await context.bot.send_poll(
        chat_id=chat.id,
        question=title,
        options=options,
        is_anonymous=False,
        allows_multiple_answers=True,
        reply_parameters=ReplyParameters(message_id=msg.message_id, allow_sending_without_reply=True),
        reply_markup=keyboard,
    )
    svc.polls.update(
        sent.poll.id,
        {
            **sent.poll.to_dict(),
            "chat_id": chat.id,
            "message_id": sent.message_id,
            "user_id": user.id,
            "chat_name": chat.title or chat.first_name,
            "chat_type": chat.type,
            "votes": {},
        },
    )


async def vote_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    user = update.effective_user
    logger.info("[vote] command in chat %s from %s", update.effective_chat.id, user.id)
    title = context.args[0] if context.args else "今天ㄘ什麼 🤔"
    bye = context.args[1] if len(context.args or []) > 1 else random.choice(BYE_OPTIONS)
    await _send_poll(update, context, title, VOTE_OPTIONS + [bye], _stop_keyboard("🚫 結束！很遜欸", "stopvote", user.id))


async def voteramen_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    user = update.effective_user
    title = context.args[0] if context.args else "限定拉麵，點餐！🍜"
    bye = context.args[1] if len(context.args or []) > 1 else random.choice(BYE_OPTIONS)
    await _send_poll(
        update, context, title, RAMEN_OPTIONS + [bye], _stop_keyboard("👥 0 人 | 🚫 結束投票", "stopramenvote", user.id)
    )


async def stop_vote_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    svc = _services(context)
    query = update.callback_query
    prefix, _, owner_hash = (query.data or "").partition("_")
    if owner_hash != short_hash(query.from_user.id):
        await query.answer(ONLY_CREATOR, show_alert=True)
        return
    message = query.message
    poll = await context.bot.stop_poll(chat_id=message.chat.id, message_id=message.message_id)
    options = [(o.text, o.voter_count) for o in poll.options]
    if prefix == "stopramenvote":
        count, result = parse_ramen_result(options)
        lines = [f"{poll.question} 點餐結果，挖賽！🤩"]
        lines += [f"{item}：{n} 人" for item, n in result.items()]
        lines.append(f"———\n共 {count} 個人，醬子。🥳")
        text = "\n".join(lines)
    else:
        text = f"{poll.question} 投票結束，醬子共 {vote_head_count(options)} 個人要ㄘ。🥳"
    await query.answer()
    await send_with_fallback(context.bot, message.chat.id, text, message.message_id)
    svc.polls.update(poll.id, poll.to_dict())


async def poll_answer_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    svc = _services(context)
    answer = update.poll_answer
    voter = answer.user
    if voter is None:
        return
    svc.polls.record_voter(voter.id, voter.first_name, voter.username)
    poll = svc.polls.record_answer(answer.poll_id, voter.id, list(answer.option_ids))
    if poll is None:
        return
    option_texts = [o.get("text", "") for o in poll.get("options") or []]
    if not is_ramen_poll(option_texts):
        return
    total = ramen_live_total(poll.get("votes") or {}, len(option_texts))
    try:
        await context.bot.edit_message_reply_markup(
            chat_id=poll["chat_id"],
            message_id=poll["message_id"],
            reply_markup=_stop_keyboard(f"👥 {total} 人 | 🚫 結束投票", "stopramenvote", poll["user_id"]),
        )
    except BadRequest as e:
        if "message is not modified" not in (e.message or "").lower():
            logger.error("[vote] Failed to edit reply markup: %s", e)
    except (KeyError, TelegramError) as e:
        logger.error("[vote] Failed to edit reply markup: %s", e)


# -------------------------
# Chat tools
# -------------------------
PRIVATE_ONLY_SUBSCRIBE = "🗣️ 告老師喔！在群組不能直接訂閱，請私訊偶醬子才行。"
PRIVATE_ONLY_UNSUBSCRIBE = "🗣️ 告老師喔！在群組不能直接取消訂閱，請私訊偶醬子才行。"
TOOL_NOT_DONE = {"done": False}


def build_chat_tools(update: Update, context: ContextTypes.DEFAULT_TYPE) -> Dict[str, ChatTool]:
    """Tools bound to the message being answered."""
    svc = _services(context)
    chat = update.effective_chat
    user = update.effective_user
    msg = update.effective_message

    async def reply(text: str, markdown: bool = False) -> None:
        if markdown:
            await _md_reply(context, chat.id, text, msg.message_id)
        else:
            await send_with_fallback(context.bot, chat.id, text, msg.message_id)

    async def tarot(question: str = "") -> str:
        cards = ", ".join(str(n) for n in random.sample(range(1, 79), 3))
        text = await svc.llm.complete([
            {"role": "system", "content": TAROT_PROMPT},
            {"role": "assistant", "content": f"已抽選塔羅牌：{cards}"},
            {"role": "user", "content": question},
        ])
        return format_tarot(text)

    async def get_current_number() -> Dict[str, Any]:
        return {"current_number": await svc.source.get_current_number()}

    async def create_vote(title: str = "", options: Optional[List[str]] = None) -> Any:
        options = [str(o) for o in options or [] if str(o).strip()]
        if not 2 <= len(options) <= 10:
            return {"done": False, "error": "options must have 2 to 10 entries"}
        await _send_poll(update, context, title.strip() or "今天ㄘ什麼 🤔", options, None)
        return "已傳送投票給使用者"

    async def create_ramen_vote(title: str = "", bye_option: str = "") -> str:
        bye = bye_option.strip() or random.choice(BYE_OPTIONS)
        keyboard = _stop_keyboard("👥 0 人 | 🚫 結束投票", "stopramenvote", user.id)
        await _send_poll(update, context, title.strip() or "限定拉麵，點餐！🍜", RAMEN_OPTIONS + [bye], keyboard)
        return "已傳送投票給使用者"

    async def subscribe_number(target_number: Any = None) -> Any:
        if chat.type != ChatType.PRIVATE:
            await reply(PRIVATE_ONLY_SUBSCRIBE)
            return TOOL_NOT_DONE
        current = await svc.source.get_current_number()
        if current is None:
            await reply(NUMBER_UNAVAILABLE)
            return TOOL_NOT_DONE
        error = validate_target_number(target_number, current, settings.MIN_NUMBER, settings.MAX_NUMBER)
        if error:
            await reply(_range_or_passed_text(error, target_number).strip(), markdown=True)
            return TOOL_NOT_DONE
        target = int(str(target_number).strip())
        try:
            svc.store.add(new_subscription(chat.id, user.id, user.first_name, target, msg.message_id))
        except DuplicateSubscriptionError as e:
            await reply(f"⚠️ 你已經訂閱 *{e.existing.target_number}* 號了，不要重複訂，很遜。", markdown=True)
            return TOOL_NOT_DONE
        await reply(f"👑 哼嗯，*{target}* 號是吧？偶記下了，怕的是他。想取消再跟偶說醬子。", markdown=True)
        return "已傳送訂閱訊息給使用者"

    async def unsubscribe_number() -> Any:
        if chat.type != ChatType.PRIVATE:
            await reply(PRIVATE_ONLY_UNSUBSCRIBE)
            return TOOL_NOT_DONE
        removed = svc.store.remove(chat.id, user.id)
        if removed is None:
            await reply(NOT_SUBSCRIBED)
            return TOOL_NOT_DONE
        await reply(f"🚫 哼嗯，偶幫你取消 *{removed.target_number}* 號的訂閱了。醬子。", markdown=True)
        return "已傳送取消訂閱訊息給使用者"

    tools = [
        ChatTool(
            "tarot",
            "提供塔羅牌占卜，請使用者提供問題，並提供三張牌的結果",
            tarot,
            {"type": "object", "properties": {"question": {"type": "string"}}, "required": ["question"]},
        ),
        ChatTool("get_current_number", "取得目前號碼牌數字", get_current_number),
        ChatTool(
            "create_vote",
            "在聊天中建立普通投票，限文字選項",
            create_vote,
            {
                "type": "object",
                "properties": {
                    "title": {"type": "string"},
                    "options": {"type": "array", "items": {"type": "string"}, "minItems": 2, "maxItems": 10},
                },
                "required": ["title", "options"],
            },
        ),
        ChatTool(
            "create_ramen_vote",
            "建立拉麵點餐投票，當提到拉麵時，請務必使用這個工具建立投票，提供人數統計功能的投票，可自訂標題與離開選項文字",
            create_ramen_vote,
            {
                "type": "object",
                "properties": {
                    "title": {"type": "string", "description": "投票標題"},
                    "bye_option": {
                        "type": "string",
                        "description": "拉麵投票中不來的選項，像是「掰掰」、「蓋被被 😴」、「怕的是他 👑」，隨便選一個就好",
                    },
                },
            },
        ),
        ChatTool(
            "subscribe_number",
            "訂閱叫號牌，僅限私訊使用。",
            subscribe_number,
            {
                "type": "object",
                "properties": {
                    "target_number": {
                        "type": "integer",
                        "description": f"要訂閱的號碼 ({settings.MIN_NUMBER}-{settings.MAX_NUMBER})",
                    },
                },
                "required": ["target_number"],
            },
        ),
        ChatTool("unsubscribe_number", "取消目前使用者訂閱的號碼牌，僅限私訊使用。", unsubscribe_number),
    ]
    return {t.name: t for t in tools}


# -------------------------
# Main message handler (LLM chat)
# -------------------------
async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    svc = _services(context)
    msg = update.effective_message
    chat = update.effective_chat
    user = update.effective_user
    if msg is None or user is None:
        return

    if msg.sticker:
        content = f"[貼圖 {msg.sticker.emoji or '🤔'}]"
    else:
        content = (msg.text or "").strip()
    if not content:
        return

    replied = msg.reply_to_message
    replied_to_bot = bool(replied and replied.from_user and replied.from_user.id == context.bot.id)
    if not should_respond(chat.type, msg.text or "", context.bot.username or "", replied_to_bot):
        return

    if not svc.quota.check_and_increment(chat.type, user.id, chat.id):
        await send_with_fallback(context.bot, chat.id, random.choice(LIMIT_MSGS), msg.message_id)
        return

    try:
        await context.bot.send_chat_action(chat.id, ChatAction.TYPING)
    except TelegramError:
        pass

    if replied:
        if replied.text:
            replied_text = replied.text
        elif replied.caption:
            replied_text = replied.caption
        elif replied.sticker:
            replied_text = f"[貼圖 {replied.sticker.emoji or ''}]"
        else:
            replied_text = None
        replied_name = replied.from_user.first_name if replied.from_user else ""
        content = quote_reply(content, replied_name, replied_text)
    if chat.type != ChatType.PRIVATE:
        content = f"{user.first_name or 'User'}：{content}"

    svc.histories.append(chat.id, "user", content)
    await svc.histories.compact(chat.id, svc.llm)
    speaker = " ".join(p for p in (user.last_name, user.first_name) if p)
    messages = build_model_messages(svc.histories.messages(chat.id), speaker)

    try:
        reply = await svc.llm.complete_with_tools(messages, build_chat_tools(update, context))
    except LLMError as e:
        logger.error("[llm] Generation failed: %s", e)
        reply = FALLBACK_REPLY
    if not reply:
        return
    svc.histories.append(chat.id, "assistant", reply)
    svc.histories.save()
    await send_with_fallback(context.bot, chat.id, reply[: settings.TELEGRAM_MAX_LEN], msg.message_id)


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    logger.error("Unhandled error while processing %r", update, exc_info=context.error)


# -------------------------
# Entrypoint
# -------------------------
def build_services(app: Application) -> Services:
    store = JsonSubscriptionStore(JsonFileDb(settings.SUBSCRIPTIONS_FILE))
    source = CurrentNumberSource(
        settings.NUMBER_FEED_URL,
        settings.NUMBER_FEED_KEY,
        ttl=settings.NUMBER_CACHE_TTL_SECS,
        timeout=settings.NUMBER_FEED_TIMEOUT_SECS,
    )
    activity = ActivityLog(JsonFileDb(settings.USAGE_FILE))
    watcher = SubscriptionWatcher(
        store,
        source,
        Notifier(app.bot),
        expiry_secs=settings.SUBSCRIPTION_EXPIRY_SECS,
        interval_secs=settings.CHECK_INTERVAL_SECS,
        activity=activity,
    )
    return Services(
        store=store,
        source=source,
        watcher=watcher,
        polls=PollStore(JsonFileDb(settings.VOTES_FILE)),
        activity=activity,
        quota=UsageQuota(
            JsonFileDb(settings.QUOTA_FILE),
            per_user=settings.QUOTA_PER_USER,
            per_group=settings.QUOTA_PER_GROUP,
            global_limit=settings.QUOTA_GLOBAL,
            retention_days=settings.QUOTA_RETENTION_DAYS,
        ),
        histories=ChatHistoryStore(JsonFileDb(settings.HISTORIES_FILE), settings.HISTORY_MAX_MESSAGES),
        llm=OpenWebUIClient(
            settings.OPENWEBUI_BASE_URL,
            settings.OPENWEBUI_API_KEY,
            settings.OPENWEBUI_MODEL,
            timeout=settings.LLM_TIMEOUT_SECS,
        ),
    )


async def _post_init(app: Application) -> None:
    _services_of(app).watcher.start()


async def _post_stop(app: Application) -> None:
    await _services_of(app).watcher.stop()


def _services_of(app: Application) -> Services:
    return app.bot_data["services"]


def build_application(token: str) -> Application:
    app: Application = (
        ApplicationBuilder().token(token).post_init(_post_init).post_stop(_post_stop).build()
    )
    app.bot_data["services"] = build_services(app)

    app.add_handler(CommandHandler("start", start_cmd))
    app.add_handler(CommandHandler("number", number_cmd))
    app.add_handler(CommandHandler("vote", vote_cmd))
    app.add_handler(CommandHandler("voteramen", voteramen_cmd))
    app.add_handler(CallbackQueryHandler(stop_vote_callback, pattern="^(stopvote|stopramenvote)_"))
    app.add_handler(PollAnswerHandler(poll_answer_handler))
    app.add_handler(MessageHandler((filters.TEXT & ~filters.COMMAND) | filters.Sticker.ALL, handle_message))
    app.add_error_handler(error_handler)
    return app


def main() -> None:
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", level=settings.LOG_LEVEL
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    if not settings.TELEGRAM_BOT_TOKEN:
        raise SystemExit("Please set the TELEGRAM_BOT_TOKEN environment variable.")

    app = build_application(settings.TELEGRAM_BOT_TOKEN)
    try:
        app.run_polling(allowed_updates=Update.ALL_TYPES)
    finally:
        logger.info("[shutdown] Bot stopped.")


if __name__ == "__main__":
    main()
