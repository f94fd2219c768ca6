from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from telegram import Update
from telegram.ext import ContextTypes

from config import AUTO_DELETE_DELAY, BLOCKED_NOTICE
from tradeguard.services.gate import submit_message
from tradeguard.services.metrics import touch_group

logger = logging.getLogger("tradeguard")


_processed_messages = {}
_MESSAGE_DEDUP_WINDOW = 300  # seconds


def _is_duplicate(chat_id: int, message_id: int) -> bool:
    now = datetime.now().timestamp()
    for k, ts in list(_processed_messages.items()):
        if now - ts > _MESSAGE_DEDUP_WINDOW:
            _processed_messages.pop(k, None)
    key = (chat_id, message_id)
    if key in _processed_messages:
        return True
    _processed_messages[key] = now
    return False


async def handle_text_message(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Run every incoming text message through the send gate."""
    message = update.effective_message
    user = update.effective_user
    if not message or not message.text or not user:
        return

    # Telegram redelivers updates on webhook retries
    if _is_duplicate(message.chat_id, message.message_id):
        return

    touch_group(message.chat_id)

    decision = await submit_message(
        user_id=user.id,
        conversation_id=message.chat_id,
        text=message.text,
        is_auto_reply=bool(getattr(user, "is_bot", False)),
        external_id=message.message_id,
        notifier=context.bot_data.get("notifier"),
    )
    if decision.allowed:
        return

    logger.info(f"Blocked message {message.message_id} from {user.id}: {decision.code}")
    try:
        await message.delete()
    except Exception as e:
        logger.debug(f"Failed to delete message: {e}")

    mention = f"@{user.username}" if user.username else user.first_name
    notice = BLOCKED_NOTICE.format(mention=mention, reason=decision.reason, delay=AUTO_DELETE_DELAY)
    await _send_temp_notice(message.chat, notice, delay=AUTO_DELETE_DELAY)


async def _send_temp_notice(chat, text: str, delay: int = AUTO_DELETE_DELAY) -> None:
    try:
        sent = await chat.send_message(text, parse_mode="Markdown")
    except Exception as e:
        logger.debug(f"Failed to post notice: {e}")
        return
    asyncio.create_task(_delete_after_delay(sent, delay))


async def _delete_after_delay(message, delay: int):
    await asyncio.sleep(delay)
    try:
        await message.delete()
    except Exception:
        pass
