from __future__ import annotations

import asyncio
import logging
from typing import Optional

import violation_db
from tradeguard.engine.orchestrator import analyze_message
from tradeguard.engine.severity import most_severe
from tradeguard.errors import ClassificationError, PersistenceError
from tradeguard.models import FlaggedMessage, ModerationStatus, SendDecision
from tradeguard.services.enforcement import can_send, record_violation
from tradeguard.services.metrics import record_block, stats

logger = logging.getLogger(__name__)


async def submit_message(
    user_id: int,
    conversation_id: int,
    text: str,
    is_auto_reply: bool = False,
    external_id: Optional[int] = None,
    notifier=None,
    now: Optional[float] = None,
) -> SendDecision:
    """
    Gate a message before it is accepted.

    1. Sanction check (with lazy expiry of suspensions/restrictions).
    2. Classification.
    3. On violation: store the flagged message, record the violation and
       flag the conversation in one transaction, then reject the send with
       the enforcement reason.

    Infrastructure failures reject the send (fail-closed).
    """
    now = now if now is not None else violation_db.now_ts()
    stats["messages_checked"] += 1

    try:
        await asyncio.to_thread(violation_db.ensure_user, user_id, now)
        permission = await can_send(user_id, now=now)
    except PersistenceError as e:
        logger.error(f"Permission check failed for user {user_id}: {e}")
        return SendDecision(allowed=False, code=e.code, reason="Message could not be sent right now, please retry", retryable=True)

    if not permission.allowed:
        stats["sends_denied"] += 1
        logger.info(f"Message blocked - user restricted: {user_id} ({permission.code})")
        return permission

    try:
        result = analyze_message(text, is_auto_reply=is_auto_reply)
    except ClassificationError as e:
        # Unchecked content is held for manual review, never passed as clean.
        message_id = None
        try:
            message_id = await asyncio.to_thread(
                violation_db.store_message,
                conversation_id, user_id, text, ModerationStatus.BLOCKED, [],
                is_auto_reply, external_id, now,
            )
        except PersistenceError as store_error:
            logger.error(f"Failed to hold unclassified message from user {user_id}: {store_error}")
        return SendDecision(
            allowed=False,
            code=e.code,
            reason=e.reason,
            message_id=message_id,
            retryable=True,
        )

    if result.is_valid:
        try:
            message_id = await asyncio.to_thread(
                violation_db.store_message,
                conversation_id, user_id, text, ModerationStatus.APPROVED, [],
                is_auto_reply, external_id, now,
            )
        except PersistenceError as e:
            logger.error(f"Failed to store message from user {user_id}: {e}")
            return SendDecision(allowed=False, code=e.code, reason="Message could not be sent right now, please retry", retryable=True)
        return SendDecision(allowed=True, message_id=message_id)

    categories = result.categories
    logger.info(f"Message blocked for user {user_id}: {categories}")
    record_block(categories)

    try:
        outcome = await record_violation(
            user_id,
            most_severe(result.violations),
            violation_text=text,
            now=now,
            notifier=notifier,
            flagged_message=FlaggedMessage(
                conversation_id=conversation_id,
                text=text,
                categories=categories,
                is_auto_reply=is_auto_reply,
                external_id=external_id,
            ),
        )
    except PersistenceError as e:
        logger.error(f"Enforcement failed for user {user_id}: {e}")
        return SendDecision(
            allowed=False,
            code=e.code,
            reason=result.blocked_reason,
            violations=categories,
            retryable=True,
        )

    return SendDecision(
        allowed=False,
        code="content_violation",
        reason=outcome.action.message,
        violations=categories,
        outcome=outcome,
        message_id=outcome.message_id,
    )
