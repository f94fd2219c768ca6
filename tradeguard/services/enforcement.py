"""
Progressive enforcement: warning -> messaging restriction -> suspension -> ban.

Every violation is evaluated against the user's rolling 90 day count. The
read-count/decide/write sequence runs under a per-user asyncio lock and inside
one IMMEDIATE transaction, so two concurrent violations for the same user
always observe different counts.
"""
from __future__ import annotations

import asyncio
import logging
import math
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import violation_db
from config import (
    BAN_THRESHOLD,
    LONG_SUSPENSION_DAYS,
    LONG_SUSPENSION_THRESHOLD,
    PENDING_GRACE_SECONDS,
    RESTRICTION_DAYS,
    RESTRICTION_THRESHOLD,
    SHORT_SUSPENSION_DAYS,
    SHORT_SUSPENSION_THRESHOLD,
    VIOLATION_WINDOW_DAYS,
)
from tradeguard.engine.ladder import Rung, ThresholdLadder
from tradeguard.engine.severity import severity_of
from tradeguard.errors import UserNotFoundError
from tradeguard.models import (
    ActionType,
    EnforcementAction,
    EnforcementOutcome,
    FlaggedMessage,
    ModerationStatus,
    SendDecision,
    Severity,
    UserEnforcement,
    UserStatus,
    ViolationStatus,
    ViolationType,
)
from tradeguard.services.metrics import record_action

logger = logging.getLogger(__name__)

DAY_SECONDS = violation_db.DAY_SECONDS


def _window_count(user_id: int, conn, now: float) -> int:
    return violation_db.count_violations_in_window(conn, user_id, VIOLATION_WINDOW_DAYS, now)


ENFORCEMENT_LADDER = ThresholdLadder(
    rungs=[
        Rung(ActionType.SUSPENSION, "Critical policy violation", severity=Severity.CRITICAL, days=LONG_SUSPENSION_DAYS),
        Rung(ActionType.BAN, "Multiple policy violations", min_count=BAN_THRESHOLD),
        Rung(ActionType.SUSPENSION, "Repeated policy violations", min_count=LONG_SUSPENSION_THRESHOLD, days=LONG_SUSPENSION_DAYS),
        Rung(ActionType.SUSPENSION, "Multiple policy violations", min_count=SHORT_SUSPENSION_THRESHOLD, days=SHORT_SUSPENSION_DAYS),
        Rung(ActionType.RESTRICTION, "Policy violation - messaging restricted", min_count=RESTRICTION_THRESHOLD, days=RESTRICTION_DAYS),
    ],
    default=Rung(ActionType.WARNING, "First policy violation - this is a warning"),
    window=_window_count,
)


# Per-user serialization point. Entries are dropped once nobody holds or
# waits on them.
_user_locks: Dict[int, asyncio.Lock] = {}
_lock_holders: Dict[int, int] = defaultdict(int)


@asynccontextmanager
async def user_lock(user_id: int):
    lock = _user_locks.setdefault(user_id, asyncio.Lock())
    _lock_holders[user_id] += 1
    try:
        async with lock:
            yield
    finally:
        _lock_holders[user_id] -= 1
        if _lock_holders[user_id] <= 0:
            _lock_holders.pop(user_id, None)
            _user_locks.pop(user_id, None)


def _suspension_active(user: UserEnforcement, now: float) -> bool:
    return (
        user.status == UserStatus.SUSPENDED
        and user.suspended_until is not None
        and user.suspended_until > now
    )


def apply_action(user: UserEnforcement, action: EnforcementAction, now: float) -> EnforcementAction:
    """
    Mutate the user's enforcement fields for `action` and return the action
    that actually took effect.

    The stronger sanction always wins: a restriction never shortens an active
    suspension, a suspension clears any restriction, a ban clears both. A
    restriction against a suspended user changes nothing and comes back as
    ActionType.NONE.
    """
    if action.type == ActionType.WARNING:
        user.warning_count += 1
        user.last_warning_at = now

    elif action.type == ActionType.RESTRICTION:
        if _suspension_active(user, now):
            return EnforcementAction(type=ActionType.NONE, reason="Stronger sanction already active")
        until = now + action.days * DAY_SECONDS
        if user.messaging_restricted and user.restricted_until and user.restricted_until > until:
            until = user.restricted_until
        user.messaging_restricted = True
        user.restricted_until = until
        user.restricted_reason = action.reason
        user.status = UserStatus.RESTRICTED
        action.until = until

    elif action.type == ActionType.SUSPENSION:
        until = now + action.days * DAY_SECONDS
        if _suspension_active(user, now) and user.suspended_until > until:
            until = user.suspended_until
        user.status = UserStatus.SUSPENDED
        user.suspended_until = until
        user.ban_reason = action.reason  # shared with bans as the sanction reason
        user.messaging_restricted = False
        user.restricted_until = None
        user.restricted_reason = None
        action.until = until

    elif action.type == ActionType.BAN:
        user.status = UserStatus.BANNED
        user.banned_at = now
        user.ban_reason = action.reason
        user.suspended_until = None
        user.messaging_restricted = False
        user.restricted_until = None
        user.restricted_reason = None

    return action


def _decide_and_apply(conn, user: UserEnforcement, severity: Severity, evaluated_at: float, now: float):
    decision = ENFORCEMENT_LADDER.evaluate(user.user_id, severity, conn=conn, now=evaluated_at)

    if user.status == UserStatus.BANNED:
        # Ban is terminal: audit entry only
        action = EnforcementAction(type=ActionType.NONE, reason="Account already banned")
    else:
        action = apply_action(
            user,
            EnforcementAction(
                type=decision.rung.action,
                reason=decision.rung.reason,
                days=decision.rung.days,
            ),
            now,
        )

    user.violation_count = decision.count
    user.last_violation_at = now
    violation_db.save_user(conn, user)
    return decision.count, action


def _record_violation_sync(
    user_id: int,
    violation_type: ViolationType,
    conversation_id: Optional[int],
    message_id: Optional[int],
    violation_text: Optional[str],
    is_automatic: bool,
    action_taken_by: Optional[int],
    now: float,
    flagged_message: Optional[FlaggedMessage] = None,
) -> EnforcementOutcome:
    violation_type = ViolationType(violation_type)
    severity = severity_of(violation_type)

    with violation_db.transaction() as conn:
        user = violation_db.get_user(user_id, conn=conn)
        if user is None:
            conn.execute(
                "INSERT INTO users (user_id, status, created_at) VALUES (?, 'active', ?)",
                (user_id, now),
            )
            user = violation_db.get_user(user_id, conn=conn)

        if flagged_message is not None:
            conversation_id = flagged_message.conversation_id
            message_id = violation_db.store_message(
                conversation_id,
                user_id,
                flagged_message.text,
                ModerationStatus.FLAGGED,
                flagged_message.categories,
                flagged_message.is_auto_reply,
                flagged_message.external_id,
                now,
                conn=conn,
            )
            violation_db.flag_conversation(
                conversation_id,
                f"Violation detected: {', '.join(flagged_message.categories)}",
                now,
                conn=conn,
            )

        violation_id = violation_db.insert_violation(
            conn,
            user_id=user_id,
            violation_type=violation_type,
            severity=severity,
            detected_at=now,
            conversation_id=conversation_id,
            message_id=message_id,
            violation_text=violation_text,
            is_automatic=is_automatic,
            action_taken_by=action_taken_by,
        )
        window_count, action = _decide_and_apply(conn, user, severity, now, now)
        violation_db.mark_violation_actioned(conn, violation_id, action.type, action.reason, now)

    return EnforcementOutcome(
        violation_id=violation_id,
        action=action,
        window_count=window_count,
        severity=severity,
        message_id=message_id,
    )


async def record_violation(
    user_id: int,
    violation_type: ViolationType,
    conversation_id: Optional[int] = None,
    message_id: Optional[int] = None,
    violation_text: Optional[str] = None,
    is_automatic: bool = True,
    action_taken_by: Optional[int] = None,
    now: Optional[float] = None,
    notifier=None,
    flagged_message: Optional[FlaggedMessage] = None,
) -> EnforcementOutcome:
    """
    Append a violation to the ledger and apply the resulting enforcement.

    The ledger row, the user mutation and (when given) the flagged message
    with its conversation flag commit together; a database failure raises
    PersistenceError and leaves none of them behind.

    The notice is scheduled in the background and never awaited here.
    """
    now = now if now is not None else violation_db.now_ts()

    async with user_lock(user_id):
        outcome = await asyncio.to_thread(
            _record_violation_sync,
            user_id, violation_type, conversation_id, message_id,
            violation_text, is_automatic, action_taken_by, now, flagged_message,
        )

    logger.info(
        f"Violation recorded for user {user_id}: {ViolationType(violation_type).value} "
        f"({outcome.severity.value}, window={outcome.window_count}) -> {outcome.action.type.value}"
    )
    record_action(outcome.action.type, outcome.severity)

    if notifier is not None and outcome.action.type != ActionType.NONE:
        notifier.dispatch(user_id, outcome.action, violation_id=outcome.violation_id)

    return outcome


def _remaining_days(until: float, now: float) -> int:
    return math.ceil((until - now) / DAY_SECONDS)


def check_send_permission(user_id: int, now: Optional[float] = None) -> SendDecision:
    """
    Decide whether a user may send right now.

    Expired suspensions and restrictions are cleared here (there is no timer),
    and the cleared state is committed before an allow is returned.
    """
    now = now if now is not None else violation_db.now_ts()

    with violation_db.transaction() as conn:
        user = violation_db.get_user(user_id, conn=conn)
        if user is None:
            return SendDecision(allowed=False, code=UserNotFoundError.code, reason="User not found")

        if user.status == UserStatus.BANNED:
            return SendDecision(
                allowed=False,
                code="user_banned",
                reason=f"Your account is permanently banned. Reason: {user.ban_reason}",
            )

        changed = False
        if user.status == UserStatus.SUSPENDED:
            if user.suspended_until and user.suspended_until > now:
                days = _remaining_days(user.suspended_until, now)
                return SendDecision(
                    allowed=False,
                    code="user_suspended",
                    reason=f"Your account is suspended for {days} more days. Reason: {user.ban_reason}",
                )
            logger.info(f"Suspension expired for user {user_id}, reactivating")
            user.status = UserStatus.ACTIVE
            user.suspended_until = None
            changed = True

        if user.messaging_restricted:
            if user.restricted_until and user.restricted_until > now:
                if changed:
                    violation_db.save_user(conn, user)
                days = _remaining_days(user.restricted_until, now)
                return SendDecision(
                    allowed=False,
                    code="user_restricted",
                    reason=f"Your messaging is restricted for {days} more days. Reason: {user.restricted_reason}",
                )
            logger.info(f"Messaging restriction expired for user {user_id}, clearing")
            user.messaging_restricted = False
            user.restricted_until = None
            user.restricted_reason = None
            user.status = UserStatus.ACTIVE
            changed = True
        elif user.status == UserStatus.RESTRICTED:
            user.status = UserStatus.ACTIVE
            changed = True

        if changed:
            violation_db.save_user(conn, user)

    return SendDecision(allowed=True)


async def can_send(user_id: int, now: Optional[float] = None) -> SendDecision:
    async with user_lock(user_id):
        return await asyncio.to_thread(check_send_permission, user_id, now)


def _reconcile_one(violation_id: int, now: float) -> Optional[EnforcementOutcome]:
    with violation_db.transaction() as conn:
        violation = violation_db.get_violation(violation_id, conn=conn)
        if violation is None or violation.status != ViolationStatus.PENDING:
            return None
        user = violation_db.get_user(violation.user_id, conn=conn)
        if user is None:
            conn.execute(
                "INSERT INTO users (user_id, status, created_at) VALUES (?, 'active', ?)",
                (violation.user_id, now),
            )
            user = violation_db.get_user(violation.user_id, conn=conn)

        # Count as of detection time; sanction durations run from now.
        window_count, action = _decide_and_apply(conn, user, violation.severity, violation.detected_at, now)
        violation_db.mark_violation_actioned(conn, violation.id, action.type, action.reason, now)

    return EnforcementOutcome(
        violation_id=violation_id,
        action=action,
        window_count=window_count,
        severity=violation.severity,
    )


async def reconcile_pending(
    grace_seconds: int = PENDING_GRACE_SECONDS,
    now: Optional[float] = None,
    notifier=None,
) -> List[EnforcementOutcome]:
    """Re-evaluate violations left `pending` longer than the grace period."""
    now = now if now is not None else violation_db.now_ts()
    stale = await asyncio.to_thread(violation_db.list_stale_pending_violations, now - grace_seconds)

    outcomes = []
    for violation in stale:
        async with user_lock(violation.user_id):
            outcome = await asyncio.to_thread(_reconcile_one, violation.id, now)
        if outcome is None:
            continue
        logger.info(
            f"Reconciled pending violation {violation.id} for user {violation.user_id} -> {outcome.action.type.value}"
        )
        record_action(outcome.action.type, outcome.severity)
        if notifier is not None and outcome.action.type != ActionType.NONE:
            notifier.dispatch(violation.user_id, outcome.action, violation_id=violation.id)
        outcomes.append(outcome)
    return outcomes
