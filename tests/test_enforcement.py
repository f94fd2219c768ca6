import asyncio
import sys
import os

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import violation_db
from violation_db import DAY_SECONDS, init_db
from tradeguard.models import (
    ActionType,
    EnforcementAction,
    UserEnforcement,
    UserStatus,
    ViolationStatus,
    ViolationType,
)
from tradeguard.services import enforcement
from tradeguard.services.enforcement import (
    apply_action,
    can_send,
    reconcile_pending,
    record_violation,
)

T = 1_700_000_000.0


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    db_file = tmp_path / "tradeguard_test.db"
    monkeypatch.setattr(violation_db, "DB_PATH", str(db_file))
    init_db()
    yield str(db_file)


def _insert_old_violation(user_id, detected_at, violation_type=ViolationType.SPAM):
    violation_db.ensure_user(user_id, now=detected_at)
    with violation_db.transaction() as conn:
        vid = violation_db.insert_violation(
            conn,
            user_id=user_id,
            violation_type=violation_type,
            severity="medium",
            detected_at=detected_at,
        )
        violation_db.mark_violation_actioned(conn, vid, ActionType.WARNING, "old", detected_at)
    return vid


@pytest.mark.asyncio
async def test_progressive_sequence(temp_db):
    user_id = 1001
    expected = [
        (ActionType.WARNING, None),
        (ActionType.RESTRICTION, 7),
        (ActionType.SUSPENSION, 7),
        (ActionType.SUSPENSION, 30),
        (ActionType.BAN, None),
    ]
    for i, (action_type, days) in enumerate(expected, start=1):
        outcome = await record_violation(user_id, ViolationType.SPAM, now=T + i * 60)
        assert outcome.window_count == i
        assert outcome.action.type == action_type
        assert outcome.action.days == days

    user = violation_db.get_user(user_id)
    assert user.status == UserStatus.BANNED
    assert user.ban_reason == "Multiple policy violations"
    assert user.suspended_until is None
    assert user.messaging_restricted is False


@pytest.mark.asyncio
async def test_violation_after_ban_is_recorded_without_action(temp_db):
    user_id = 1002
    for i in range(5):
        await record_violation(user_id, ViolationType.SPAM, now=T + i)

    outcome = await record_violation(user_id, ViolationType.PHONE_NUMBER, now=T + 10)
    assert outcome.action.type == ActionType.NONE
    assert outcome.action.reason == "Account already banned"
    assert outcome.window_count == 6

    violation = violation_db.get_violation(outcome.violation_id)
    assert violation.status == ViolationStatus.ACTIONED
    assert violation.action_taken == ActionType.NONE
    assert violation_db.get_user(user_id).status == UserStatus.BANNED


@pytest.mark.asyncio
async def test_warning_and_restriction_state(temp_db):
    user_id = 1003
    await record_violation(user_id, ViolationType.SPAM, now=T)
    user = violation_db.get_user(user_id)
    assert user.status == UserStatus.ACTIVE
    assert user.warning_count == 1
    assert user.last_warning_at == T

    outcome = await record_violation(user_id, ViolationType.SPAM, now=T + 60)
    user = violation_db.get_user(user_id)
    assert user.status == UserStatus.RESTRICTED
    assert user.messaging_restricted is True
    assert user.restricted_until == T + 60 + 7 * DAY_SECONDS
    assert outcome.action.until == user.restricted_until
    assert user.violation_count == 2


@pytest.mark.asyncio
async def test_critical_first_violation_suspends_for_30_days(temp_db):
    outcome = await record_violation(1004, ViolationType.EXTERNAL_PAYMENT, now=T)
    assert outcome.window_count == 1
    assert outcome.action.type == ActionType.SUSPENSION
    assert outcome.action.days == 30
    assert outcome.action.reason == "Critical policy violation"

    user = violation_db.get_user(1004)
    assert user.status == UserStatus.SUSPENDED
    assert user.suspended_until == T + 30 * DAY_SECONDS


@pytest.mark.asyncio
async def test_violations_outside_window_are_ignored(temp_db):
    user_id = 1005
    for i in range(4):
        _insert_old_violation(user_id, T - 91 * DAY_SECONDS + i)

    outcome = await record_violation(user_id, ViolationType.SPAM, now=T)
    assert outcome.window_count == 1
    assert outcome.action.type == ActionType.WARNING


@pytest.mark.asyncio
async def test_phone_number_after_recent_violation_restricts(temp_db):
    user_id = 1006
    _insert_old_violation(user_id, T - 60 * DAY_SECONDS)

    outcome = await record_violation(user_id, ViolationType.PHONE_NUMBER, now=T)
    assert outcome.window_count == 2
    assert outcome.action.type == ActionType.RESTRICTION
    assert violation_db.get_user(user_id).restricted_until == T + 7 * DAY_SECONDS


@pytest.mark.asyncio
async def test_concurrent_violations_see_distinct_counts(temp_db):
    user_id = 1007
    outcomes = await asyncio.gather(
        *(record_violation(user_id, ViolationType.SPAM, now=T) for _ in range(5))
    )
    assert sorted(o.window_count for o in outcomes) == [1, 2, 3, 4, 5]
    assert sum(1 for o in outcomes if o.action.type == ActionType.BAN) == 1
    assert violation_db.get_user(user_id).status == UserStatus.BANNED
    assert enforcement._user_locks == {}


@pytest.mark.asyncio
async def test_concurrent_users_do_not_interfere(temp_db):
    outcomes = await asyncio.gather(
        *(record_violation(2000 + i, ViolationType.SPAM, now=T) for i in range(4))
    )
    assert all(o.window_count == 1 for o in outcomes)
    assert all(o.action.type == ActionType.WARNING for o in outcomes)


@pytest.mark.asyncio
async def test_suspension_expires_lazily(temp_db):
    user_id = 1008
    await record_violation(user_id, ViolationType.FRAUD, now=T)

    denied = await can_send(user_id, now=T + DAY_SECONDS)
    assert not denied.allowed
    assert denied.code == "user_suspended"
    assert "29 more days" in denied.reason
    assert "Critical policy violation" in denied.reason

    # Nothing clears the state until the user is checked again
    stale = violation_db.get_user(user_id)
    assert stale.status == UserStatus.SUSPENDED

    allowed = await can_send(user_id, now=T + 31 * DAY_SECONDS)
    assert allowed.allowed
    user = violation_db.get_user(user_id)
    assert user.status == UserStatus.ACTIVE
    assert user.suspended_until is None


@pytest.mark.asyncio
async def test_restriction_expires_lazily(temp_db):
    user_id = 1009
    await record_violation(user_id, ViolationType.SPAM, now=T)
    await record_violation(user_id, ViolationType.SPAM, now=T + 1)

    denied = await can_send(user_id, now=T + 2 * DAY_SECONDS)
    assert denied.code == "user_restricted"
    assert "6 more days" in denied.reason

    allowed = await can_send(user_id, now=T + 8 * DAY_SECONDS)
    assert allowed.allowed
    user = violation_db.get_user(user_id)
    assert user.messaging_restricted is False
    assert user.restricted_reason is None
    assert user.status == UserStatus.ACTIVE


@pytest.mark.asyncio
async def test_banned_user_cannot_send(temp_db):
    user_id = 1010
    for i in range(5):
        await record_violation(user_id, ViolationType.SPAM, now=T + i)
    decision = await can_send(user_id, now=T + 365 * DAY_SECONDS)
    assert decision.code == "user_banned"
    assert decision.reason == "Your account is permanently banned. Reason: Multiple policy violations"


@pytest.mark.asyncio
async def test_unknown_user_cannot_send(temp_db):
    decision = await can_send(424242, now=T)
    assert not decision.allowed
    assert decision.code == "user_not_found"


def test_restriction_never_shortens_active_suspension():
    user = UserEnforcement(user_id=1, status=UserStatus.SUSPENDED, suspended_until=T + 30 * DAY_SECONDS)
    applied = apply_action(user, EnforcementAction(ActionType.RESTRICTION, "Policy violation", days=7), T)
    assert applied.type == ActionType.NONE
    assert applied.reason == "Stronger sanction already active"
    assert user.status == UserStatus.SUSPENDED
    assert user.suspended_until == T + 30 * DAY_SECONDS
    assert user.messaging_restricted is False


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def dispatch(self, user_id, action, violation_id=None):
        self.sent.append((user_id, action.type))


@pytest.mark.asyncio
async def test_restriction_during_suspension_is_logged_as_no_action(temp_db):
    user_id = 1013
    notifier = RecordingNotifier()
    await record_violation(user_id, ViolationType.FRAUD, now=T, notifier=notifier)

    outcome = await record_violation(user_id, ViolationType.SPAM, now=T + 60, notifier=notifier)
    assert outcome.window_count == 2
    assert outcome.action.type == ActionType.NONE
    assert outcome.action.reason == "Stronger sanction already active"

    violation = violation_db.get_violation(outcome.violation_id)
    assert violation.action_taken == ActionType.NONE
    assert violation.action_reason == "Stronger sanction already active"

    user = violation_db.get_user(user_id)
    assert user.status == UserStatus.SUSPENDED
    assert user.suspended_until == T + 30 * DAY_SECONDS
    assert user.messaging_restricted is False
    assert user.violation_count == 2
    # Only the suspension was announced
    assert notifier.sent == [(user_id, ActionType.SUSPENSION)]


def test_suspension_clears_restriction():
    user = UserEnforcement(
        user_id=1,
        status=UserStatus.RESTRICTED,
        messaging_restricted=True,
        restricted_until=T + DAY_SECONDS,
        restricted_reason="Policy violation",
    )
    apply_action(user, EnforcementAction(ActionType.SUSPENSION, "Repeated", days=7), T)
    assert user.status == UserStatus.SUSPENDED
    assert user.messaging_restricted is False
    assert user.restricted_until is None
    assert user.ban_reason == "Repeated"


def test_shorter_suspension_keeps_longer_end():
    user = UserEnforcement(user_id=1, status=UserStatus.SUSPENDED, suspended_until=T + 30 * DAY_SECONDS)
    action = EnforcementAction(ActionType.SUSPENSION, "Multiple", days=7)
    apply_action(user, action, T)
    assert user.suspended_until == T + 30 * DAY_SECONDS
    assert action.until == T + 30 * DAY_SECONDS


@pytest.mark.asyncio
async def test_reconcile_pending_applies_stale_violation(temp_db):
    user_id = 1011
    violation_db.ensure_user(user_id, now=T - 600)
    with violation_db.transaction() as conn:
        vid = violation_db.insert_violation(
            conn,
            user_id=user_id,
            violation_type=ViolationType.PHONE_NUMBER,
            severity="high",
            detected_at=T - 600,
        )

    outcomes = await reconcile_pending(grace_seconds=300, now=T)
    assert [o.violation_id for o in outcomes] == [vid]
    assert outcomes[0].action.type == ActionType.WARNING

    violation = violation_db.get_violation(vid)
    assert violation.status == ViolationStatus.ACTIONED
    assert violation.action_taken == ActionType.WARNING
    assert violation_db.get_user(user_id).warning_count == 1

    assert await reconcile_pending(grace_seconds=300, now=T) == []


@pytest.mark.asyncio
async def test_reconcile_leaves_fresh_pending_alone(temp_db):
    user_id = 1012
    violation_db.ensure_user(user_id, now=T)
    with violation_db.transaction() as conn:
        violation_db.insert_violation(
            conn, user_id=user_id, violation_type=ViolationType.SPAM, severity="medium", detected_at=T - 10,
        )
    assert await reconcile_pending(grace_seconds=300, now=T) == []
