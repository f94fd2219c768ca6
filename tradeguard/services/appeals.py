"""
Appeals and admin review of ledger entries.

Approving an appeal dismisses the violation and takes one off the user's
stored count. It does not lift a suspension or ban that was already applied;
the dismissal only affects later evaluations.
"""
from __future__ import annotations

import logging
from typing import Optional

import violation_db
from tradeguard.errors import AppealError
from tradeguard.models import AppealStatus, Violation, ViolationStatus

logger = logging.getLogger(__name__)


def _load(conn, violation_id: int) -> Violation:
    violation = violation_db.get_violation(violation_id, conn=conn)
    if violation is None:
        raise AppealError("Violation not found", code="violation_not_found")
    return violation


def appeal(violation_id: int, user_id: int, reason: str, now: Optional[float] = None) -> Violation:
    """File an appeal. Only the violation's subject may appeal, once."""
    now = now if now is not None else violation_db.now_ts()

    with violation_db.transaction() as conn:
        violation = _load(conn, violation_id)
        if violation.user_id != user_id:
            raise AppealError("You can only appeal your own violations", code="not_violation_owner")
        if violation.status == ViolationStatus.DISMISSED:
            raise AppealError("This violation has already been dismissed", code="already_dismissed")
        if violation.appealed:
            raise AppealError("This violation has already been appealed", code="already_appealed")

        violation.appealed = True
        violation.appeal_reason = reason
        violation.appealed_at = now
        violation.appeal_status = AppealStatus.PENDING
        violation_db.save_violation_review(conn, violation)

    logger.info(f"Appeal filed for violation {violation_id} by user {user_id}")
    return violation


def review_appeal(
    violation_id: int,
    admin_id: int,
    approved: bool,
    notes: Optional[str] = None,
    now: Optional[float] = None,
) -> Violation:
    now = now if now is not None else violation_db.now_ts()

    with violation_db.transaction() as conn:
        violation = _load(conn, violation_id)
        if not violation.appealed or violation.appeal_status != AppealStatus.PENDING:
            raise AppealError("There is no pending appeal for this violation", code="no_pending_appeal")

        violation.appeal_status = AppealStatus.APPROVED if approved else AppealStatus.REJECTED
        violation.appeal_reviewed_by = admin_id
        violation.appeal_reviewed_at = now
        violation.review_notes = notes

        if approved:
            violation.status = ViolationStatus.DISMISSED
            user = violation_db.get_user(violation.user_id, conn=conn)
            if user is not None:
                user.violation_count = max(0, user.violation_count - 1)
                violation_db.save_user(conn, user)

        violation_db.save_violation_review(conn, violation)

    logger.info(
        f"Appeal for violation {violation_id} {violation.appeal_status.value} by admin {admin_id}"
    )
    return violation


def review_violation(
    violation_id: int,
    admin_id: int,
    notes: Optional[str] = None,
    now: Optional[float] = None,
) -> Violation:
    """Mark a violation reviewed by an admin without reversing anything."""
    now = now if now is not None else violation_db.now_ts()

    with violation_db.transaction() as conn:
        violation = _load(conn, violation_id)
        if violation.status == ViolationStatus.DISMISSED:
            raise AppealError("This violation has already been dismissed", code="already_dismissed")
        violation.status = ViolationStatus.REVIEWED
        violation.reviewed_by = admin_id
        violation.reviewed_at = now
        violation.review_notes = notes
        violation_db.save_violation_review(conn, violation)

    return violation
