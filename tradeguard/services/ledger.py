from __future__ import annotations

from typing import Dict, List, Optional

import violation_db
from config import HISTORY_PAGE_SIZE, SUMMARY_HISTORY_LIMIT, SUMMARY_RECENT_DAYS
from tradeguard.errors import UserNotFoundError
from tradeguard.models import Violation


def violation_history(user_id: int, limit: int = HISTORY_PAGE_SIZE) -> List[Violation]:
    """Most recent first, capped at HISTORY_PAGE_SIZE."""
    limit = max(1, min(limit, HISTORY_PAGE_SIZE))
    return violation_db.get_violation_history(user_id, limit=limit)


def violation_count(user_id: int, days: int, now: Optional[float] = None) -> int:
    return violation_db.count_user_violations(user_id, days, now=now)


def get_user_violation_summary(user_id: int, now: Optional[float] = None) -> Dict:
    user = violation_db.get_user(user_id)
    if user is None:
        raise UserNotFoundError("User not found")

    return {
        "user": {
            "status": user.status.value,
            "violation_count": user.violation_count,
            "warning_count": user.warning_count,
            "last_violation_at": user.last_violation_at,
            "messaging_restricted": user.messaging_restricted,
            "restricted_until": user.restricted_until,
            "suspended_until": user.suspended_until,
            "ban_reason": user.ban_reason,
        },
        "violations": {
            "total": violation_db.count_all_user_violations(user_id),
            "recent": violation_count(user_id, SUMMARY_RECENT_DAYS, now=now),
            "history": violation_history(user_id, limit=SUMMARY_HISTORY_LIMIT),
        },
    }


def format_violation_for_display(violation: Violation) -> str:
    line = (
        f"#{violation.id} {violation.violation_type.value} ({violation.severity.value}) "
        f"→ {violation.action_taken.value} [{violation.status.value}]"
    )
    if violation.appealed and violation.appeal_status:
        line += f" appeal: {violation.appeal_status.value}"
    return line
