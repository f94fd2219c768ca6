from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, Iterable


stats: Dict = {
    "messages_checked": 0,
    "messages_blocked": 0,
    "sends_denied": 0,
    "last_24h": 0,
    "violations": defaultdict(int),
    "severity_counts": defaultdict(int),
    "actions": defaultdict(int),
    "groups": set(),
    "last_reset": datetime.now(),
    "notifications_failed": 0,
    "sweeps_run": 0,
    "conversations_flagged": 0,
}


def touch_group(group_id: int) -> None:
    stats["groups"].add(group_id)


def roll_24h_if_needed() -> None:
    if datetime.now() - stats["last_reset"] > timedelta(hours=24):
        stats["last_24h"] = 0
        stats["last_reset"] = datetime.now()


def record_block(categories: Iterable[str]) -> None:
    roll_24h_if_needed()
    stats["messages_blocked"] += 1
    stats["last_24h"] += 1
    for category in categories:
        stats["violations"][category] += 1


def record_action(action, severity) -> None:
    stats["actions"][getattr(action, "value", action)] += 1
    stats["severity_counts"][getattr(severity, "value", severity)] += 1
