"""
Threshold ladder: classify -> count within a window -> first matching rung.

User enforcement is one consumer. Other rule modules (feedback revision
checks, seller tier reviews) build their own ladder from their own table.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from tradeguard.models import Severity

WindowFunction = Callable[..., int]


@dataclass(frozen=True)
class Rung:
    action: Any
    reason: str
    min_count: Optional[int] = None
    severity: Optional[Severity] = None
    days: Optional[int] = None

    def matches(self, severity: Optional[Severity], count: int) -> bool:
        if self.severity is not None and severity != self.severity:
            return False
        if self.min_count is not None and count < self.min_count:
            return False
        return True


@dataclass(frozen=True)
class LadderDecision:
    rung: Rung
    count: int

    @property
    def action(self) -> Any:
        return self.rung.action


class ThresholdLadder:
    def __init__(self, rungs: Sequence[Rung], default: Rung, window: Optional[WindowFunction] = None):
        self.rungs = tuple(rungs)
        self.default = default
        self.window = window

    def decide(self, severity: Optional[Severity], count: int) -> LadderDecision:
        for rung in self.rungs:
            if rung.matches(severity, count):
                return LadderDecision(rung=rung, count=count)
        return LadderDecision(rung=self.default, count=count)

    def evaluate(self, subject: Any, severity: Optional[Severity] = None, **context) -> LadderDecision:
        if self.window is None:
            raise ValueError("ladder has no window function")
        return self.decide(severity, self.window(subject, **context))
