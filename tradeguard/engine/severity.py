from __future__ import annotations

from typing import Dict, Union

from tradeguard.models import Severity, ViolationType

DEFAULT_SEVERITY = Severity.MEDIUM

SEVERITY_MAP: Dict[ViolationType, Severity] = {
    ViolationType.PHONE_NUMBER: Severity.HIGH,
    ViolationType.EMAIL_ADDRESS: Severity.HIGH,
    ViolationType.SOCIAL_MEDIA_LINK: Severity.MEDIUM,
    ViolationType.SOCIAL_MEDIA_MENTION: Severity.LOW,
    ViolationType.EXTERNAL_PAYMENT: Severity.CRITICAL,
    ViolationType.EXTERNAL_TRANSACTION: Severity.CRITICAL,
    ViolationType.EXTERNAL_LINK: Severity.MEDIUM,
    ViolationType.SPAM: Severity.MEDIUM,
    ViolationType.HARASSMENT: Severity.CRITICAL,
    ViolationType.FRAUD: Severity.CRITICAL,
}

_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


def severity_of(violation_type: Union[ViolationType, str]) -> Severity:
    """Total: unknown or future categories resolve to DEFAULT_SEVERITY."""
    return SEVERITY_MAP.get(ViolationType(violation_type), DEFAULT_SEVERITY)


def rank(severity: Severity) -> int:
    return _RANK[Severity(severity)]


def most_severe(violations) -> ViolationType:
    """Pick the category to enforce on; ties keep classifier order."""
    best = None
    for vtype in violations:
        if best is None or rank(severity_of(vtype)) > rank(severity_of(best)):
            best = ViolationType(vtype)
    if best is None:
        raise ValueError("no violations to choose from")
    return best
