"""
TradeGuard - Pattern Classifier
Keeps buyer/seller conversations on-platform: contact details, off-platform
payment requests and spam are detected with pre-compiled patterns.
"""

import re
from typing import Dict, List, Optional, Pattern

from tradeguard.models import ModerationResult, ViolationType

# Bump when the category set or a pattern changes. Stored ledger rows keep
# the category string they were created with.
CLASSIFIER_VERSION = 1

# Compiled once at import; evaluated in this order so the verdict for a given
# text is always the same list.
PATTERNS: Dict[ViolationType, Pattern] = {
    ViolationType.PHONE_NUMBER: re.compile(
        r'(?:\+?\d{1,3}[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}'
    ),
    ViolationType.EMAIL_ADDRESS: re.compile(
        r'[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}'
    ),
    ViolationType.SOCIAL_MEDIA_LINK: re.compile(
        r'(?:facebook\.com|twitter\.com|instagram\.com|tiktok\.com|linkedin\.com)',
        re.IGNORECASE,
    ),
    # @handle, but not the domain half of an email address
    ViolationType.SOCIAL_MEDIA_MENTION: re.compile(
        r'(?<![\w.%+-])@[a-zA-Z0-9_]{2,}\b(?!\.[a-zA-Z])'
    ),
    ViolationType.EXTERNAL_PAYMENT: re.compile(
        r'(?:paypal|venmo|cash\s?app|zelle|western\s+union)',
        re.IGNORECASE,
    ),
    ViolationType.EXTERNAL_TRANSACTION: re.compile(
        r'(?:wire\s+transfer|bank\s+transfer|direct\s+payment)',
        re.IGNORECASE,
    ),
    ViolationType.EXTERNAL_LINK: re.compile(
        r'(?:https?://|www\.)',
        re.IGNORECASE,
    ),
    ViolationType.SPAM: re.compile(
        r'(?:buy\s+now|click\s+here|limited\s+time|act\s+now|free\s+money)',
        re.IGNORECASE,
    ),
}


def detect(text: str) -> List[ViolationType]:
    """Return every category whose pattern matches, in table order."""
    return [vtype for vtype, pattern in PATTERNS.items() if pattern.search(text)]


def classify(text: Optional[str], is_auto_reply: bool = False) -> ModerationResult:
    """
    Validate message content.

    Empty, whitespace-only and auto-reply generated text is always valid.
    """
    if not text or not isinstance(text, str) or not text.strip() or is_auto_reply:
        return ModerationResult(is_valid=True)

    violations = detect(text)
    if not violations:
        return ModerationResult(is_valid=True)

    return ModerationResult(
        is_valid=False,
        violations=violations,
        blocked_reason=(
            "Message contains restricted content: "
            + ", ".join(v.value for v in violations)
        ),
    )
