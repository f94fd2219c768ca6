from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import List, Optional


class ViolationType(str, enum.Enum):
    """Policy categories. Unknown values (older/newer rows) map to OTHER."""

    PHONE_NUMBER = "phone_number"
    EMAIL_ADDRESS = "email_address"
    SOCIAL_MEDIA_LINK = "social_media_link"
    SOCIAL_MEDIA_MENTION = "social_media_mention"
    EXTERNAL_PAYMENT = "external_payment"
    EXTERNAL_TRANSACTION = "external_transaction"
    EXTERNAL_LINK = "external_link"
    SPAM = "spam"
    HARASSMENT = "harassment"
    FRAUD = "fraud"
    OTHER = "other"

    @classmethod
    def _missing_(cls, value):
        return cls.OTHER


class Severity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def _missing_(cls, value):
        return cls.MEDIUM


class UserStatus(str, enum.Enum):
    ACTIVE = "active"
    RESTRICTED = "restricted"
    SUSPENDED = "suspended"
    BANNED = "banned"


class ActionType(str, enum.Enum):
    WARNING = "warning"
    RESTRICTION = "restriction"
    SUSPENSION = "suspension"
    BAN = "ban"
    NONE = "none"


class ViolationStatus(str, enum.Enum):
    PENDING = "pending"
    REVIEWED = "reviewed"
    DISMISSED = "dismissed"
    ACTIONED = "actioned"


class AppealStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ModerationStatus(str, enum.Enum):
    APPROVED = "approved"
    FLAGGED = "flagged"
    BLOCKED = "blocked"


@dataclass
class ModerationResult:
    is_valid: bool
    violations: List[ViolationType] = field(default_factory=list)
    blocked_reason: Optional[str] = None

    @property
    def categories(self) -> List[str]:
        return [v.value for v in self.violations]


@dataclass
class EnforcementAction:
    type: ActionType
    reason: str
    days: Optional[int] = None
    until: Optional[float] = None  # epoch seconds

    @property
    def message(self) -> str:
        from config import ENFORCEMENT_MESSAGES

        template = ENFORCEMENT_MESSAGES.get(self.type.value)
        if not template:
            return self.reason
        return template.format(reason=self.reason, days=self.days)


@dataclass
class EnforcementOutcome:
    violation_id: int
    action: EnforcementAction
    window_count: int
    severity: Severity
    message_id: Optional[int] = None


@dataclass
class FlaggedMessage:
    """A blocked message stored together with the violation it caused."""

    conversation_id: int
    text: str
    categories: List[str] = field(default_factory=list)
    is_auto_reply: bool = False
    external_id: Optional[int] = None


@dataclass
class SendDecision:
    allowed: bool
    code: Optional[str] = None  # machine-checkable, e.g. "content_violation"
    reason: Optional[str] = None
    violations: List[str] = field(default_factory=list)
    outcome: Optional[EnforcementOutcome] = None
    message_id: Optional[int] = None
    retryable: bool = False


@dataclass
class UserEnforcement:
    user_id: int
    status: UserStatus = UserStatus.ACTIVE
    messaging_restricted: bool = False
    restricted_until: Optional[float] = None
    restricted_reason: Optional[str] = None
    suspended_until: Optional[float] = None
    banned_at: Optional[float] = None
    ban_reason: Optional[str] = None
    violation_count: int = 0
    warning_count: int = 0
    last_violation_at: Optional[float] = None
    last_warning_at: Optional[float] = None


@dataclass
class Violation:
    id: int
    user_id: int
    violation_type: ViolationType
    severity: Severity
    conversation_id: Optional[int]
    message_id: Optional[int]
    violation_text: Optional[str]
    is_automatic: bool
    detected_at: float
    status: ViolationStatus
    action_taken: ActionType = ActionType.NONE
    action_reason: Optional[str] = None
    action_taken_at: Optional[float] = None
    action_taken_by: Optional[int] = None
    reviewed_by: Optional[int] = None
    reviewed_at: Optional[float] = None
    review_notes: Optional[str] = None
    appealed: bool = False
    appeal_reason: Optional[str] = None
    appealed_at: Optional[float] = None
    appeal_status: Optional[AppealStatus] = None
    appeal_reviewed_by: Optional[int] = None
    appeal_reviewed_at: Optional[float] = None


@dataclass
class Conversation:
    id: int
    participants: List[int] = field(default_factory=list)
    flagged: bool = False
    flag_reason: Optional[str] = None
    flagged_at: Optional[float] = None
    last_message_at: Optional[float] = None


@dataclass
class Message:
    id: int
    conversation_id: int
    sender_id: int
    text: str
    is_auto_reply: bool = False
    moderation_status: ModerationStatus = ModerationStatus.APPROVED
    moderation_flags: List[str] = field(default_factory=list)
    created_at: Optional[float] = None


@dataclass
class ScanResult:
    conversation_id: int
    violations: List[str] = field(default_factory=list)
    violating_messages: List[dict] = field(default_factory=list)
    total_messages: int = 0

    @property
    def has_violations(self) -> bool:
        return bool(self.violations)

    @property
    def violating_count(self) -> int:
        return len(self.violating_messages)


@dataclass
class SweepReport:
    scanned: int = 0
    flagged: int = 0
    failed: int = 0
    cancelled: bool = False
    cursor: Optional[int] = None
    results: List[ScanResult] = field(default_factory=list)
