"""
Violation Database Module
SQLite storage for user enforcement state, the violation ledger, and the
conversations/messages the gate and sweeper moderate.
"""
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, UTC
from typing import Dict, Iterator, List, Optional, Tuple

from config import DB_PATH as _DEFAULT_DB_PATH
from tradeguard.errors import PersistenceError
from tradeguard.models import (
    ActionType,
    AppealStatus,
    Conversation,
    Message,
    ModerationStatus,
    Severity,
    UserEnforcement,
    UserStatus,
    Violation,
    ViolationStatus,
    ViolationType,
)

logger = logging.getLogger(__name__)

DB_PATH = _DEFAULT_DB_PATH
DAY_SECONDS = 24 * 60 * 60


def now_ts() -> float:
    return datetime.now(UTC).timestamp()


def get_db_connection():
    """Get a database connection with WAL mode and concurrent access optimizations."""
    conn = sqlite3.connect(DB_PATH, isolation_level=None, timeout=5.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA busy_timeout=5000")
    return conn


@contextmanager
def transaction(immediate: bool = True) -> Iterator[sqlite3.Connection]:
    """
    Run a block as one atomic unit.

    BEGIN IMMEDIATE takes the write lock up front, so a count read inside the
    block cannot be invalidated by another writer before the block commits.
    """
    try:
        conn = get_db_connection()
    except sqlite3.Error as e:
        raise PersistenceError(f"Database unavailable: {e}") from e
    try:
        conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        yield conn
        conn.execute("COMMIT")
    except sqlite3.Error as e:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise PersistenceError(f"Database error: {e}") from e
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


@contextmanager
def _reader() -> Iterator[sqlite3.Connection]:
    try:
        conn = get_db_connection()
    except sqlite3.Error as e:
        raise PersistenceError(f"Database unavailable: {e}") from e
    try:
        yield conn
    except sqlite3.Error as e:
        raise PersistenceError(f"Database error: {e}") from e
    finally:
        conn.close()


def init_db():
    """Initialize the database with required tables."""
    with transaction() as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                user_id INTEGER PRIMARY KEY,
                status TEXT NOT NULL DEFAULT 'active',
                messaging_restricted INTEGER DEFAULT 0,
                restricted_until REAL,
                restricted_reason TEXT,
                suspended_until REAL,
                banned_at REAL,
                ban_reason TEXT,
                violation_count INTEGER DEFAULT 0,
                warning_count INTEGER DEFAULT 0,
                last_violation_at REAL,
                last_warning_at REAL,
                created_at REAL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS violations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                violation_type TEXT NOT NULL,
                severity TEXT NOT NULL DEFAULT 'medium',
                conversation_id INTEGER,
                message_id INTEGER,
                violation_text TEXT,
                is_automatic INTEGER DEFAULT 1,
                detected_at REAL NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                action_taken TEXT NOT NULL DEFAULT 'none',
                action_reason TEXT,
                action_taken_at REAL,
                action_taken_by INTEGER,
                reviewed_by INTEGER,
                reviewed_at REAL,
                review_notes TEXT,
                appealed INTEGER DEFAULT 0,
                appeal_reason TEXT,
                appealed_at REAL,
                appeal_status TEXT,
                appeal_reviewed_by INTEGER,
                appeal_reviewed_at REAL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                id INTEGER PRIMARY KEY,
                participants TEXT NOT NULL DEFAULT '[]',
                flagged INTEGER DEFAULT 0,
                flag_reason TEXT,
                flagged_at REAL,
                last_message_at REAL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id INTEGER NOT NULL,
                sender_id INTEGER NOT NULL,
                text TEXT,
                is_auto_reply INTEGER DEFAULT 0,
                moderation_status TEXT NOT NULL DEFAULT 'approved',
                moderation_flags TEXT NOT NULL DEFAULT '[]',
                external_id INTEGER,
                created_at REAL
            )
            """
        )

        # sweep_state: resume cursor per named sweep
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sweep_state (
                name TEXT PRIMARY KEY,
                last_conversation_id INTEGER,
                last_activity_at REAL,
                last_sweep_time REAL,
                flagged_total INTEGER DEFAULT 0
            )
            """
        )

        conn.execute("CREATE INDEX IF NOT EXISTS idx_violations_user_detected ON violations(user_id, detected_at)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_violations_status_detected ON violations(status, detected_at)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_violations_type ON violations(violation_type, severity)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, created_at)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_conversations_activity ON conversations(last_message_at, id)")
    logger.info("Database initialized successfully")


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------

def _row_to_user(row) -> UserEnforcement:
    return UserEnforcement(
        user_id=row["user_id"],
        status=UserStatus(row["status"]),
        messaging_restricted=bool(row["messaging_restricted"]),
        restricted_until=row["restricted_until"],
        restricted_reason=row["restricted_reason"],
        suspended_until=row["suspended_until"],
        banned_at=row["banned_at"],
        ban_reason=row["ban_reason"],
        violation_count=row["violation_count"] or 0,
        warning_count=row["warning_count"] or 0,
        last_violation_at=row["last_violation_at"],
        last_warning_at=row["last_warning_at"],
    )


def _row_to_violation(row) -> Violation:
    return Violation(
        id=row["id"],
        user_id=row["user_id"],
        violation_type=ViolationType(row["violation_type"]),
        severity=Severity(row["severity"]),
        conversation_id=row["conversation_id"],
        message_id=row["message_id"],
        violation_text=row["violation_text"],
        is_automatic=bool(row["is_automatic"]),
        detected_at=row["detected_at"],
        status=ViolationStatus(row["status"]),
        action_taken=ActionType(row["action_taken"]),
        action_reason=row["action_reason"],
        action_taken_at=row["action_taken_at"],
        action_taken_by=row["action_taken_by"],
        reviewed_by=row["reviewed_by"],
        reviewed_at=row["reviewed_at"],
        review_notes=row["review_notes"],
        appealed=bool(row["appealed"]),
        appeal_reason=row["appeal_reason"],
        appealed_at=row["appealed_at"],
        appeal_status=AppealStatus(row["appeal_status"]) if row["appeal_status"] else None,
        appeal_reviewed_by=row["appeal_reviewed_by"],
        appeal_reviewed_at=row["appeal_reviewed_at"],
    )


def _row_to_conversation(row) -> Conversation:
    return Conversation(
        id=row["id"],
        participants=json.loads(row["participants"] or "[]"),
        flagged=bool(row["flagged"]),
        flag_reason=row["flag_reason"],
        flagged_at=row["flagged_at"],
        last_message_at=row["last_message_at"],
    )


def _row_to_message(row) -> Message:
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        sender_id=row["sender_id"],
        text=row["text"] or "",
        is_auto_reply=bool(row["is_auto_reply"]),
        moderation_status=ModerationStatus(row["moderation_status"]),
        moderation_flags=json.loads(row["moderation_flags"] or "[]"),
        created_at=row["created_at"],
    )


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

def ensure_user(user_id: int, now: Optional[float] = None) -> UserEnforcement:
    """Create the enforcement row for a user on first sight."""
    with transaction() as conn:
        conn.execute(
            "INSERT OR IGNORE INTO users (user_id, status, created_at) VALUES (?, 'active', ?)",
            (user_id, now if now is not None else now_ts()),
        )
        return get_user(user_id, conn=conn)


def get_user(user_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[UserEnforcement]:
    if conn is None:
        with _reader() as reader:
            return get_user(user_id, conn=reader)
    row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
    return _row_to_user(row) if row else None


def save_user(conn: sqlite3.Connection, user: UserEnforcement) -> None:
    """Write every enforcement field of a user in a single statement."""
    conn.execute(
        """
        UPDATE users SET
            status = ?, messaging_restricted = ?, restricted_until = ?,
            restricted_reason = ?, suspended_until = ?, banned_at = ?,
            ban_reason = ?, violation_count = ?, warning_count = ?,
            last_violation_at = ?, last_warning_at = ?
        WHERE user_id = ?
        """,
        (
            user.status.value, int(user.messaging_restricted), user.restricted_until,
            user.restricted_reason, user.suspended_until, user.banned_at,
            user.ban_reason, user.violation_count, user.warning_count,
            user.last_violation_at, user.last_warning_at,
            user.user_id,
        ),
    )


def update_user(user: UserEnforcement) -> None:
    with transaction() as conn:
        save_user(conn, user)


# ---------------------------------------------------------------------------
# Violation ledger
# ---------------------------------------------------------------------------

def insert_violation(
    conn: sqlite3.Connection,
    user_id: int,
    violation_type: ViolationType,
    severity: Severity,
    detected_at: float,
    conversation_id: Optional[int] = None,
    message_id: Optional[int] = None,
    violation_text: Optional[str] = None,
    is_automatic: bool = True,
    action_taken_by: Optional[int] = None,
) -> int:
    cursor = conn.execute(
        """
        INSERT INTO violations (
            user_id, violation_type, severity, conversation_id, message_id,
            violation_text, is_automatic, detected_at, status, action_taken,
            action_taken_by
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'pending', 'none', ?)
        """,
        (
            user_id, ViolationType(violation_type).value, Severity(severity).value,
            conversation_id, message_id, violation_text, int(is_automatic),
            detected_at, action_taken_by,
        ),
    )
    return cursor.lastrowid


def count_violations_in_window(
    conn: sqlite3.Connection, user_id: int, days: int, now: float
) -> int:
    """Non-dismissed violations detected within the trailing `days` days."""
    since = now - days * DAY_SECONDS
    row = conn.execute(
        """
        SELECT COUNT(*) FROM violations
        WHERE user_id = ? AND detected_at >= ? AND detected_at <= ? AND status != 'dismissed'
        """,
        (user_id, since, now),
    ).fetchone()
    return row[0]


def count_user_violations(user_id: int, days: int, now: Optional[float] = None) -> int:
    with _reader() as conn:
        return count_violations_in_window(conn, user_id, days, now if now is not None else now_ts())


def mark_violation_actioned(
    conn: sqlite3.Connection,
    violation_id: int,
    action: ActionType,
    reason: str,
    at: float,
) -> None:
    conn.execute(
        """
        UPDATE violations
        SET action_taken = ?, action_reason = ?, action_taken_at = ?, status = 'actioned'
        WHERE id = ?
        """,
        (ActionType(action).value, reason, at, violation_id),
    )


def get_violation(violation_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Violation]:
    if conn is None:
        with _reader() as reader:
            return get_violation(violation_id, conn=reader)
    row = conn.execute("SELECT * FROM violations WHERE id = ?", (violation_id,)).fetchone()
    return _row_to_violation(row) if row else None


def save_violation_review(conn: sqlite3.Connection, violation: Violation) -> None:
    """Persist the review and appeal fields of a violation."""
    conn.execute(
        """
        UPDATE violations SET
            status = ?, reviewed_by = ?, reviewed_at = ?, review_notes = ?,
            appealed = ?, appeal_reason = ?, appealed_at = ?, appeal_status = ?,
            appeal_reviewed_by = ?, appeal_reviewed_at = ?
        WHERE id = ?
        """,
        (
            violation.status.value, violation.reviewed_by, violation.reviewed_at,
            violation.review_notes, int(violation.appealed), violation.appeal_reason,
            violation.appealed_at,
            violation.appeal_status.value if violation.appeal_status else None,
            violation.appeal_reviewed_by, violation.appeal_reviewed_at,
            violation.id,
        ),
    )


def get_violation_history(user_id: int, limit: int = 50) -> List[Violation]:
    """Most recent first."""
    with _reader() as conn:
        rows = conn.execute(
            """
            SELECT * FROM violations WHERE user_id = ?
            ORDER BY detected_at DESC, id DESC
            LIMIT ?
            """,
            (user_id, limit),
        ).fetchall()
    return [_row_to_violation(r) for r in rows]


def count_all_user_violations(user_id: int) -> int:
    with _reader() as conn:
        return conn.execute("SELECT COUNT(*) FROM violations WHERE user_id = ?", (user_id,)).fetchone()[0]


def list_stale_pending_violations(older_than: float, limit: int = 100) -> List[Violation]:
    with _reader() as conn:
        rows = conn.execute(
            """
            SELECT * FROM violations
            WHERE status = 'pending' AND detected_at < ?
            ORDER BY detected_at ASC, id ASC
            LIMIT ?
            """,
            (older_than, limit),
        ).fetchall()
    return [_row_to_violation(r) for r in rows]


# ---------------------------------------------------------------------------
# Conversations & messages
# ---------------------------------------------------------------------------

def touch_conversation(
    conversation_id: int,
    participant_id: Optional[int] = None,
    now: Optional[float] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> None:
    """Create the conversation if needed, add the participant and bump activity."""
    if conn is None:
        with transaction() as writer:
            return touch_conversation(conversation_id, participant_id, now, conn=writer)

    now = now if now is not None else now_ts()
    row = conn.execute("SELECT participants FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
    if row is None:
        participants = [participant_id] if participant_id is not None else []
        conn.execute(
            "INSERT INTO conversations (id, participants, last_message_at) VALUES (?, ?, ?)",
            (conversation_id, json.dumps(participants), now),
        )
        return

    participants = json.loads(row["participants"] or "[]")
    if participant_id is not None and participant_id not in participants:
        participants.append(participant_id)
    conn.execute(
        "UPDATE conversations SET participants = ?, last_message_at = MAX(COALESCE(last_message_at, 0), ?) WHERE id = ?",
        (json.dumps(participants), now, conversation_id),
    )


def get_conversation(conversation_id: int) -> Optional[Conversation]:
    with _reader() as conn:
        row = conn.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
    return _row_to_conversation(row) if row else None


def flag_conversation(
    conversation_id: int,
    reason: str,
    now: Optional[float] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> bool:
    """Returns False when the conversation does not exist."""
    if conn is None:
        with transaction() as writer:
            return flag_conversation(conversation_id, reason, now, conn=writer)
    cursor = conn.execute(
        "UPDATE conversations SET flagged = 1, flag_reason = ?, flagged_at = ? WHERE id = ?",
        (reason, now if now is not None else now_ts(), conversation_id),
    )
    if cursor.rowcount:
        logger.info(f"Conversation {conversation_id} flagged: {reason}")
    return cursor.rowcount > 0


def list_conversations(
    limit: int = 100,
    skip_flagged: bool = True,
    active_since: Optional[float] = None,
    after: Optional[Tuple[float, int]] = None,
) -> List[Conversation]:
    """
    Page conversations by recency (most recently active first).

    `after` is a (last_message_at, id) cursor; only conversations strictly
    older than it in that ordering are returned.
    """
    clauses = []
    params: list = []
    if skip_flagged:
        clauses.append("flagged = 0")
    if active_since is not None:
        clauses.append("COALESCE(last_message_at, 0) >= ?")
        params.append(active_since)
    if after is not None:
        activity, conv_id = after
        clauses.append(
            "(COALESCE(last_message_at, 0) < ? OR (COALESCE(last_message_at, 0) = ? AND id < ?))"
        )
        params.extend([activity, activity, conv_id])

    sql = "SELECT * FROM conversations"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY COALESCE(last_message_at, 0) DESC, id DESC LIMIT ?"
    params.append(limit)

    with _reader() as conn:
        rows = conn.execute(sql, params).fetchall()
    return [_row_to_conversation(r) for r in rows]


def store_message(
    conversation_id: int,
    sender_id: int,
    text: str,
    moderation_status: ModerationStatus = ModerationStatus.APPROVED,
    moderation_flags: Optional[List[str]] = None,
    is_auto_reply: bool = False,
    external_id: Optional[int] = None,
    now: Optional[float] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> int:
    if conn is None:
        with transaction() as writer:
            return store_message(
                conversation_id, sender_id, text, moderation_status, moderation_flags,
                is_auto_reply, external_id, now, conn=writer,
            )
    now = now if now is not None else now_ts()
    cursor = conn.execute(
        """
        INSERT INTO messages (
            conversation_id, sender_id, text, is_auto_reply,
            moderation_status, moderation_flags, external_id, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            conversation_id, sender_id, text, int(is_auto_reply),
            ModerationStatus(moderation_status).value,
            json.dumps(list(moderation_flags or [])), external_id, now,
        ),
    )
    touch_conversation(conversation_id, sender_id, now, conn=conn)
    return cursor.lastrowid


def get_message(message_id: int) -> Optional[Message]:
    with _reader() as conn:
        row = conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
    return _row_to_message(row) if row else None


def list_messages(conversation_id: int) -> List[Message]:
    """Oldest first."""
    with _reader() as conn:
        rows = conn.execute(
            "SELECT * FROM messages WHERE conversation_id = ? ORDER BY created_at ASC, id ASC",
            (conversation_id,),
        ).fetchall()
    return [_row_to_message(r) for r in rows]


def update_message_moderation(message_id: int, status: ModerationStatus, flags: List[str]) -> None:
    with transaction() as conn:
        conn.execute(
            "UPDATE messages SET moderation_status = ?, moderation_flags = ? WHERE id = ?",
            (ModerationStatus(status).value, json.dumps(list(flags)), message_id),
        )


# ---------------------------------------------------------------------------
# Sweep cursor
# ---------------------------------------------------------------------------

def get_sweep_state(name: str) -> Dict:
    with _reader() as conn:
        row = conn.execute("SELECT * FROM sweep_state WHERE name = ?", (name,)).fetchone()
    if not row:
        return {
            "last_conversation_id": None,
            "last_activity_at": None,
            "last_sweep_time": None,
            "flagged_total": 0,
        }
    return {
        "last_conversation_id": row["last_conversation_id"],
        "last_activity_at": row["last_activity_at"],
        "last_sweep_time": row["last_sweep_time"],
        "flagged_total": row["flagged_total"] or 0,
    }


def update_sweep_state(
    name: str,
    last_conversation_id: Optional[int],
    last_activity_at: Optional[float],
    flagged: int = 0,
    now: Optional[float] = None,
) -> None:
    with transaction() as conn:
        row = conn.execute("SELECT flagged_total FROM sweep_state WHERE name = ?", (name,)).fetchone()
        total = (row[0] if row else 0) + flagged
        conn.execute(
            """
            INSERT INTO sweep_state (name, last_conversation_id, last_activity_at, last_sweep_time, flagged_total)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
                last_conversation_id = excluded.last_conversation_id,
                last_activity_at = excluded.last_activity_at,
                last_sweep_time = excluded.last_sweep_time,
                flagged_total = excluded.flagged_total
            """,
            (name, last_conversation_id, last_activity_at, now if now is not None else now_ts(), total),
        )
    logger.debug(f"Sweep state {name}: cursor={last_conversation_id}, flagged_total={total}")


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

def get_statistics() -> Dict:
    """Flagged conversation/message statistics for the admin dashboard."""
    empty = {
        "total_conversations": 0,
        "flagged_conversations": 0,
        "flagged_messages": 0,
        "flagged_percentage": 0.0,
        "violation_breakdown": [],
    }
    try:
        with _reader() as conn:
            total = conn.execute("SELECT COUNT(*) FROM conversations").fetchone()[0]
            flagged = conn.execute("SELECT COUNT(*) FROM conversations WHERE flagged = 1").fetchone()[0]
            flagged_messages = conn.execute(
                "SELECT COUNT(*) FROM messages WHERE moderation_status = 'flagged'"
            ).fetchone()[0]
            breakdown = conn.execute(
                """
                SELECT value AS type, COUNT(*) AS count
                FROM messages, json_each(messages.moderation_flags)
                WHERE moderation_status = 'flagged'
                GROUP BY value
                ORDER BY count DESC, type ASC
                """
            ).fetchall()
    except PersistenceError as e:
        logger.error(f"Failed to get moderation statistics: {e}")
        return empty

    return {
        "total_conversations": total,
        "flagged_conversations": flagged,
        "flagged_messages": flagged_messages,
        "flagged_percentage": round(flagged / total * 100, 2) if total else 0.0,
        "violation_breakdown": [{"type": r["type"], "count": r["count"]} for r in breakdown],
    }
