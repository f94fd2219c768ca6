from __future__ import annotations

import logging
from datetime import datetime

from telegram import Update
from telegram.ext import ContextTypes

from config import ADMIN_ID, HELP_MESSAGE, WELCOME_MESSAGE
import violation_db
from tradeguard.errors import TradeGuardError
from tradeguard.models import ViolationType
from tradeguard.services import appeals
from tradeguard.services.enforcement import record_violation
from tradeguard.services.ledger import (
    format_violation_for_display,
    get_user_violation_summary,
    violation_history,
)
from tradeguard.services.metrics import roll_24h_if_needed, stats

logger = logging.getLogger(__name__)


def _is_admin(update: Update) -> bool:
    return bool(update.effective_user) and update.effective_user.id == ADMIN_ID


async def _require_admin(update: Update) -> bool:
    if _is_admin(update):
        return True
    await update.message.reply_text("⚠️ Admin only command.")
    return False


def _fmt_time(ts) -> str:
    if not ts:
        return "N/A"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M")


def _parse_int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await update.message.reply_text(WELCOME_MESSAGE, parse_mode="Markdown")


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await update.message.reply_text(HELP_MESSAGE, parse_mode="Markdown")


async def mystatus_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """
    Shows the caller's enforcement status and recent violations.
    Triggered by the /mystatus command.
    """
    user_id = update.effective_user.id
    try:
        summary = get_user_violation_summary(user_id)
    except TradeGuardError:
        await update.message.reply_text("✓ Your Status: Clean Record\n\nYou have no violations. Keep it up!")
        return

    account = summary["user"]
    history = summary["violations"]["history"]
    if not history:
        await update.message.reply_text(
            f"✓ Your Status: {account['status']}\n\nYou have no violations. Keep it up!"
        )
        return

    lines = "\n".join(f"• {format_violation_for_display(v)}" for v in history)
    text = (
        "🛡️ Your Account Status\n\n"
        f"Status: {account['status']}\n"
        f"Violations (rolling window): {account['violation_count']}\n"
        f"Warnings: {account['warning_count']}\n"
        f"Last Violation: {_fmt_time(account['last_violation_at'])}\n"
    )
    if account["messaging_restricted"]:
        text += f"Messaging restricted until: {_fmt_time(account['restricted_until'])}\n"
    if account["suspended_until"]:
        text += f"Suspended until: {_fmt_time(account['suspended_until'])}\n"
    text += (
        f"\nTotal violations: {summary['violations']['total']} "
        f"(recent: {summary['violations']['recent']})\n"
        f"Recent violations:\n{lines}\n\n"
        "Use /appeal <id> <reason> to contest a violation."
    )
    await update.message.reply_text(text)


async def appeal_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Usage: /appeal <violation id> <reason>"""
    args = context.args or []
    violation_id = _parse_int(args[0]) if args else None
    reason = " ".join(args[1:]).strip()
    if violation_id is None or not reason:
        await update.message.reply_text("❌ Usage: /appeal <violation id> <reason>")
        return

    try:
        appeals.appeal(violation_id, update.effective_user.id, reason)
    except TradeGuardError as e:
        await update.message.reply_text(f"❌ {e.reason}")
        return
    await update.message.reply_text(f"✅ Appeal filed for violation #{violation_id}. An admin will review it.")


async def review_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Admin. Usage: /review <violation id> approve|reject [notes]"""
    if not await _require_admin(update):
        return

    args = context.args or []
    violation_id = _parse_int(args[0]) if args else None
    decision = args[1].lower() if len(args) > 1 else ""
    if violation_id is None or decision not in ("approve", "reject"):
        await update.message.reply_text("❌ Usage: /review <violation id> approve|reject [notes]")
        return

    notes = " ".join(args[2:]).strip() or None
    try:
        violation = appeals.review_appeal(violation_id, update.effective_user.id, decision == "approve", notes)
    except TradeGuardError as e:
        await update.message.reply_text(f"❌ {e.reason}")
        return
    await update.message.reply_text(
        f"✅ Appeal for #{violation.id} {violation.appeal_status.value}. Violation is now {violation.status.value}."
    )


async def dismiss_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Admin. Marks a violation reviewed. Usage: /dismiss <violation id> [notes]"""
    if not await _require_admin(update):
        return

    args = context.args or []
    violation_id = _parse_int(args[0]) if args else None
    if violation_id is None:
        await update.message.reply_text("❌ Usage: /dismiss <violation id> [notes]")
        return
    try:
        appeals.review_violation(violation_id, update.effective_user.id, " ".join(args[1:]).strip() or None)
    except TradeGuardError as e:
        await update.message.reply_text(f"❌ {e.reason}")
        return
    await update.message.reply_text(f"✅ Violation #{violation_id} marked reviewed.")


async def history_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Admin. Usage: /history <user id>"""
    if not await _require_admin(update):
        return

    user_id = _parse_int(context.args[0]) if context.args else None
    if user_id is None:
        await update.message.reply_text("❌ Usage: /history <user id>")
        return

    violations = violation_history(user_id)
    if not violations:
        await update.message.reply_text(f"No violations recorded for {user_id}.")
        return
    lines = [
        f"{_fmt_time(v.detected_at)} {format_violation_for_display(v)}"
        for v in violations
    ]
    await update.message.reply_text(f"Violations for {user_id}:\n" + "\n".join(lines))


async def flaguser_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Admin. Records a manual violation. Usage: /flaguser <user id> <type> [text]"""
    if not await _require_admin(update):
        return

    args = context.args or []
    user_id = _parse_int(args[0]) if args else None
    if user_id is None or len(args) < 2:
        types = ", ".join(t.value for t in ViolationType)
        await update.message.reply_text(f"❌ Usage: /flaguser <user id> <type> [text]\nTypes: {types}")
        return

    violation_type = ViolationType(args[1].lower())
    try:
        outcome = await record_violation(
            user_id,
            violation_type,
            violation_text=" ".join(args[2:]).strip() or None,
            is_automatic=False,
            action_taken_by=update.effective_user.id,
            notifier=context.bot_data.get("notifier"),
        )
    except TradeGuardError as e:
        logger.error(f"Manual violation failed for {user_id}: {e}")
        await update.message.reply_text(f"❌ {e.reason}")
        return
    await update.message.reply_text(
        f"✅ Violation #{outcome.violation_id} ({violation_type.value}) recorded for {user_id}: "
        f"{outcome.action.type.value} – {outcome.action.reason}"
    )


def _sweeper(context: ContextTypes.DEFAULT_TYPE):
    return context.bot_data["sweeper"]


async def scan_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Admin. Usage: /scan <chat id>"""
    if not await _require_admin(update):
        return

    conversation_id = _parse_int(context.args[0]) if context.args else update.effective_chat.id
    if conversation_id is None:
        await update.message.reply_text("❌ Usage: /scan <chat id>")
        return

    result = await _sweeper(context).scan_conversation(conversation_id)
    if result.has_violations:
        violation_db.flag_conversation(conversation_id, ", ".join(result.violations))
        await update.message.reply_text(
            f"⚠️ {result.violating_count}/{result.total_messages} messages flagged: {', '.join(result.violations)}"
        )
    else:
        await update.message.reply_text(f"✅ No violations in {result.total_messages} messages.")


async def scanall_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Admin. Usage: /scanall [limit] [resume]"""
    if not await _require_admin(update):
        return

    args = context.args or []
    limit = _parse_int(args[0]) if args else None
    resume = "resume" in [a.lower() for a in args]
    kwargs = {"resume": resume}
    if limit:
        kwargs["limit"] = limit
    report = await _sweeper(context).scan_all_conversations(**kwargs)
    await update.message.reply_text(_format_report(report))


async def scanrecent_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Admin. Usage: /scanrecent [hours]"""
    if not await _require_admin(update):
        return

    hours = _parse_int(context.args[0]) if context.args else None
    report = await _sweeper(context).scan_recent(**({"hours": hours} if hours else {}))
    await update.message.reply_text(_format_report(report))


def _format_report(report) -> str:
    text = (
        "🔎 Scan complete\n"
        f"Scanned: {report.scanned} conversations\n"
        f"Flagged: {report.flagged}\n"
    )
    if report.failed:
        text += f"Failed: {report.failed} (will be retried next sweep)\n"
    if report.cancelled:
        text += "Sweep was cancelled; run again with 'resume' to continue.\n"
    for result in report.results[:10]:
        text += (
            f"\n• {result.conversation_id}: {', '.join(result.violations)} "
            f"({result.violating_count}/{result.total_messages})"
        )
    return text


async def flag_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Admin. Usage: /flag <chat id> [reason]"""
    if not await _require_admin(update):
        return

    args = context.args or []
    conversation_id = _parse_int(args[0]) if args else None
    if conversation_id is None:
        await update.message.reply_text("❌ Usage: /flag <chat id> [reason]")
        return
    reason = " ".join(args[1:]).strip() or "Flagged by admin"
    if violation_db.flag_conversation(conversation_id, reason):
        await update.message.reply_text(f"✅ Conversation {conversation_id} flagged.")
    else:
        await update.message.reply_text(f"❌ Conversation {conversation_id} not found.")


async def modstats_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Admin. Flagged conversation statistics from the database."""
    if not await _require_admin(update):
        return

    s = violation_db.get_statistics()
    breakdown = "\n".join(f"• {b['type']}: {b['count']}" for b in s["violation_breakdown"]) or "• none"
    await update.message.reply_text(
        "📊 Moderation Statistics\n\n"
        f"Total Conversations: {s['total_conversations']}\n"
        f"Flagged Conversations: {s['flagged_conversations']} ({s['flagged_percentage']}%)\n"
        f"Flagged Messages: {s['flagged_messages']}\n\n"
        f"Violation Breakdown:\n{breakdown}"
    )


async def stats_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Admin. Live counters since the bot started."""
    if not await _require_admin(update):
        return

    roll_24h_if_needed()
    top_violations = "\n".join(f"• {k}: {v}" for k, v in stats["violations"].items()) or "• none"
    actions = "\n".join(f"• {k}: {v}" for k, v in stats["actions"].items()) or "• none"
    text = (
        "📊 Enforcement Dashboard\n\n"
        f"Messages Checked: {stats['messages_checked']}\n"
        f"Messages Blocked: {stats['messages_blocked']} (last 24h: {stats['last_24h']})\n"
        f"Sends Denied (sanctioned users): {stats['sends_denied']}\n\n"
        f"Violation Categories:\n{top_violations}\n\n"
        f"Actions Taken:\n{actions}\n\n"
        f"Protected Groups: {len(stats['groups'])}\n"
        f"Sweeps Run: {stats['sweeps_run']} (flagged {stats['conversations_flagged']})\n"
        f"Failed Notifications: {stats['notifications_failed']}"
    )
    await update.message.reply_text(text)
