"""
Configuration for the TradeGuard messaging enforcement bot
Values come from the environment (or a local .env file).
"""
import os

from dotenv import load_dotenv

load_dotenv()

# Bot Configuration
BOT_TOKEN = os.getenv("BOT_TOKEN")
ADMIN_ID = int(os.getenv("ADMIN_ID", "0"))
PORT = int(os.getenv("PORT", "5000"))

# Public base URL for webhook mode; polling is used when unset
WEBHOOK_URL = os.getenv("WEBHOOK_URL", "").rstrip("/")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Storage
DB_PATH = os.getenv("DB_PATH", "tradeguard.db")

# Optional HTTP sink for enforcement notices (in addition to Telegram push)
NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL", "")
NOTIFY_TIMEOUT_SECONDS = float(os.getenv("NOTIFY_TIMEOUT_SECONDS", "5"))

# Notices posted in the group auto-delete after this many seconds
AUTO_DELETE_DELAY = int(os.getenv("AUTO_DELETE_DELAY", "15"))

# Progressive enforcement
VIOLATION_WINDOW_DAYS = int(os.getenv("VIOLATION_WINDOW_DAYS", "90"))

RESTRICTION_THRESHOLD = 2      # 2nd violation = messaging restriction
SHORT_SUSPENSION_THRESHOLD = 3  # 3rd violation = 7 day suspension
LONG_SUSPENSION_THRESHOLD = 4   # 4th violation = 30 day suspension
BAN_THRESHOLD = 5               # 5th violation = permanent ban

RESTRICTION_DAYS = 7
SHORT_SUSPENSION_DAYS = 7
LONG_SUSPENSION_DAYS = 30

# Pending violations older than this are re-evaluated by the reconciler
PENDING_GRACE_SECONDS = int(os.getenv("PENDING_GRACE_SECONDS", "300"))

# Queries
HISTORY_PAGE_SIZE = 50
SUMMARY_RECENT_DAYS = 30
SUMMARY_HISTORY_LIMIT = 10

# Conversation sweeper
SWEEP_CONCURRENCY = int(os.getenv("SWEEP_CONCURRENCY", "4"))
SWEEP_BATCH_LIMIT = int(os.getenv("SWEEP_BATCH_LIMIT", "100"))
SWEEP_RECENT_HOURS = int(os.getenv("SWEEP_RECENT_HOURS", "24"))
SWEEP_INTERVAL_MINUTES = int(os.getenv("SWEEP_INTERVAL_MINUTES", "60"))
RECONCILE_INTERVAL_MINUTES = int(os.getenv("RECONCILE_INTERVAL_MINUTES", "10"))

# Messages
BLOCKED_NOTICE = """
🛡️ **Message Blocked**
{mention}, your message was not delivered.
**Reason:** {reason}
Keep contact details and payments on the marketplace.
_This notice will self-destruct in {delay} seconds._
"""

ENFORCEMENT_MESSAGES = {
    "warning": "⚠️ Warning: {reason}. Future violations may result in account restrictions.",
    "restriction": "🔒 Your messaging has been restricted for {days} days due to: {reason}",
    "suspension": "🚫 Your account has been suspended for {days} days due to: {reason}",
    "ban": "🔨 Your account has been permanently banned due to: {reason}",
}

WELCOME_MESSAGE = """
🛡️ **TradeGuard Active**

This bot keeps buyer/seller conversations on the marketplace.

**What gets blocked:**
❌ Phone numbers, email addresses, social media handles and links
❌ Off-platform payment requests (PayPal, Venmo, wire transfer...)
❌ Spam

**Progressive enforcement (90 days):**
1️⃣ Warning
2️⃣ Messaging restricted for 7 days
3️⃣ Suspended for 7 days
4️⃣ Suspended for 30 days
5️⃣ Permanent ban

Off-platform payment requests are suspended immediately.
Use /mystatus to see your record and /appeal to contest a violation.
"""

HELP_MESSAGE = """
🛡️ **Commands**

**Everyone**
• /mystatus – Your account status and violation history
• /appeal <violation id> <reason> – Contest a violation

**Admin**
• /history <user id> – Violation history for a user
• /review <violation id> approve|reject [notes] – Decide an appeal
• /dismiss <violation id> [notes] – Mark a violation reviewed
• /flaguser <user id> <type> [text] – Record a manual violation
• /scan <chat id> – Re-scan one conversation
• /scanall [limit] – Re-scan conversations not yet flagged
• /scanrecent [hours] – Re-scan recently active conversations
• /flag <chat id> [reason] – Flag a conversation for review
• /modstats – Flagged conversation statistics
• /stats – Live enforcement counters
"""
