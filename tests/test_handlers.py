import sys
import os

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import violation_db
from violation_db import init_db, store_message
from tradeguard.handlers import commands, messages
from tradeguard.models import ModerationStatus
from tradeguard.services.sweeper import ConversationSweeper

ADMIN = 4242
CHAT_ID = -100123


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    db_file = tmp_path / "tradeguard_test.db"
    monkeypatch.setattr(violation_db, "DB_PATH", str(db_file))
    monkeypatch.setattr(commands, "ADMIN_ID", ADMIN)
    messages._processed_messages.clear()
    init_db()
    yield str(db_file)


class FakeUser:
    def __init__(self, id, username=None, first_name="User", is_bot=False):
        self.id = id
        self.username = username
        self.first_name = first_name
        self.is_bot = is_bot


class FakeChat:
    def __init__(self):
        self.sent = []
        self.id = CHAT_ID

    async def send_message(self, text, **kwargs):
        msg = type("M", (), {"message_id": len(self.sent) + 100, "text": text})()
        self.sent.append(text)
        return msg


class FakeMessage:
    _next_id = 1

    def __init__(self, text, user: FakeUser, chat=None):
        self.text = text
        self.from_user = user
        self.chat = chat or FakeChat()
        self.message_id = FakeMessage._next_id
        FakeMessage._next_id += 1
        self.chat_id = self.chat.id
        self.deleted = False
        self.replies = []

    async def delete(self):
        self.deleted = True

    async def reply_text(self, text, **kwargs):
        self.replies.append(text)


class FakeUpdate:
    def __init__(self, message: FakeMessage):
        self.message = message
        self.effective_message = message
        self.effective_user = message.from_user
        self.effective_chat = message.chat


class FakeContext:
    def __init__(self, args=None, bot_data=None):
        self.args = args or []
        self.bot_data = bot_data if bot_data is not None else {}


def _command(user_id, *args, bot_data=None):
    message = FakeMessage("/cmd " + " ".join(args), FakeUser(user_id, username="tester"))
    return FakeUpdate(message), FakeContext(list(args), bot_data)


@pytest.mark.asyncio
async def test_clean_message_passes_through(temp_db):
    msg = FakeMessage("Is the camera still for sale?", FakeUser(501, username="buyer"))
    await messages.handle_text_message(FakeUpdate(msg), FakeContext())

    assert not msg.deleted
    assert msg.chat.sent == []
    stored = violation_db.list_messages(CHAT_ID)
    assert stored[0].moderation_status == ModerationStatus.APPROVED


@pytest.mark.asyncio
async def test_violating_message_is_deleted_with_notice(temp_db, monkeypatch):
    notices = []

    async def _fake_notice(chat, text, delay=15):
        notices.append(text)

    monkeypatch.setattr(messages, "_send_temp_notice", _fake_notice)
    msg = FakeMessage("Send it via PayPal please", FakeUser(502, username="seller"))
    await messages.handle_text_message(FakeUpdate(msg), FakeContext())

    assert msg.deleted
    assert len(notices) == 1
    assert "@seller" in notices[0]
    assert "suspended for 30 days" in notices[0]


@pytest.mark.asyncio
async def test_redelivered_update_is_ignored(temp_db, monkeypatch):
    async def _fake_notice(chat, text, delay=15):
        pass

    monkeypatch.setattr(messages, "_send_temp_notice", _fake_notice)
    msg = FakeMessage("hello", FakeUser(503))
    await messages.handle_text_message(FakeUpdate(msg), FakeContext())
    await messages.handle_text_message(FakeUpdate(msg), FakeContext())
    assert len(violation_db.list_messages(CHAT_ID)) == 1


@pytest.mark.asyncio
async def test_admin_commands_reject_non_admins(temp_db):
    update, context = _command(777, "123")
    await commands.history_command(update, context)
    assert update.message.replies == ["⚠️ Admin only command."]


@pytest.mark.asyncio
async def test_mystatus_for_clean_user(temp_db):
    update, context = _command(778)
    await commands.mystatus_command(update, context)
    assert "Clean Record" in update.message.replies[0]


@pytest.mark.asyncio
async def test_flaguser_then_appeal_and_review(temp_db):
    update, context = _command(ADMIN, "9001", "fraud", "fake", "escrow", "site")
    await commands.flaguser_command(update, context)
    assert "suspension" in update.message.replies[0]

    violation = violation_db.get_violation_history(9001)[0]
    assert violation.is_automatic is False
    assert violation.action_taken_by == ADMIN
    assert violation.violation_text == "fake escrow site"

    update, context = _command(9001)
    await commands.mystatus_command(update, context)
    assert "suspended" in update.message.replies[0]
    assert f"#{violation.id}" in update.message.replies[0]

    update, context = _command(9001, str(violation.id), "I", "was", "hacked")
    await commands.appeal_command(update, context)
    assert update.message.replies[0].startswith("✅ Appeal filed")

    update, context = _command(9001, str(violation.id), "again")
    await commands.appeal_command(update, context)
    assert update.message.replies[0] == "❌ This violation has already been appealed"

    update, context = _command(ADMIN, str(violation.id), "approve", "verified")
    await commands.review_command(update, context)
    assert "approved" in update.message.replies[0]
    assert "dismissed" in update.message.replies[0]


@pytest.mark.asyncio
async def test_appeal_usage(temp_db):
    update, context = _command(9002, "abc")
    await commands.appeal_command(update, context)
    assert update.message.replies[0].startswith("❌ Usage")


@pytest.mark.asyncio
async def test_scan_and_modstats(temp_db):
    store_message(CHAT_ID, 601, "my number is 555-123-4567")
    bot_data = {"sweeper": ConversationSweeper()}

    update, context = _command(ADMIN, str(CHAT_ID), bot_data=bot_data)
    await commands.scan_command(update, context)
    assert "phone_number" in update.message.replies[0]
    assert violation_db.get_conversation(CHAT_ID).flagged

    update, context = _command(ADMIN)
    await commands.modstats_command(update, context)
    assert "Flagged Conversations: 1" in update.message.replies[0]
    assert "phone_number: 1" in update.message.replies[0]


@pytest.mark.asyncio
async def test_scanall_reports_counts(temp_db):
    store_message(1, 601, "hello")
    store_message(2, 602, "venmo me")
    bot_data = {"sweeper": ConversationSweeper()}

    update, context = _command(ADMIN, "50", bot_data=bot_data)
    await commands.scanall_command(update, context)
    reply = update.message.replies[0]
    assert "Scanned: 2 conversations" in reply
    assert "Flagged: 1" in reply


@pytest.mark.asyncio
async def test_flag_command(temp_db):
    store_message(5, 603, "hello")
    update, context = _command(ADMIN, "5", "suspicious", "pricing")
    await commands.flag_command(update, context)
    assert update.message.replies[0] == "✅ Conversation 5 flagged."
    assert violation_db.get_conversation(5).flag_reason == "suspicious pricing"

    update, context = _command(ADMIN, "6")
    await commands.flag_command(update, context)
    assert update.message.replies[0] == "❌ Conversation 6 not found."
