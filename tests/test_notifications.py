import asyncio
import json
import sys
import os

import httpx
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import violation_db
from violation_db import init_db
from tradeguard.models import ActionType, EnforcementAction, UserStatus, ViolationType
from tradeguard.services.enforcement import record_violation
from tradeguard.services.gate import submit_message
from tradeguard.services.metrics import stats
from tradeguard.services.notifications import Notifier

T = 1_700_000_000.0


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    db_file = tmp_path / "tradeguard_test.db"
    monkeypatch.setattr(violation_db, "DB_PATH", str(db_file))
    init_db()
    yield str(db_file)


class FakeBot:
    def __init__(self):
        self.sent = []

    async def send_message(self, chat_id, text, **kwargs):
        self.sent.append((chat_id, text))


class BrokenBot:
    async def send_message(self, chat_id, text, **kwargs):
        raise RuntimeError("Forbidden: bot was blocked by the user")


@pytest.mark.asyncio
async def test_push_through_injected_transport():
    bot = FakeBot()
    notifier = Notifier(webhook_url="")
    assert not notifier.ready
    notifier.init(bot)
    assert notifier.ready

    action = EnforcementAction(ActionType.RESTRICTION, "Policy violation - messaging restricted", days=7)
    assert await notifier.notify_action(42, action) is True
    assert bot.sent == [(42, "🔒 Your messaging has been restricted for 7 days due to: Policy violation - messaging restricted")]

    await notifier.shutdown()
    assert not notifier.ready


@pytest.mark.asyncio
async def test_transport_failure_is_swallowed():
    notifier = Notifier(webhook_url="")
    notifier.init(BrokenBot())
    failed_before = stats["notifications_failed"]

    delivered = await notifier.notify_action(42, EnforcementAction(ActionType.WARNING, "First policy violation"))
    assert delivered is False
    assert stats["notifications_failed"] == failed_before + 1


@pytest.mark.asyncio
async def test_webhook_payload():
    received = []

    def handler(request: httpx.Request):
        received.append(json.loads(request.content))
        return httpx.Response(200, json={"ok": True})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    notifier = Notifier(webhook_url="https://hooks.example.test/notify")
    notifier.init(client=client)

    action = EnforcementAction(ActionType.SUSPENSION, "Critical policy violation", days=30, until=T)
    assert await notifier.notify_action(7, action, violation_id=99) is True

    payload = received[0]
    assert payload["recipient_id"] == 7
    assert payload["type"] == "enforcement_suspension"
    assert payload["metadata"] == {"violation_id": 99, "reason": "Critical policy violation", "until": T}
    assert "30 days" in payload["body"]
    await notifier.shutdown()


@pytest.mark.asyncio
async def test_webhook_error_is_swallowed():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
    notifier = Notifier(webhook_url="https://hooks.example.test/notify")
    notifier.init(client=client)

    assert await notifier.notify_action(7, EnforcementAction(ActionType.BAN, "Multiple policy violations")) is False
    await notifier.shutdown()


@pytest.mark.asyncio
async def test_enforcement_survives_notification_failure(temp_db):
    notifier = Notifier(webhook_url="")
    notifier.init(BrokenBot())

    outcome = await record_violation(8001, ViolationType.FRAUD, now=T, notifier=notifier)
    assert outcome.action.type == ActionType.SUSPENSION
    assert violation_db.get_user(8001).status == UserStatus.SUSPENDED
    await notifier.drain()


@pytest.mark.asyncio
async def test_no_notice_for_audit_only_entries(temp_db):
    bot = FakeBot()
    notifier = Notifier(webhook_url="")
    notifier.init(bot)

    for i in range(5):
        await record_violation(8002, ViolationType.SPAM, now=T + i, notifier=notifier)
    await notifier.drain()
    assert len(bot.sent) == 5

    outcome = await record_violation(8002, ViolationType.SPAM, now=T + 10, notifier=notifier)
    assert outcome.action.type == ActionType.NONE
    await notifier.drain()
    assert len(bot.sent) == 5


@pytest.mark.asyncio
async def test_webhook_non_http_error_is_swallowed():
    def handler(request: httpx.Request):
        raise RuntimeError("sink misconfigured")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    notifier = Notifier(webhook_url="https://hooks.example.test/notify")
    notifier.init(client=client)
    failed_before = stats["notifications_failed"]

    assert await notifier.notify_action(7, EnforcementAction(ActionType.WARNING, "First policy violation")) is False
    assert stats["notifications_failed"] == failed_before + 1
    await notifier.shutdown()


@pytest.mark.asyncio
async def test_bad_webhook_url_does_not_reach_the_send_path(temp_db):
    notifier = Notifier(webhook_url="http://[::1/hook")
    notifier.init()
    failed_before = stats["notifications_failed"]

    decision = await submit_message(8003, -100777, "call me 555-123-4567", notifier=notifier, now=T)
    assert not decision.allowed
    assert decision.code == "content_violation"
    assert decision.outcome.action.type == ActionType.WARNING

    await notifier.drain()
    assert stats["notifications_failed"] == failed_before + 1
    assert violation_db.get_violation(decision.outcome.violation_id) is not None
    await notifier.shutdown()


class StalledBot:
    def __init__(self):
        self.release = asyncio.Event()
        self.sent = []

    async def send_message(self, chat_id, text, **kwargs):
        await self.release.wait()
        self.sent.append((chat_id, text))


@pytest.mark.asyncio
async def test_record_violation_does_not_wait_for_delivery(temp_db):
    bot = StalledBot()
    notifier = Notifier(webhook_url="")
    notifier.init(bot)

    outcome = await record_violation(8004, ViolationType.SPAM, now=T, notifier=notifier)
    assert outcome.action.type == ActionType.WARNING
    assert bot.sent == []

    bot.release.set()
    await notifier.drain()
    assert bot.sent == [(8004, outcome.action.message)]
