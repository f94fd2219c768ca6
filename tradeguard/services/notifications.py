"""
Enforcement notices.

The push transport is handed in at startup with `init(transport)`; any object
with `async send_message(chat_id, text, **kwargs)` works (telegram.Bot does).
Delivery is best-effort: failures are logged and counted, never raised, and
the stored enforcement state is unaffected. `dispatch()` schedules a notice
in the background so callers on the send path never wait on delivery.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, UTC
from typing import Optional, Set

import httpx

from config import NOTIFY_TIMEOUT_SECONDS, NOTIFY_WEBHOOK_URL
from tradeguard.models import EnforcementAction
from tradeguard.services.metrics import stats

logger = logging.getLogger(__name__)


class Notifier:
    def __init__(self, webhook_url: Optional[str] = None, timeout: float = NOTIFY_TIMEOUT_SECONDS):
        self.webhook_url = NOTIFY_WEBHOOK_URL if webhook_url is None else webhook_url
        self.timeout = timeout
        self._transport = None
        self._client: Optional[httpx.AsyncClient] = None
        # Strong references so scheduled notices are not garbage collected
        self._pending: Set[asyncio.Task] = set()

    @property
    def ready(self) -> bool:
        return self._transport is not None or self._client is not None

    def init(self, transport=None, client: Optional[httpx.AsyncClient] = None) -> None:
        self._transport = transport
        if client is not None:
            self._client = client
        elif self.webhook_url and self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)

    def dispatch(
        self,
        user_id: int,
        action: EnforcementAction,
        violation_id: Optional[int] = None,
    ) -> asyncio.Task:
        """Fire-and-forget wrapper around notify_action."""
        task = asyncio.create_task(self.notify_action(user_id, action, violation_id=violation_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every scheduled notice to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def shutdown(self) -> None:
        await self.drain()
        self._transport = None
        if self._client is not None:
            try:
                await self._client.aclose()
            except Exception as e:
                logger.debug(f"Failed to close notification client: {e}")
            self._client = None

    async def notify_action(
        self,
        user_id: int,
        action: EnforcementAction,
        violation_id: Optional[int] = None,
    ) -> bool:
        """Returns True if at least one channel accepted the notice."""
        delivered = False

        if self._transport is not None:
            try:
                await self._transport.send_message(chat_id=user_id, text=action.message)
                delivered = True
            except Exception as e:
                stats["notifications_failed"] += 1
                logger.warning(f"Failed to push enforcement notice to user {user_id}: {e}")

        if self._client is not None and self.webhook_url:
            payload = {
                "recipient_id": user_id,
                "type": f"enforcement_{action.type.value}",
                "title": action.type.value.capitalize(),
                "body": action.message,
                "metadata": {
                    "violation_id": violation_id,
                    "reason": action.reason,
                    "until": action.until,
                },
                "sent_at": datetime.now(UTC).isoformat(),
            }
            try:
                response = await self._client.post(self.webhook_url, json=payload)
                response.raise_for_status()
                delivered = True
            except Exception as e:
                stats["notifications_failed"] += 1
                logger.warning(f"Notification webhook failed for user {user_id}: {e}")

        if not delivered:
            logger.debug(f"No notification channel delivered {action.type.value} for user {user_id}")
        return delivered
