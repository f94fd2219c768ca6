"""
Conversation sweeper.

Re-scans stored conversations for violations the send gate missed, flags the
offending messages and conversations, and keeps a resume cursor so that an
interrupted sweep can continue where it stopped. The sweep is detection and
audit only; it does not apply enforcement to users.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional, Set, Tuple

import violation_db
from config import SWEEP_BATCH_LIMIT, SWEEP_CONCURRENCY, SWEEP_RECENT_HOURS
from tradeguard.engine.orchestrator import analyze_message
from tradeguard.models import Conversation, ModerationStatus, ScanResult, SweepReport
from tradeguard.services.metrics import stats

logger = logging.getLogger(__name__)

SCAN_ALL_CURSOR = "scan_all"
SCAN_RECENT_CURSOR = "scan_recent"


class ConversationSweeper:
    def __init__(self, concurrency: int = SWEEP_CONCURRENCY):
        self.concurrency = max(1, concurrency)
        self._semaphore = asyncio.Semaphore(self.concurrency)
        # One event per running sweep, so starting a sweep never resets
        # a cancel aimed at another one
        self._runs: Set[asyncio.Event] = set()

    def cancel(self) -> None:
        """Ask every running sweep to stop after its current page."""
        for run in self._runs:
            run.set()

    @property
    def cancelled(self) -> bool:
        return any(run.is_set() for run in self._runs)

    async def scan_conversation(self, conversation_id: int) -> ScanResult:
        messages = await asyncio.to_thread(violation_db.list_messages, conversation_id)

        violations: List[str] = []
        violating_messages = []
        for message in messages:
            if message.moderation_status == ModerationStatus.BLOCKED:
                continue
            if not message.text or message.is_auto_reply:
                continue

            result = analyze_message(message.text)
            if not result.is_valid:
                categories = result.categories
                for category in categories:
                    if category not in violations:
                        violations.append(category)
                violating_messages.append({
                    "message_id": message.id,
                    "sender_id": message.sender_id,
                    "text": message.text,
                    "violations": categories,
                    "reason": result.blocked_reason,
                    "created_at": message.created_at,
                })
                if (message.moderation_status != ModerationStatus.FLAGGED
                        or message.moderation_flags != categories):
                    await asyncio.to_thread(
                        violation_db.update_message_moderation,
                        message.id, ModerationStatus.FLAGGED, categories,
                    )
            # Give live traffic a turn between messages
            await asyncio.sleep(0)

        return ScanResult(
            conversation_id=conversation_id,
            violations=violations,
            violating_messages=violating_messages,
            total_messages=len(messages),
        )

    async def _sweep_one(self, conversation: Conversation) -> Optional[ScanResult]:
        async with self._semaphore:
            try:
                result = await self.scan_conversation(conversation.id)
                if result.has_violations:
                    await asyncio.to_thread(
                        violation_db.flag_conversation,
                        conversation.id,
                        ", ".join(result.violations),
                    )
                return result
            except Exception as e:
                # Left for the next sweep
                logger.error(f"Sweep failed for conversation {conversation.id}: {e}", exc_info=True)
                return None

    async def _sweep(
        self,
        fetch_page: Callable[[int, Optional[Tuple[float, int]]], List[Conversation]],
        limit: int,
        cursor_name: str,
        resume: bool,
    ) -> SweepReport:
        run = asyncio.Event()
        self._runs.add(run)
        try:
            report = await self._sweep_pages(run, fetch_page, limit, cursor_name, resume)
        finally:
            self._runs.discard(run)

        stats["sweeps_run"] += 1
        stats["conversations_flagged"] += report.flagged
        logger.info(
            f"Sweep {cursor_name}: scanned={report.scanned} flagged={report.flagged} "
            f"failed={report.failed} cancelled={report.cancelled}"
        )
        return report

    async def _sweep_pages(self, run: asyncio.Event, fetch_page, limit, cursor_name, resume) -> SweepReport:
        report = SweepReport()

        cursor: Optional[Tuple[float, int]] = None
        if resume:
            state = await asyncio.to_thread(violation_db.get_sweep_state, cursor_name)
            if state["last_conversation_id"] is not None:
                cursor = (state["last_activity_at"] or 0, state["last_conversation_id"])
                report.cursor = state["last_conversation_id"]

        finished = False
        while report.scanned < limit:
            if run.is_set():
                report.cancelled = True
                break

            page_size = min(self.concurrency, limit - report.scanned)
            page = await asyncio.to_thread(fetch_page, page_size, cursor)
            if not page:
                finished = True
                break

            results = await asyncio.gather(*(self._sweep_one(conv) for conv in page))
            flagged_here = 0
            for result in results:
                if result is None:
                    report.failed += 1
                    continue
                if result.has_violations:
                    flagged_here += 1
                    report.results.append(result)
            report.scanned += len(page)
            report.flagged += flagged_here

            last = page[-1]
            cursor = (last.last_message_at or 0, last.id)
            report.cursor = last.id
            await asyncio.to_thread(
                violation_db.update_sweep_state, cursor_name, last.id, last.last_message_at or 0, flagged_here,
            )

            if len(page) < page_size:
                finished = True
                break

        if finished:
            report.cursor = None
            await asyncio.to_thread(violation_db.update_sweep_state, cursor_name, None, None, 0)

        return report

    async def scan_all_conversations(
        self,
        limit: int = SWEEP_BATCH_LIMIT,
        skip_already_flagged: bool = True,
        resume: bool = False,
    ) -> SweepReport:
        """Scan conversations by recency; `resume` continues after the saved cursor."""

        def fetch_page(size, after):
            return violation_db.list_conversations(limit=size, skip_flagged=skip_already_flagged, after=after)

        return await self._sweep(fetch_page, limit, SCAN_ALL_CURSOR, resume)

    async def scan_recent(
        self,
        hours: int = SWEEP_RECENT_HOURS,
        limit: int = SWEEP_BATCH_LIMIT,
        now: Optional[float] = None,
        resume: bool = False,
    ) -> SweepReport:
        """Scan unflagged conversations active within the last `hours`."""
        now = now if now is not None else violation_db.now_ts()
        since = now - hours * 3600

        def fetch_page(size, after):
            return violation_db.list_conversations(limit=size, skip_flagged=True, active_since=since, after=after)

        return await self._sweep(fetch_page, limit, SCAN_RECENT_CURSOR, resume)
