"""
Summarization scheduler.

Decides when a session's history should be compressed into a new
summary and runs the compression as a deferred background job. The
live turn never waits for it.

Per-session state machine:

    idle -> pending_trigger -> summarizing -> idle

A failed job leaves the session counters untouched, so the next
qualifying turn (or idle sweep) triggers it again.
"""

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Optional

from .config import SummaryConfig
from .errors import ModelCallError, MonotonicWriteError
from .logger import EngineLogger
from .model import ModelClient
from .prompts import build_summary_prompt
from .store import MemoryStore, utc
from .tasks import TaskQueue
from .types import InstructionKind, MemorySnapshot, Session

logger = logging.getLogger("agent_memlayer")

TASK_KIND = "summary"


class SchedulerState(str, Enum):
    IDLE = "idle"
    PENDING_TRIGGER = "pending_trigger"
    SUMMARIZING = "summarizing"


class SummarizationScheduler:
    """
    Triggers and runs session summarization.

    Trigger conditions (either):
    - messages_since_summary >= message_threshold
    - both the last summary and the last message are older than
      idle_hours, and there is unsummarized history
    """

    def __init__(
        self,
        store: MemoryStore,
        model: ModelClient,
        queue: TaskQueue,
        config: SummaryConfig,
        event_log: Optional[EngineLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.model = model
        self.queue = queue
        self.config = config
        self.event_log = event_log or EngineLogger()
        self.clock = clock
        self._states: Dict[str, SchedulerState] = {}

    def _now(self) -> datetime:
        return utc(self.clock()) if self.clock else datetime.now(timezone.utc)

    def state(self, session_id: str) -> SchedulerState:
        return self._states.get(session_id, SchedulerState.IDLE)

    def states(self) -> Dict[str, SchedulerState]:
        return {sid: s for sid, s in self._states.items() if s != SchedulerState.IDLE}

    def trigger_reason(self, session: Session, now: datetime) -> Optional[str]:
        """Return "count" or "idle" if the session qualifies, else None."""
        if session.messages_since_summary >= self.config.message_threshold:
            return "count"

        if session.messages_since_summary <= 0 or session.last_message_at is None:
            return None
        idle = timedelta(hours=self.config.idle_hours)
        now = utc(now)
        summary_old = session.last_summary_at is None or now - session.last_summary_at > idle
        quiet = now - session.last_message_at > idle
        if summary_old and quiet:
            return "idle"
        return None

    def notify(self, session_id: str, now: Optional[datetime] = None) -> bool:
        """
        Check the trigger after a turn (or during a sweep).

        Returns:
            True if a summarization job was enqueued
        """
        session = self.store.get_session(session_id)
        if session is None:
            return False
        if self.state(session_id) != SchedulerState.IDLE:
            return False

        reason = self.trigger_reason(session, now or self._now())
        if reason is None:
            return False

        submitted = self.queue.submit(
            (TASK_KIND, session_id),
            lambda: self._run(session_id),
            delay=self.config.delay_seconds,
            on_failure=lambda exc: self._on_failure(session_id, exc),
        )
        if submitted:
            self._states[session_id] = SchedulerState.PENDING_TRIGGER
            self.event_log.log_summary(
                session_id, "triggered",
                reason=reason,
                messages_since_summary=session.messages_since_summary,
            )
            logger.debug("Summary triggered for %s (%s)", session_id, reason)
        return submitted

    async def _run(self, session_id: str):
        self._states[session_id] = SchedulerState.SUMMARIZING
        try:
            await self.summarize(session_id)
        finally:
            self._states.pop(session_id, None)

    def _on_failure(self, session_id: str, exc: BaseException):
        self._states.pop(session_id, None)
        self.event_log.log_summary(
            session_id, "failed",
            error=f"{type(exc).__name__}: {exc}",
        )

    async def summarize(self, session_id: str) -> Optional[MemorySnapshot]:
        """
        Build and store a new summary for a session.

        Raises:
            ModelCallError: if the model fails or returns nothing
        """
        session = self.store.require_session(session_id)
        covered = session.turn_count
        turns = self.store.recent_turns(session_id, self.config.window_turns)
        if not turns:
            return None

        prompt = build_summary_prompt(turns, session.current_summary, self.config.max_chars)
        result = await self.model.invoke(prompt, InstructionKind.SUMMARIZE)
        summary = (result.completion_text or "").strip()[:self.config.max_chars].rstrip()
        if not summary:
            raise ModelCallError("Empty summary")

        return self.complete(session_id, summary, covered, self._now(), usage=result.usage)

    def complete(self, session_id: str, summary: str, summarized_turns: int,
                 completed_at: datetime, usage: Optional[dict] = None) -> Optional[MemorySnapshot]:
        """
        Write a finished summary.

        A completion older than the stored summary is rejected by the
        store and logged, not raised.

        Returns:
            The new snapshot, or None if the write was stale
        """
        try:
            snapshot = self.store.write_summary(session_id, summary, summarized_turns, completed_at)
        except MonotonicWriteError as e:
            logger.info("Discarding stale summary for %s: %s", session_id, e)
            self.event_log.log_summary(session_id, "stale", error=str(e))
            return None

        self.event_log.log_summary(
            session_id, "written",
            summarized_turns=summarized_turns,
            chars=len(summary),
            usage=usage or {},
        )
        return snapshot
