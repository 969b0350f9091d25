"""
Reactivation detector.

A conversation is a cold return when the contact writes again after
more than idle_days of silence on a session that already has turns.
The session is then flagged for that turn and a short re-entry brief
is generated in the background and cached on the session.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .config import ReactivationConfig
from .errors import ModelCallError, MonotonicWriteError
from .logger import EngineLogger
from .model import ModelClient
from .prompts import build_reactivation_prompt
from .store import ContactProfileStore, MemoryStore, utc
from .tasks import TaskQueue
from .types import InstructionKind, MemorySnapshot, Session

logger = logging.getLogger("agent_memlayer")

TASK_KIND = "reactivation"


class ReactivationDetector:
    def __init__(
        self,
        store: MemoryStore,
        profiles: ContactProfileStore,
        model: ModelClient,
        queue: TaskQueue,
        config: ReactivationConfig,
        event_log: Optional[EngineLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
        context_turns: int = 6,
    ):
        self.store = store
        self.profiles = profiles
        self.model = model
        self.queue = queue
        self.config = config
        self.event_log = event_log or EngineLogger()
        self.clock = clock
        self.context_turns = context_turns

    def _now(self) -> datetime:
        return utc(self.clock()) if self.clock else datetime.now(timezone.utc)

    @property
    def idle_gap(self) -> timedelta:
        return timedelta(days=self.config.idle_days)

    def is_cold_return(self, session: Session, now: datetime) -> bool:
        """Idle longer than the threshold, and not a brand-new thread."""
        if session.turn_count <= 0 or session.last_message_at is None:
            return False
        return utc(now) - session.last_message_at > self.idle_gap

    def has_fresh_brief(self, session: Session) -> bool:
        """A brief generated during the current idle gap."""
        return bool(
            session.reactivation_brief
            and session.reactivation_brief_at is not None
            and session.last_message_at is not None
            and session.reactivation_brief_at > session.last_message_at
        )

    def on_inbound(self, session: Session, now: datetime) -> bool:
        """
        Recompute is_reactivation for an inbound turn.

        Must run before the inbound turn is appended, while
        last_message_at still marks the start of the gap.

        Returns:
            True if this turn is a cold return
        """
        cold = self.is_cold_return(session, now)
        if not cold:
            if session.is_reactivation:
                self.store.set_reactivation(session.id, False)
            return False

        fresh = self.has_fresh_brief(session)
        self.store.set_reactivation(session.id, True, clear_brief=not fresh)
        idle_days = (utc(now) - session.last_message_at).total_seconds() / 86400
        self.event_log.log_reactivation(
            session.id, "detected",
            idle_days=round(idle_days, 2),
            brief_cached=fresh,
        )
        if not fresh:
            self.request_brief(session.id, idle_days)
        return True

    def prewarm(self, session: Session, now: datetime) -> bool:
        """Generate a brief ahead of time for a session that is already cold."""
        if not self.is_cold_return(session, now) or self.has_fresh_brief(session):
            return False
        idle_days = (utc(now) - session.last_message_at).total_seconds() / 86400
        return self.request_brief(session.id, idle_days)

    def request_brief(self, session_id: str, idle_days: float) -> bool:
        return self.queue.submit(
            (TASK_KIND, session_id),
            lambda: self.generate_brief(session_id, idle_days),
            on_failure=lambda exc: self.event_log.log_reactivation(
                session_id, "failed", error=f"{type(exc).__name__}: {exc}"
            ),
        )

    async def generate_brief(self, session_id: str, idle_days: float) -> Optional[MemorySnapshot]:
        """
        Generate and cache a re-entry brief.

        Input is the latest summary, the contact profile, pinned notes
        and the last few turns before the gap.
        """
        session = self.store.require_session(session_id)
        now = self._now()
        profile = self.profiles.read(session.contact_ref)
        notes = self.store.pinned_notes_for(session, now)
        turns = self.store.recent_turns(session_id, self.context_turns)

        prompt = build_reactivation_prompt(
            idle_days,
            session.current_summary,
            profile,
            notes,
            turns,
            self.config.brief_max_chars,
        )
        result = await self.model.invoke(prompt, InstructionKind.REACTIVATION_BRIEF)
        brief = (result.completion_text or "").strip()[:self.config.brief_max_chars].rstrip()
        if not brief:
            raise ModelCallError("Empty reactivation brief")

        try:
            snapshot = self.store.cache_reactivation_brief(session_id, brief, session.turn_count, now)
        except MonotonicWriteError as e:
            logger.info("Discarding stale reactivation brief for %s: %s", session_id, e)
            return None

        self.event_log.log_reactivation(session_id, "brief", chars=len(brief), usage=result.usage)
        return snapshot
