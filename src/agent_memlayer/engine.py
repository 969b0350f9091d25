"""
MemoryEngine: the facade the agent-orchestration layer talks to.

Live-turn path (synchronous, no model calls):
    receive() -> assemble() -> [caller invokes the model] -> record_response()

Background path (asyncio workers):
    summarization, fact extraction, reactivation briefs
"""

import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .budget import BudgetAllocator
from .config import EngineConfig
from .consent import ConsentGate
from .extraction import ExtractionScheduler, FactExtractor
from .logger import EngineLogger
from .merge import ProfileMerger
from .model import HTTPModelClient, ModelClient
from .recent import RecentContextFormatter
from .reactivation import ReactivationDetector
from .scheduler import SummarizationScheduler
from .store import ContactProfileStore, MemoryStore, SQLiteProfileStore, utc
from .tasks import TaskQueue
from .types import (
    AssembledContext,
    ContactMemory,
    ExtractedFact,
    FunnelStage,
    InboundMessage,
    MemoryConsent,
    MemorySnapshot,
    NoteCategory,
    NotePriority,
    NoteTarget,
    OperatorNote,
    Role,
    Session,
    SnapshotKind,
)

logger = logging.getLogger("agent_memlayer")

Responder = Callable[[AssembledContext, InboundMessage], Union[str, Awaitable[str]]]


@dataclass
class TurnResult:
    session: Session
    context: AssembledContext
    reply: str


class MemoryEngine:
    """
    Bounded-context memory engine.

    Usage:
        async with MemoryEngine("./memlayer.yaml", model=my_client) as engine:
            session = engine.receive(InboundMessage("whatsapp:+49151", "Hi", now))
            ctx = engine.assemble(session.id, max_tokens=2000)
            reply = await call_model(ctx.text)
            engine.record_response(session.id, reply)

    Reactivation briefs are only served if sweep() runs periodically.
    sweep() generates the brief while the contact is still away, so it is
    cached when they return. Without it, the brief is requested when the
    cold return is detected and is not ready for that first turn. The
    reactivation flag clears on the following turn, so the brief layer is
    never assembled.
    """

    def __init__(
        self,
        config: Union[str, EngineConfig, None] = None,
        model: Optional[ModelClient] = None,
        profiles: Optional[ContactProfileStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the engine.

        Args:
            config: Path to config file, EngineConfig, or None for defaults
            model: Model-call collaborator (defaults to HTTPModelClient)
            profiles: Contact profile store (defaults to the SQLite one)
            clock: Returns the current time; injectable for tests
        """
        if config is None:
            self.config = EngineConfig.default(".")
        elif isinstance(config, EngineConfig):
            self.config = config
        elif Path(config).exists():
            self.config = EngineConfig.load(config)
        else:
            self.config = EngineConfig.default(".")

        self.clock = clock
        self.store = MemoryStore(self.config.db_path)
        self.profiles = profiles or SQLiteProfileStore(self.store)
        self.model = model or HTTPModelClient.from_config(self.config.model)
        self.event_log = EngineLogger(self.config.log_path)
        self.queue = TaskQueue(
            workers=self.config.tasks.workers,
            queue_size=self.config.tasks.queue_size,
            task_timeout=self.config.tasks.task_timeout_seconds,
        )

        self.formatter = RecentContextFormatter(self.store, self.config.budget.recent_max_turns)
        self.merger = ProfileMerger(self.profiles, self.config.extraction.stage_policy)
        self.gate = ConsentGate(self.store, self.merger, self.config.extraction,
                                self.event_log, clock)
        self.scheduler = SummarizationScheduler(self.store, self.model, self.queue,
                                                self.config.summary, self.event_log, clock)
        self.extraction = ExtractionScheduler(
            self.store,
            self.profiles,
            FactExtractor(self.model, self.config.extraction.min_confidence),
            self.gate,
            self.queue,
            self.config.extraction,
            self.event_log,
            clock,
        )
        self.reactivation = ReactivationDetector(self.store, self.profiles, self.model, self.queue,
                                                 self.config.reactivation, self.event_log, clock)
        self.allocator = BudgetAllocator(self.store, self.profiles, self.config.budget,
                                         self.event_log, clock)

    def _now(self) -> datetime:
        return utc(self.clock()) if self.clock else datetime.now(timezone.utc)

    # ============ Lifecycle ============

    async def start(self):
        """Start the background workers."""
        await self.queue.start()

    async def drain(self):
        """Wait for all scheduled background work to finish."""
        await self.queue.drain()

    async def close(self):
        await self.queue.stop()
        await self.model.aclose()
        self.profiles.close()
        self.store.close()

    async def __aenter__(self) -> "MemoryEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc):
        await self.close()

    # ============ Live-turn path ============

    def receive(self, message: InboundMessage) -> Session:
        """
        Ingest a normalized inbound message.

        Creates the session on first contact, recomputes the
        reactivation flag, and appends the user turn.
        """
        at = utc(message.timestamp) or self._now()
        session = self.store.get_or_create_session(
            message.session_key, message.resolve_contact_ref(), at
        )
        self.reactivation.on_inbound(session, at)
        self.store.append_turn(session.id, Role.USER, message.text, at)
        return self.store.require_session(session.id)

    def assemble(self, session_id: str, max_tokens: int) -> AssembledContext:
        """Build the token-bounded context payload for the live turn."""
        return self.allocator.assemble(session_id, max_tokens, now=self._now())

    def format_recent(self, session_id: str, max_turns: Optional[int] = None) -> str:
        return self.formatter.format_recent(session_id, max_turns)

    def record_response(self, session_id: str, text: str,
                        at: Optional[datetime] = None) -> Session:
        """
        Append the assistant turn and let background work decide what to do.

        Scheduling only; never waits on a model call.
        """
        at = utc(at) or self._now()
        self.store.append_turn(session_id, Role.ASSISTANT, text, at)
        self.scheduler.notify(session_id, at)
        self.extraction.notify(session_id)
        return self.store.require_session(session_id)

    async def handle_turn(self, message: InboundMessage, responder: Responder,
                          max_tokens: int) -> TurnResult:
        """
        Full turn: receive, assemble, respond, record.

        Args:
            message: Normalized inbound message
            responder: Called with (context, message); returns the reply
                text, directly or as an awaitable
            max_tokens: Budget for the assembled context
        """
        session = self.receive(message)
        context = self.assemble(session.id, max_tokens)
        reply = responder(context, message)
        if inspect.isawaitable(reply):
            reply = await reply
        session = self.record_response(session.id, reply)
        return TurnResult(session=session, context=context, reply=reply)

    # ============ Periodic work ============

    def sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Periodic maintenance, meant to be called by an external cron.

        - idle summarization for sessions that went quiet
        - brief pre-warming for sessions idle past the reactivation gap
        - expiry of stale consents
        """
        now = utc(now) or self._now()
        summaries = briefs = 0
        for session in self.store.list_sessions():
            if self.scheduler.notify(session.id, now):
                summaries += 1
            if self.reactivation.prewarm(session, now):
                briefs += 1
        expired = self.gate.expire_stale(now)
        if summaries or briefs or expired:
            logger.info("Sweep: %d summaries, %d briefs, %d consents expired",
                        summaries, briefs, expired)
        return {"summaries": summaries, "briefs": briefs, "consents_expired": expired}

    # ============ Consent & profile ============

    def propose_consent(self, fact: ExtractedFact, contact_ref: str,
                        session_id: Optional[str] = None) -> Optional[str]:
        return self.gate.propose(fact, contact_ref, session_id)

    def resolve_consent(self, consent_id: str, accepted: bool) -> MemoryConsent:
        return self.gate.resolve(consent_id, accepted)

    def list_consents(self, contact_ref: Optional[str] = None, status=None) -> List[MemoryConsent]:
        return self.store.list_consents(contact_ref=contact_ref, status=status)

    def read_contact_memory(self, contact_ref: str) -> Optional[ContactMemory]:
        return self.profiles.read(contact_ref)

    def curate_contact(
        self,
        contact_ref: str,
        identity: Optional[Dict[str, str]] = None,
        stage: Optional[FunnelStage] = None,
        next_step: Optional[str] = None,
    ) -> ContactMemory:
        """Human-entered values. Identity keys set here win over AI facts."""
        return self.merger.curate(contact_ref, identity=identity, stage=stage, next_step=next_step)

    # ============ Operator notes ============

    def add_note(
        self,
        target_type: NoteTarget,
        target_id: str,
        content: str,
        category: NoteCategory = NoteCategory.CONTEXT,
        priority: NotePriority = NotePriority.MEDIUM,
        pinned: bool = True,
        expires_at: Optional[datetime] = None,
    ) -> OperatorNote:
        return self.store.add_note(
            target_type, target_id, category, content,
            priority=priority, pinned=pinned, expires_at=expires_at,
            created_at=self._now(),
        )

    def list_notes(self, target_type: Optional[NoteTarget] = None, target_id: Optional[str] = None,
                   include_expired: bool = False) -> List[OperatorNote]:
        return self.store.list_notes(target_type, target_id,
                                     include_expired=include_expired, now=self._now())

    def unpin_note(self, note_id: str) -> bool:
        return self.store.set_note_pinned(note_id, False)

    def delete_note(self, note_id: str) -> bool:
        return self.store.delete_note(note_id)

    # ============ Introspection ============

    def get_session(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)

    def list_snapshots(self, session_id: str, kind: Optional[SnapshotKind] = None) -> List[MemorySnapshot]:
        return self.store.list_snapshots(session_id, kind)

    def latest_snapshot(self, session_id: str, kind: SnapshotKind) -> Optional[MemorySnapshot]:
        return self.store.latest_snapshot(session_id, kind)

    def status(self, session_id: str) -> Dict[str, Any]:
        """Scheduling state of one session."""
        session = self.store.require_session(session_id)
        return {
            "session_id": session.id,
            "session_key": session.session_key,
            "contact_ref": session.contact_ref,
            "turns": session.turn_count,
            "messages_since_summary": session.messages_since_summary,
            "last_message_at": session.last_message_at,
            "last_summary_at": session.last_summary_at,
            "has_summary": bool(session.current_summary),
            "is_reactivation": session.is_reactivation,
            "has_brief": bool(session.reactivation_brief),
            "scheduler_state": self.scheduler.state(session_id).value,
        }

    def stats(self) -> Dict[str, Any]:
        stats = self.store.stats()
        stats["scheduler"] = {sid: s.value for sid, s in self.scheduler.states().items()}
        stats["tasks"] = self.queue.stats()
        return stats
