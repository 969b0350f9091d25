"""
Fact extraction.

The model proposes explicit facts about the contact as JSON. The batch
is parsed and validated as a whole: anything malformed discards the
entire batch. Facts that ask to be remembered go to the consent gate;
nothing is merged into the profile from here.
"""

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from .config import ExtractionConfig
from .consent import ConsentGate
from .errors import MalformedExtractionError
from .logger import EngineLogger
from .model import ModelClient
from .prompts import build_extraction_prompt
from .recent import render_turns
from .store import ContactProfileStore, MemoryStore, utc
from .tasks import TaskQueue
from .types import ContactMemory, ExtractedFact, FactType, InstructionKind, SnapshotKind

logger = logging.getLogger("agent_memlayer")

TASK_KIND = "extraction"

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def _load_json(text: str) -> Any:
    cleaned = _FENCE_RE.sub("", (text or "").strip())
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass
    # Models sometimes wrap the object in prose
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError:
            pass
    raise MalformedExtractionError("Extraction output is not valid JSON")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_types(i: int, raw: dict):
    """Reject JSON values of the wrong type instead of coercing them ("false" is truthy)."""
    if not _is_number(raw.get("confidence")):
        raise MalformedExtractionError(f"Fact {i} confidence is not a number")
    if "suggest_remember" in raw and not isinstance(raw["suggest_remember"], bool):
        raise MalformedExtractionError(f"Fact {i} suggest_remember is not a boolean")
    value = raw.get("value")
    if isinstance(value, dict) and "resolved" in value and not isinstance(value["resolved"], bool):
        raise MalformedExtractionError(f"Fact {i} resolved is not a boolean")


def parse_facts(text: str, min_confidence: float = 0.7) -> List[ExtractedFact]:
    """
    Parse extractor output into facts.

    Accepts {"facts": [...]} or a bare list. suggest_remember is forced
    to False below min_confidence.

    Raises:
        MalformedExtractionError: if the output or any fact is invalid
    """
    data = _load_json(text)
    if isinstance(data, dict):
        data = data.get("facts")
    if not isinstance(data, list):
        raise MalformedExtractionError("Extraction output has no facts list")

    facts = []
    for i, raw in enumerate(data):
        if not isinstance(raw, dict):
            raise MalformedExtractionError(f"Fact {i} is not an object")
        _check_types(i, raw)
        try:
            fact = ExtractedFact.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedExtractionError(f"Fact {i} is invalid: {e}") from e
        if not 0.0 <= fact.confidence <= 1.0:
            raise MalformedExtractionError(f"Fact {i} confidence out of range: {fact.confidence}")
        if fact.value is None or (isinstance(fact.value, str) and not fact.value.strip()):
            raise MalformedExtractionError(f"Fact {i} has no value")
        if fact.type in (FactType.PREFERENCE, FactType.IDENTITY) and not fact.category.strip():
            raise MalformedExtractionError(f"Fact {i} needs a category")
        if fact.confidence < min_confidence:
            fact.suggest_remember = False
        facts.append(fact)
    return facts


class FactExtractor:
    """Runs the extraction instruction against the model-call collaborator."""

    def __init__(self, model: ModelClient, min_confidence: float = 0.7):
        self.model = model
        self.min_confidence = min_confidence

    async def extract_facts(self, conversation_text: str,
                            existing_profile: Optional[ContactMemory] = None) -> List[ExtractedFact]:
        """
        Extract explicit facts from a conversation.

        Raises:
            ModelCallError: if the model call fails
            MalformedExtractionError: if the output cannot be used
        """
        prompt = build_extraction_prompt(conversation_text, existing_profile)
        result = await self.model.invoke(prompt, InstructionKind.EXTRACT)
        return parse_facts(result.completion_text, self.min_confidence)


class ExtractionScheduler:
    """
    Decides when to extract and runs extraction in the background.

    Extraction runs once at least min_new_turns turns have been appended
    since the last extraction snapshot of the session.
    """

    def __init__(
        self,
        store: MemoryStore,
        profiles: ContactProfileStore,
        extractor: FactExtractor,
        gate: ConsentGate,
        queue: TaskQueue,
        config: ExtractionConfig,
        event_log: Optional[EngineLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.profiles = profiles
        self.extractor = extractor
        self.gate = gate
        self.queue = queue
        self.config = config
        self.event_log = event_log or EngineLogger()
        self.clock = clock

    def _now(self) -> datetime:
        return utc(self.clock()) if self.clock else datetime.now(timezone.utc)

    def new_turns_since_extraction(self, session_id: str, turn_count: int) -> int:
        last = self.store.latest_snapshot(session_id, SnapshotKind.CONTACT_EXTRACTION)
        covered = last.message_count_at_snapshot if last else 0
        return turn_count - covered

    def notify(self, session_id: str) -> bool:
        """Returns True if an extraction job was enqueued."""
        session = self.store.get_session(session_id)
        if session is None:
            return False
        if self.new_turns_since_extraction(session_id, session.turn_count) < self.config.min_new_turns:
            return False

        submitted = self.queue.submit(
            (TASK_KIND, session_id),
            lambda: self.run(session_id),
            delay=self.config.delay_seconds,
            on_failure=lambda exc: self.event_log.log_extraction(
                session_id, "failed", error=f"{type(exc).__name__}: {exc}"
            ),
        )
        if submitted:
            self.event_log.log_extraction(session_id, "triggered", turn_count=session.turn_count)
        return submitted

    async def run(self, session_id: str) -> List[str]:
        """
        Extract facts for a session and propose the eligible ones.

        A malformed batch is logged and dropped without a snapshot, so
        the next trigger tries again.

        Returns:
            Ids of the consents created
        """
        session = self.store.require_session(session_id)
        turn_count = session.turn_count
        turns = self.store.recent_turns(session_id, self.config.window_turns)
        if not turns:
            return []

        profile = self.profiles.read(session.contact_ref)
        try:
            facts = await self.extractor.extract_facts(render_turns(turns), profile)
        except MalformedExtractionError as e:
            logger.warning("Discarding malformed extraction for %s: %s", session_id, e)
            self.event_log.log_extraction(session_id, "malformed", error=str(e))
            return []

        self.store.write_snapshot(
            session_id,
            SnapshotKind.CONTACT_EXTRACTION,
            [f.to_dict() for f in facts],
            turn_count,
            self._now(),
        )

        consent_ids = []
        for fact in facts:
            if not fact.suggest_remember:
                continue
            consent_id = self.gate.propose(fact, session.contact_ref, session_id=session_id)
            if consent_id:
                consent_ids.append(consent_id)

        self.event_log.log_extraction(
            session_id, "extracted",
            facts=len(facts),
            proposed=len(consent_ids),
        )
        return consent_ids
