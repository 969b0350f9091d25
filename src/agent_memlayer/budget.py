"""
Budget allocator: packs context layers into a token budget.

Layers are allocated in strict priority order:

    1. pinned notes        reserved floor, low/medium truncated first
    2. recent context      window shrinks under pressure, never empty
    3. contact profile     whole or nothing, up to profile_ceiling
    4. session summary     up to summary_ceiling
    5. reactivation brief  up to reactivation_ceiling, cold returns only

Every cost is an over-estimate (each block is charged its rounded-up
estimate plus one token for its separator), so the estimate of the
joined text never exceeds the budget.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from .config import BudgetConfig
from .errors import BudgetFloorError
from .logger import EngineLogger
from .prompts import render_note, render_profile
from .recent import render_turns
from .store import ContactProfileStore, MemoryStore, utc
from .tokens import TokenEstimator
from .types import AssembledContext, LayerKind, OperatorNote, Turn

logger = logging.getLogger("agent_memlayer")

BLOCK_SEPARATOR = "\n\n"

LAYER_HEADERS = {
    LayerKind.PINNED_NOTES: "## Operator Notes",
    LayerKind.RECENT_CONTEXT: "## Recent Conversation",
    LayerKind.CONTACT_PROFILE: "## Contact Profile",
    LayerKind.SESSION_SUMMARY: "## Conversation Summary",
    LayerKind.REACTIVATION_BRIEF: "## Returning Contact",
}

# Position of each layer in the assembled text
RENDER_ORDER = [
    LayerKind.PINNED_NOTES,
    LayerKind.REACTIVATION_BRIEF,
    LayerKind.CONTACT_PROFILE,
    LayerKind.SESSION_SUMMARY,
    LayerKind.RECENT_CONTEXT,
]


@dataclass
class _NoteSlot:
    note: OperatorNote
    line: str
    truncated: bool = False


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _note_order(note: OperatorNote):
    return (note.priority.rank, note.created_at or _EPOCH, note.id)


class BudgetAllocator:
    """
    Assembles the bounded context for a live turn.

    Pure reads of materialized state: no model calls, no writes.

    Usage:
        allocator = BudgetAllocator(store, profiles, config.budget)
        ctx = allocator.assemble(session_id, max_tokens=2000)
        print(ctx.text, ctx.layers_included)
    """

    def __init__(
        self,
        store: MemoryStore,
        profiles: ContactProfileStore,
        config: BudgetConfig,
        event_log: Optional[EngineLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.profiles = profiles
        self.config = config
        self.estimator = TokenEstimator(config.chars_per_token)
        self.event_log = event_log or EngineLogger()
        self.clock = clock

        header_cost = self.cost(self._block(LayerKind.RECENT_CONTEXT, ""))
        if config.recent_reserve_tokens < header_cost + config.min_note_tokens:
            raise ValueError(
                f"recent_reserve_tokens={config.recent_reserve_tokens} cannot hold the "
                f"recent-context header ({header_cost} tokens) plus {config.min_note_tokens} "
                f"tokens of conversation"
            )

    def _now(self) -> datetime:
        return utc(self.clock()) if self.clock else datetime.now(timezone.utc)

    def cost(self, block: str) -> int:
        """Tokens charged for a block, separator included."""
        return self.estimator.count(block) + self.estimator.count(BLOCK_SEPARATOR)

    def ceiling(self, fraction: float, budget: int) -> int:
        return int(math.floor(fraction * budget))

    @staticmethod
    def _block(kind: LayerKind, body: str) -> str:
        return f"{LAYER_HEADERS[kind]}\n{body}"

    @staticmethod
    def _brief_body(session) -> Optional[str]:
        if not session.is_reactivation:
            return None
        return (session.reactivation_brief or "").strip() or None

    def assemble(self, session_id: str, max_tokens: int,
                 now: Optional[datetime] = None) -> AssembledContext:
        """
        Assemble context for a session.

        Args:
            session_id: Session to assemble for
            max_tokens: Token budget for the whole payload
            now: Reference time for note expiry (defaults to the clock)

        Returns:
            AssembledContext; missing layers are omitted, never errors

        Raises:
            BudgetFloorError: if max_tokens is below min_total_tokens
        """
        budget = int(math.floor(max_tokens))
        if budget < self.config.min_total_tokens:
            raise BudgetFloorError(budget, self.config.min_total_tokens)

        result = AssembledContext(text="", tokens_estimate=0, budget=budget)
        session = self.store.get_session(session_id)
        if session is None:
            result.layers_omitted = {k.value: "no_session" for k in LayerKind}
            return result

        now = utc(now) or self._now()
        blocks: Dict[LayerKind, str] = {}
        used = 0

        # 1. Pinned notes
        turns = self.store.recent_turns(session_id, self.config.recent_max_turns)
        notes = self.store.pinned_notes_for(session, now)
        if notes:
            reserve = 0
            if turns:
                full_recent = self.cost(self._block(LayerKind.RECENT_CONTEXT, render_turns(turns)))
                reserve = min(self.config.recent_reserve_tokens, full_recent)
            block, note_cost = self._allocate_notes(notes, budget - reserve, result)
            if block:
                blocks[LayerKind.PINNED_NOTES] = block
                used += note_cost
            else:
                result.layers_omitted[LayerKind.PINNED_NOTES.value] = "budget"
        else:
            result.layers_omitted[LayerKind.PINNED_NOTES.value] = "empty"

        # 2. Recent context
        if turns:
            block, recent_cost = self._allocate_recent(turns, budget - used, result)
            if block:
                blocks[LayerKind.RECENT_CONTEXT] = block
                used += recent_cost
            else:
                result.layers_omitted[LayerKind.RECENT_CONTEXT.value] = "budget"
        else:
            result.layers_omitted[LayerKind.RECENT_CONTEXT.value] = "empty"

        # 3-5. Whole-or-nothing layers under consumption ceilings
        profile = self.profiles.read(session.contact_ref)
        optional: List[Tuple[LayerKind, Optional[str], float]] = [
            (LayerKind.CONTACT_PROFILE,
             render_profile(profile) if profile is not None and not profile.is_empty() else None,
             self.config.profile_ceiling),
            (LayerKind.SESSION_SUMMARY,
             (session.current_summary or "").strip() or None,
             self.config.summary_ceiling),
            (LayerKind.REACTIVATION_BRIEF,
             self._brief_body(session),
             self.config.reactivation_ceiling),
        ]
        for kind, body, fraction in optional:
            if body is None:
                result.layers_omitted[kind.value] = "empty"
                continue
            block = self._block(kind, body)
            block_cost = self.cost(block)
            if used + block_cost <= min(self.ceiling(fraction, budget), budget):
                blocks[kind] = block
                used += block_cost
            else:
                result.layers_omitted[kind.value] = "ceiling"

        result.text = BLOCK_SEPARATOR.join(blocks[k] for k in RENDER_ORDER if k in blocks)
        result.tokens_estimate = self.estimator.count(result.text)
        result.layers_included = [k for k in LayerKind if k in blocks]

        self.event_log.log_assembly(session_id, result)
        return result

    def _allocate_notes(self, notes: List[OperatorNote], allowance: int,
                        result: AssembledContext) -> Tuple[str, int]:
        """
        Fit pinned notes into allowance.

        Notes are ordered high -> low (then oldest first). Under pressure
        the lowest-priority notes are cut down to min_note_tokens first,
        then dropped. High notes are never truncated; one that cannot fit
        whole is dropped with a warning.
        """
        ordered = sorted(notes, key=_note_order)
        slots = [_NoteSlot(note=n, line=render_note(n)) for n in ordered]
        header = LAYER_HEADERS[LayerKind.PINNED_NOTES]

        def total(current: List[_NoteSlot]) -> int:
            if not current:
                return 0
            return self.cost(header + "\n" + "\n".join(s.line for s in current))

        # lowest priority, newest first
        victims = [s for s in reversed(slots) if s.note.priority.rank > 0]

        for slot in victims:
            if total(slots) <= allowance:
                break
            cut = self.estimator.truncate(slot.line, self.config.min_note_tokens)
            if cut and cut != slot.line:
                slot.line = cut
                slot.truncated = True

        for slot in victims:
            if total(slots) <= allowance:
                break
            slots.remove(slot)
            result.notes_dropped.append(slot.note.id)

        while slots and total(slots) > allowance:
            slot = slots.pop()
            result.notes_dropped.append(slot.note.id)
            logger.warning(
                "High-priority note %s does not fit a %d-token allowance, dropped",
                slot.note.id, allowance,
            )

        result.notes_included = [s.note.id for s in slots]
        result.notes_truncated = [s.note.id for s in slots if s.truncated]
        if not slots:
            return "", 0
        block = header + "\n" + "\n".join(s.line for s in slots)
        return block, self.cost(block)

    def _allocate_recent(self, turns: List[Turn], allowance: int,
                         result: AssembledContext) -> Tuple[str, int]:
        """
        Fit the newest turns into allowance.

        Drops the oldest turns first. If the newest turn alone does not
        fit, its text is cut down.
        """
        window = list(turns)
        while window:
            block = self._block(LayerKind.RECENT_CONTEXT, render_turns(window))
            block_cost = self.cost(block)
            if block_cost <= allowance:
                result.recent_turns_included = len(window)
                return block, block_cost
            if len(window) == 1:
                break
            window.pop(0)

        header = LAYER_HEADERS[LayerKind.RECENT_CONTEXT] + "\n"
        fixed = self.estimator.count(header) + self.estimator.count(BLOCK_SEPARATOR)
        line = render_turns(window)
        cut = self.estimator.truncate(line, allowance - fixed)
        if not cut:
            return "", 0
        block = header + cut
        block_cost = self.cost(block)
        if block_cost > allowance:
            return "", 0
        result.recent_turns_included = 1
        result.recent_turn_truncated = True
        return block, block_cost
