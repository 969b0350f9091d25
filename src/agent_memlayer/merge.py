"""
Conservative merge of accepted facts into a contact profile.

Merges are additive or corrective, never destructive:
- list fields append with normalized-text de-duplication
- scalar fields are last-write-wins, with the funnel stage guarded by
  a configurable policy
- identity fields entered by a human are never overwritten
"""

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .store import ContactProfileStore, utc
from .types import (
    FUNNEL_ORDER,
    ContactMemory,
    ExtractedFact,
    FactType,
    FunnelStage,
    Objection,
)


STAGE_POLICIES = ("monotonic", "free")

_WS_RE = re.compile(r"\s+")


def normalize_text(text: Any) -> str:
    """Key used for de-duplication: case-folded, single-spaced, no trailing punctuation."""
    return _WS_RE.sub(" ", str(text)).strip().strip(".!?;,").strip().casefold()


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    text = str(value).strip()
    return [text] if text else []


def append_unique(items: List[str], new_items: List[str]) -> List[str]:
    """Append items whose normalized text is not already present. Never removes."""
    seen = {normalize_text(i) for i in items}
    result = list(items)
    for item in new_items:
        key = normalize_text(item)
        if key and key not in seen:
            seen.add(key)
            result.append(item)
    return result


def stage_allowed(current: Optional[FunnelStage], new: FunnelStage, policy: str = "monotonic") -> bool:
    """
    Whether a declared stage may replace the current one.

    monotonic: forward moves along the funnel, churn at any time, and
    anything after churn. free: always.
    """
    if policy == "free" or current is None or new == current:
        return True
    if new == FunnelStage.CHURNED or current == FunnelStage.CHURNED:
        return True
    return FUNNEL_ORDER.index(new) >= FUNNEL_ORDER.index(current)


def _merge_objection(objections: List[Objection], value: Any) -> List[Objection]:
    if isinstance(value, dict):
        incoming = Objection.from_dict(value)
    else:
        incoming = Objection(objection=str(value or "").strip())
    if not incoming.objection:
        return objections

    key = normalize_text(incoming.objection)
    result = list(objections)
    for i, existing in enumerate(result):
        if normalize_text(existing.objection) == key:
            # resolved only moves false -> true
            result[i] = Objection(
                objection=existing.objection,
                resolved=existing.resolved or incoming.resolved,
                resolution=incoming.resolution or existing.resolution,
            )
            return result
    result.append(incoming)
    return result


def apply_fact(memory: ContactMemory, fact: ExtractedFact, stage_policy: str = "monotonic") -> bool:
    """
    Apply one accepted fact to a profile in place.

    Returns:
        True if the profile changed
    """
    before = memory.to_dict()

    if fact.type == FactType.PREFERENCE:
        key = normalize_text(fact.category) or "general"
        text = str(fact.value).strip() if fact.value is not None else ""
        if text:
            memory.preferences[key] = text

    elif fact.type == FactType.PAIN_POINT:
        memory.pain_points = append_unique(memory.pain_points, _as_list(fact.value))

    elif fact.type == FactType.PRODUCT:
        memory.products_discussed = append_unique(memory.products_discussed, _as_list(fact.value))

    elif fact.type == FactType.OBJECTION:
        memory.objections_addressed = _merge_objection(memory.objections_addressed, fact.value)

    elif fact.type == FactType.STAGE:
        try:
            stage = FunnelStage(normalize_text(fact.value))
        except ValueError:
            return False
        if stage_allowed(memory.current_stage, stage, stage_policy):
            memory.current_stage = stage

    elif fact.type == FactType.NEXT_STEP:
        text = str(fact.value or "").strip()
        if text:
            memory.next_step = text

    elif fact.type == FactType.IDENTITY:
        key = normalize_text(fact.category)
        text = str(fact.value or "").strip()
        if key and text and key not in memory.human_fields:
            memory.identity[key] = text

    return memory.to_dict() != before


class ProfileMerger:
    """
    Single mutation entry point for contact profiles.

    Reads through the ContactProfileStore, merges, and writes back.
    """

    def __init__(self, profiles: ContactProfileStore, stage_policy: str = "monotonic"):
        if stage_policy not in STAGE_POLICIES:
            raise ValueError(f"Unknown stage_policy: {stage_policy}")
        self.profiles = profiles
        self.stage_policy = stage_policy

    def merge(self, contact_ref: str, facts: List[ExtractedFact],
              merged_at: Optional[datetime] = None) -> ContactMemory:
        """
        Merge accepted facts into the contact's profile.

        Creates the profile on first merge. extraction_count increments
        once per call; last_extracted_at never moves backward.
        """
        merged_at = utc(merged_at) or datetime.now(timezone.utc)
        memory = self.profiles.read(contact_ref) or ContactMemory(contact_ref=contact_ref)

        for fact in facts:
            apply_fact(memory, fact, self.stage_policy)

        memory.extraction_count += 1
        if memory.last_extracted_at is None or merged_at > utc(memory.last_extracted_at):
            memory.last_extracted_at = merged_at

        self.profiles.write(contact_ref, memory)
        return memory

    def curate(
        self,
        contact_ref: str,
        identity: Optional[Dict[str, str]] = None,
        stage: Optional[FunnelStage] = None,
        next_step: Optional[str] = None,
    ) -> ContactMemory:
        """
        Human curation path.

        Identity keys written here are locked against AI facts. Stage
        corrections bypass the funnel policy.
        """
        memory = self.profiles.read(contact_ref) or ContactMemory(contact_ref=contact_ref)
        for key, value in (identity or {}).items():
            key = normalize_text(key)
            memory.identity[key] = str(value).strip()
            if key not in memory.human_fields:
                memory.human_fields.append(key)
        if stage is not None:
            memory.current_stage = FunnelStage(stage)
        if next_step is not None:
            memory.next_step = next_step.strip() or None
        self.profiles.write(contact_ref, memory)
        return memory
