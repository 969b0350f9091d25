"""Tests for profile merging."""

import pytest
from datetime import timedelta
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from agent_memlayer.merge import ProfileMerger, apply_fact, normalize_text, stage_allowed
from agent_memlayer.types import ContactMemory, ExtractedFact, FactType, FunnelStage

from fakes import T0, DictProfileStore


def fact(type_, value, category="", confidence=0.9):
    return ExtractedFact(type=type_, category=category, value=value,
                         confidence=confidence, suggest_remember=True)


class TestNormalize:

    def test_case_space_and_punctuation(self):
        assert normalize_text("  Slow   Onboarding. ") == "slow onboarding"
        assert normalize_text("Unclear pricing!") == normalize_text("unclear PRICING")


class TestListFields:

    def test_pain_points_union_never_shrinks(self):
        memory = ContactMemory(contact_ref="c", pain_points=["slow onboarding"])
        apply_fact(memory, fact(FactType.PAIN_POINT, ["slow onboarding", "unclear pricing"]))
        assert memory.pain_points == ["slow onboarding", "unclear pricing"]

    def test_dedup_is_by_normalized_text(self):
        memory = ContactMemory(contact_ref="c", pain_points=["Slow onboarding"])
        changed = apply_fact(memory, fact(FactType.PAIN_POINT, "slow  onboarding."))
        assert not changed
        assert memory.pain_points == ["Slow onboarding"]

    def test_products_append(self):
        memory = ContactMemory(contact_ref="c", products_discussed=["Team plan"])
        apply_fact(memory, fact(FactType.PRODUCT, "Enterprise plan"))
        assert memory.products_discussed == ["Team plan", "Enterprise plan"]

    def test_objection_resolution_updates_in_place(self):
        memory = ContactMemory(contact_ref="c")
        apply_fact(memory, fact(FactType.OBJECTION, "Too expensive"))
        apply_fact(memory, fact(FactType.OBJECTION, {
            "objection": "too expensive", "resolved": True, "resolution": "Annual discount",
        }))
        assert len(memory.objections_addressed) == 1
        objection = memory.objections_addressed[0]
        assert objection.objection == "Too expensive"
        assert objection.resolved
        assert objection.resolution == "Annual discount"

    def test_objection_never_unresolves(self):
        memory = ContactMemory(contact_ref="c")
        apply_fact(memory, fact(FactType.OBJECTION, {"objection": "SSO", "resolved": True}))
        apply_fact(memory, fact(FactType.OBJECTION, {"objection": "SSO", "resolved": False}))
        assert memory.objections_addressed[0].resolved


class TestScalarFields:

    def test_stage_moves_forward(self):
        memory = ContactMemory(contact_ref="c", current_stage=FunnelStage.AWARENESS)
        apply_fact(memory, fact(FactType.STAGE, "decision"))
        assert memory.current_stage == FunnelStage.DECISION

    def test_stage_never_moves_backward_by_default(self):
        memory = ContactMemory(contact_ref="c", current_stage=FunnelStage.DECISION)
        apply_fact(memory, fact(FactType.STAGE, "awareness"))
        assert memory.current_stage == FunnelStage.DECISION

    def test_churn_always_applies(self):
        memory = ContactMemory(contact_ref="c", current_stage=FunnelStage.CUSTOMER)
        apply_fact(memory, fact(FactType.STAGE, "churned"))
        assert memory.current_stage == FunnelStage.CHURNED
        apply_fact(memory, fact(FactType.STAGE, "consideration"))
        assert memory.current_stage == FunnelStage.CONSIDERATION

    def test_free_policy_is_last_write_wins(self):
        memory = ContactMemory(contact_ref="c", current_stage=FunnelStage.DECISION)
        apply_fact(memory, fact(FactType.STAGE, "awareness"), stage_policy="free")
        assert memory.current_stage == FunnelStage.AWARENESS

    def test_unknown_stage_ignored(self):
        memory = ContactMemory(contact_ref="c", current_stage=FunnelStage.DECISION)
        assert not apply_fact(memory, fact(FactType.STAGE, "negotiation"))
        assert memory.current_stage == FunnelStage.DECISION

    def test_stage_allowed_table(self):
        assert stage_allowed(None, FunnelStage.DECISION)
        assert stage_allowed(FunnelStage.DECISION, FunnelStage.DECISION)
        assert not stage_allowed(FunnelStage.CUSTOMER, FunnelStage.CONSIDERATION)

    def test_next_step_last_write_wins(self):
        memory = ContactMemory(contact_ref="c", next_step="Send deck")
        apply_fact(memory, fact(FactType.NEXT_STEP, "Book demo"))
        assert memory.next_step == "Book demo"

    def test_preference_most_recent_wins(self):
        memory = ContactMemory(contact_ref="c")
        apply_fact(memory, fact(FactType.PREFERENCE, "email", category="Channel"))
        apply_fact(memory, fact(FactType.PREFERENCE, "whatsapp", category="channel"))
        assert memory.preferences == {"channel": "whatsapp"}


class TestProfileMerger:

    def test_creates_profile_lazily(self):
        profiles = DictProfileStore()
        merger = ProfileMerger(profiles)
        memory = merger.merge("alice", [fact(FactType.PAIN_POINT, "slow onboarding")], T0)
        assert memory.extraction_count == 1
        assert memory.last_extracted_at == T0
        assert profiles.read("alice").pain_points == ["slow onboarding"]

    def test_counters_advance(self):
        profiles = DictProfileStore()
        merger = ProfileMerger(profiles)
        merger.merge("alice", [fact(FactType.PRODUCT, "Team plan")], T0 + timedelta(days=1))
        memory = merger.merge("alice", [fact(FactType.PRODUCT, "Team plan")], T0)
        assert memory.extraction_count == 2
        # never moves backward
        assert memory.last_extracted_at == T0 + timedelta(days=1)

    def test_human_identity_wins(self):
        profiles = DictProfileStore()
        merger = ProfileMerger(profiles)
        merger.curate("alice", identity={"name": "Alice Meyer"})
        memory = merger.merge("alice", [
            fact(FactType.IDENTITY, "Ally", category="name"),
            fact(FactType.IDENTITY, "alice@example.com", category="email"),
        ], T0)
        assert memory.identity == {"name": "Alice Meyer", "email": "alice@example.com"}

    def test_human_stage_correction_bypasses_policy(self):
        profiles = DictProfileStore()
        merger = ProfileMerger(profiles)
        merger.merge("alice", [fact(FactType.STAGE, "decision")], T0)
        memory = merger.curate("alice", stage=FunnelStage.CONSIDERATION)
        assert memory.current_stage == FunnelStage.CONSIDERATION

    def test_unknown_policy_rejected(self):
        with pytest.raises(ValueError):
            ProfileMerger(DictProfileStore(), stage_policy="sometimes")
