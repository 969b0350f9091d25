"""Tests for the budget allocator."""

import pytest
import tempfile
from datetime import timedelta
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from agent_memlayer.budget import BudgetAllocator
from agent_memlayer.config import BudgetConfig
from agent_memlayer.errors import BudgetFloorError
from agent_memlayer.store import MemoryStore, SQLiteProfileStore
from agent_memlayer.types import (
    ContactMemory,
    FunnelStage,
    LayerKind,
    NoteCategory,
    NotePriority,
    NoteTarget,
    Role,
)

from fakes import T0

CONTACT = "+4915112345"


@pytest.fixture
def env():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = MemoryStore(f"{tmpdir}/test.db")
        profiles = SQLiteProfileStore(store)
        allocator = BudgetAllocator(store, profiles, BudgetConfig(), clock=lambda: T0 + timedelta(days=9))
        session = store.get_or_create_session(f"whatsapp:{CONTACT}", CONTACT, T0)
        yield store, profiles, allocator, session
        store.close()


def add_turns(store, session, n, length=0):
    for i in range(n):
        role = Role.USER if i % 2 == 0 else Role.ASSISTANT
        text = f"Message number {i}" + (" " + "x" * length if length else "")
        store.append_turn(session.id, role, text, T0 + timedelta(minutes=i))


def add_note(store, session, content, priority=NotePriority.HIGH, minutes=0):
    return store.add_note(NoteTarget.SESSION, session.id, NoteCategory.STRATEGY, content,
                          priority=priority, created_at=T0 + timedelta(minutes=minutes))


def fill_everything(store, profiles, session):
    """Session with every layer available."""
    add_turns(store, session, 14, length=60)
    add_note(store, session, "Never offer a discount before the demo.")
    add_note(store, session, "Mention the referral programme. " * 4, NotePriority.MEDIUM, 1)
    add_note(store, session, "Likes short answers. " * 6, NotePriority.LOW, 2)
    profiles.write(CONTACT, ContactMemory(
        contact_ref=CONTACT,
        pain_points=["slow onboarding", "unclear pricing"],
        products_discussed=["Team plan"],
        current_stage=FunnelStage.CONSIDERATION,
        extraction_count=1,
        last_extracted_at=T0,
    ))
    store.write_summary(session.id, "The contact compared plans and asked about SSO. " * 3, 10,
                        T0 + timedelta(hours=1))
    store.cache_reactivation_brief(session.id, "Returning after nine days, SSO still open.", 14,
                                   T0 + timedelta(days=8))
    store.set_reactivation(session.id, True)


class TestScenarios:

    def test_only_recent_for_fresh_short_session(self, env):
        store, _, allocator, session = env
        add_turns(store, session, 3)
        ctx = allocator.assemble(session.id, 500)
        assert ctx.layers_included == [LayerKind.RECENT_CONTEXT]
        assert ctx.recent_turns_included == 3
        assert "Message number 0" in ctx.text
        assert ctx.tokens_estimate <= 500

    def test_cold_return_under_tight_budget(self, env):
        store, profiles, allocator, session = env
        add_turns(store, session, 12, length=200)
        note = add_note(store, session, "Do not offer discounts before the demo.")
        profiles.write(CONTACT, ContactMemory(contact_ref=CONTACT, pain_points=["pricing"],
                                              extraction_count=1, last_extracted_at=T0))
        store.write_summary(session.id, "Long summary. " * 20, 12, T0 + timedelta(hours=1))
        store.cache_reactivation_brief(session.id, "Returning contact. " * 10, 12,
                                       T0 + timedelta(days=9))
        store.set_reactivation(session.id, True)

        ctx = allocator.assemble(session.id, 200)

        assert LayerKind.PINNED_NOTES in ctx.layers_included
        assert LayerKind.RECENT_CONTEXT in ctx.layers_included
        assert LayerKind.CONTACT_PROFILE not in ctx.layers_included
        assert LayerKind.SESSION_SUMMARY not in ctx.layers_included
        assert note.id in ctx.notes_included
        assert 0 < ctx.recent_turns_included < 12
        assert ctx.tokens_estimate <= 200

    def test_empty_session(self, env):
        _, _, allocator, session = env
        ctx = allocator.assemble(session.id, 500)
        assert ctx.layers_included == []
        assert ctx.text == ""
        assert ctx.layers_omitted["recent_context"] == "empty"

    def test_unknown_session_is_not_an_error(self, env):
        _, _, allocator, _ = env
        ctx = allocator.assemble("does-not-exist", 500)
        assert ctx.layers_included == []
        assert ctx.tokens_estimate == 0


class TestInvariants:

    def test_budget_never_exceeded(self, env):
        store, profiles, allocator, session = env
        fill_everything(store, profiles, session)
        for max_tokens in range(48, 1200, 13):
            ctx = allocator.assemble(session.id, max_tokens)
            assert ctx.tokens_estimate <= max_tokens, max_tokens
            assert LayerKind.RECENT_CONTEXT in ctx.layers_included, max_tokens

    def test_deterministic(self, env):
        store, profiles, allocator, session = env
        fill_everything(store, profiles, session)
        for max_tokens in (60, 150, 400, 2000):
            a = allocator.assemble(session.id, max_tokens)
            b = allocator.assemble(session.id, max_tokens)
            assert a.layers_included == b.layers_included
            assert a.text == b.text
            assert a.notes_truncated == b.notes_truncated
            assert a.notes_dropped == b.notes_dropped
            assert a.recent_turns_included == b.recent_turns_included

    def test_high_priority_pinned_note_always_included(self, env):
        store, profiles, allocator, session = env
        fill_everything(store, profiles, session)
        high = [n for n in store.pinned_notes_for(session, T0) if n.priority == NotePriority.HIGH][0]
        for max_tokens in (80, 200, 2000):
            ctx = allocator.assemble(session.id, max_tokens)
            assert LayerKind.PINNED_NOTES in ctx.layers_included
            assert high.id in ctx.notes_included
            assert high.content in ctx.text
            assert high.id not in ctx.notes_truncated

    def test_below_floor_raises(self, env):
        store, _, allocator, session = env
        add_turns(store, session, 2)
        with pytest.raises(BudgetFloorError):
            allocator.assemble(session.id, 47)

    def test_all_layers_fit_in_large_budget(self, env):
        store, profiles, allocator, session = env
        fill_everything(store, profiles, session)
        ctx = allocator.assemble(session.id, 10000)
        assert ctx.layers_included == list(LayerKind)
        # reading order: notes first, recent last
        assert ctx.text.startswith("## Operator Notes")
        assert ctx.text.index("## Recent Conversation") > ctx.text.index("## Conversation Summary")


class TestTruncation:

    def test_low_priority_note_truncated_first(self, env):
        store, _, allocator, session = env
        store.append_turn(session.id, Role.USER, "hi", T0)
        high = add_note(store, session, "Lead with ROI.")
        low = add_note(store, session, "Background detail. " * 20, NotePriority.LOW, 1)

        ctx = allocator.assemble(session.id, 60)

        assert ctx.notes_included == [high.id, low.id]
        assert ctx.notes_truncated == [low.id]
        assert "Lead with ROI." in ctx.text
        assert LayerKind.RECENT_CONTEXT in ctx.layers_included
        assert ctx.tokens_estimate <= 60

    def test_expired_note_excluded(self, env):
        store, _, allocator, session = env
        add_turns(store, session, 2)
        store.add_note(NoteTarget.SESSION, session.id, NoteCategory.WARNING, "Expired promo",
                       priority=NotePriority.HIGH, expires_at=T0 + timedelta(days=1))
        ctx = allocator.assemble(session.id, 500)
        assert "Expired promo" not in ctx.text
        assert LayerKind.PINNED_NOTES not in ctx.layers_included

    def test_recent_window_shrinks_oldest_first(self, env):
        store, _, allocator, session = env
        add_turns(store, session, 12, length=100)
        ctx = allocator.assemble(session.id, 100)
        assert 0 < ctx.recent_turns_included < 12
        assert "Message number 11" in ctx.text
        assert "Message number 0 " not in ctx.text

    def test_single_huge_turn_is_cut_not_dropped(self, env):
        store, _, allocator, session = env
        store.append_turn(session.id, Role.USER, "word " * 500, T0)
        ctx = allocator.assemble(session.id, 50)
        assert ctx.layers_included == [LayerKind.RECENT_CONTEXT]
        assert ctx.recent_turn_truncated
        assert ctx.tokens_estimate <= 50


class TestLayerCeilings:

    def test_profile_is_whole_or_nothing(self, env):
        store, profiles, allocator, session = env
        add_turns(store, session, 2)
        profiles.write(CONTACT, ContactMemory(
            contact_ref=CONTACT,
            pain_points=[f"pain point number {i} with some detail" for i in range(20)],
            extraction_count=1,
            last_extracted_at=T0,
        ))
        ctx = allocator.assemble(session.id, 200)
        assert LayerKind.CONTACT_PROFILE not in ctx.layers_included
        assert "## Contact Profile" not in ctx.text
        assert ctx.layers_omitted["contact_profile"] == "ceiling"

        ctx = allocator.assemble(session.id, 5000)
        assert LayerKind.CONTACT_PROFILE in ctx.layers_included
        assert "pain point number 19" in ctx.text

    def test_summary_sacrificed_before_profile(self, env):
        store, profiles, allocator, session = env
        add_turns(store, session, 2)
        profiles.write(CONTACT, ContactMemory(contact_ref=CONTACT, pain_points=["pricing"],
                                              extraction_count=1, last_extracted_at=T0))
        store.write_summary(session.id, "x" * 400, 2, T0 + timedelta(hours=1))

        ctx = allocator.assemble(session.id, 120)
        assert LayerKind.CONTACT_PROFILE in ctx.layers_included
        assert LayerKind.SESSION_SUMMARY not in ctx.layers_included

        ctx = allocator.assemble(session.id, 1000)
        assert LayerKind.SESSION_SUMMARY in ctx.layers_included

    def test_brief_only_when_reactivated(self, env):
        store, _, allocator, session = env
        add_turns(store, session, 2)
        store.cache_reactivation_brief(session.id, "Welcome back brief.", 2, T0 + timedelta(days=8))

        ctx = allocator.assemble(session.id, 1000)
        assert LayerKind.REACTIVATION_BRIEF not in ctx.layers_included

        store.set_reactivation(session.id, True)
        ctx = allocator.assemble(session.id, 1000)
        assert LayerKind.REACTIVATION_BRIEF in ctx.layers_included
        assert "Welcome back brief." in ctx.text


class TestRecentReserve:

    def test_reserve_must_hold_recent_header(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = MemoryStore(f"{tmpdir}/test.db")
            # at one char per token the header and separator cost 25 tokens
            with pytest.raises(ValueError):
                BudgetAllocator(store, SQLiteProfileStore(store), BudgetConfig(chars_per_token=1))
            store.close()
