"""End-to-end tests for MemoryEngine."""

import asyncio
import json
import pytest
import tempfile
from datetime import timedelta
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from agent_memlayer import EngineConfig, InboundMessage, LayerKind, MemoryEngine
from agent_memlayer.errors import BudgetFloorError
from agent_memlayer.types import (
    ConsentStatus,
    ExtractedFact,
    FactType,
    InstructionKind,
    NotePriority,
    NoteTarget,
    SnapshotKind,
)

from fakes import T0, Clock, ScriptedModel

KEY = "whatsapp:+4915112345"
CONTACT = "+4915112345"


@pytest.fixture
def workdir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


def make_config(workdir, **overrides):
    data = {
        "db_path": str(workdir / "memlayer.db"),
        "log_path": str(workdir / "logs"),
        "summary": {"delay_seconds": 0},
        "extraction": {"delay_seconds": 0, "min_new_turns": 6},
    }
    data.update(overrides)
    return EngineConfig.from_dict(data)


def echo(context, message):
    return f"Re: {message.text}"


class TestInboundMessage:

    def test_contact_from_session_key(self):
        assert InboundMessage(KEY, "hi", T0).resolve_contact_ref() == CONTACT
        assert InboundMessage("alice", "hi", T0).resolve_contact_ref() == "alice"
        assert InboundMessage(KEY, "hi", T0, contact_ref="crm-42").resolve_contact_ref() == "crm-42"


class TestTurnFlow:

    def test_handle_turn(self, workdir):
        clock = Clock()
        model = ScriptedModel()

        async def scenario():
            async with MemoryEngine(make_config(workdir), model=model, clock=clock) as engine:
                result = await engine.handle_turn(InboundMessage(KEY, "Hi, what does it cost?", clock.now),
                                                  echo, max_tokens=500)
                assert result.reply == "Re: Hi, what does it cost?"
                assert result.context.layers_included == [LayerKind.RECENT_CONTEXT]
                assert "User: Hi, what does it cost?" in result.context.text
                assert result.session.turn_count == 2
                assert result.session.contact_ref == CONTACT
                # assemble never calls the model
                assert model.calls == []

        asyncio.run(scenario())

    def test_async_responder(self, workdir):
        clock = Clock()

        async def responder(context, message):
            await asyncio.sleep(0)
            return "async reply"

        async def scenario():
            async with MemoryEngine(make_config(workdir), model=ScriptedModel(), clock=clock) as engine:
                result = await engine.handle_turn(InboundMessage(KEY, "Hi", clock.now),
                                                  responder, max_tokens=500)
                assert result.reply == "async reply"

        asyncio.run(scenario())

    def test_summary_after_ten_messages(self, workdir):
        clock = Clock()
        model = ScriptedModel()

        async def scenario():
            async with MemoryEngine(make_config(workdir), model=model, clock=clock) as engine:
                for i in range(5):
                    clock.advance(minutes=1)
                    result = await engine.handle_turn(InboundMessage(KEY, f"question {i}", clock.now),
                                                      echo, max_tokens=800)
                await engine.drain()

                session = engine.get_session(result.session.id)
                assert session.messages_since_summary == 0
                assert session.current_summary
                assert engine.latest_snapshot(session.id, SnapshotKind.SESSION_SUMMARY) is not None

                clock.advance(minutes=1)
                engine.receive(InboundMessage(KEY, "one more thing", clock.now))
                context = engine.assemble(session.id, 800)
                assert LayerKind.SESSION_SUMMARY in context.layers_included

        asyncio.run(scenario())
        stats = json.loads((workdir / "logs" / "summary.jsonl").read_text().splitlines()[-1])
        assert stats["event"] == "written"

    def test_extraction_to_consent_to_profile(self, workdir):
        clock = Clock()
        model = ScriptedModel().script(InstructionKind.EXTRACT, json.dumps({"facts": [
            {"type": "pain_point", "category": "", "value": "slow onboarding", "confidence": 0.9,
             "source_text": "onboarding took forever", "suggest_remember": True},
        ]}))

        async def scenario():
            async with MemoryEngine(make_config(workdir), model=model, clock=clock) as engine:
                for i in range(3):
                    clock.advance(minutes=1)
                    await engine.handle_turn(InboundMessage(KEY, f"onboarding took forever {i}", clock.now),
                                             echo, max_tokens=800)
                await engine.drain()

                pending = engine.list_consents(contact_ref=CONTACT, status=ConsentStatus.PENDING)
                assert len(pending) == 1
                assert engine.read_contact_memory(CONTACT) is None

                engine.resolve_consent(pending[0].id, accepted=True)
                profile = engine.read_contact_memory(CONTACT)
                assert profile.pain_points == ["slow onboarding"]

                session_id = pending[0].session_id
                context = engine.assemble(session_id, 2000)
                assert LayerKind.CONTACT_PROFILE in context.layers_included
                assert "slow onboarding" in context.text

        asyncio.run(scenario())

    def test_low_confidence_proposal_is_ignored(self, workdir):
        async def scenario():
            async with MemoryEngine(make_config(workdir), model=ScriptedModel()) as engine:
                fact = ExtractedFact(type=FactType.PAIN_POINT, category="", value="maybe pricing",
                                     confidence=0.5, suggest_remember=True)
                assert engine.propose_consent(fact, CONTACT) is None
                assert engine.list_consents() == []

        asyncio.run(scenario())

    def test_floor_error_reaches_caller(self, workdir):
        async def scenario():
            async with MemoryEngine(make_config(workdir), model=ScriptedModel()) as engine:
                session = engine.receive(InboundMessage(KEY, "hi", T0))
                with pytest.raises(BudgetFloorError):
                    engine.assemble(session.id, 10)

        asyncio.run(scenario())


class TestReactivationFlow:

    def test_cold_return_with_pinned_note(self, workdir):
        clock = Clock()

        async def scenario():
            async with MemoryEngine(make_config(workdir), model=ScriptedModel(), clock=clock) as engine:
                first = await engine.handle_turn(InboundMessage(KEY, "Tell me about plans", clock.now),
                                                 echo, max_tokens=500)
                engine.add_note(NoteTarget.CONTACT, CONTACT, "Do not offer discounts before the demo.",
                                priority=NotePriority.HIGH)

                clock.advance(days=8)
                assert engine.sweep()["briefs"] == 1
                await engine.drain()

                clock.advance(days=1)
                result = await engine.handle_turn(InboundMessage(KEY, "I'm back", clock.now),
                                                  echo, max_tokens=1000)
                assert result.session.id == first.session.id
                assert LayerKind.PINNED_NOTES in result.context.layers_included
                assert LayerKind.REACTIVATION_BRIEF in result.context.layers_included

                clock.advance(minutes=2)
                result = await engine.handle_turn(InboundMessage(KEY, "So, pricing?", clock.now),
                                                  echo, max_tokens=1000)
                assert LayerKind.REACTIVATION_BRIEF not in result.context.layers_included

        asyncio.run(scenario())


class TestSweep:

    def test_idle_summary_and_consent_expiry(self, workdir):
        clock = Clock()

        async def scenario():
            async with MemoryEngine(make_config(workdir), model=ScriptedModel(), clock=clock) as engine:
                result = await engine.handle_turn(InboundMessage(KEY, "hello", clock.now),
                                                  echo, max_tokens=500)
                fact = ExtractedFact(type=FactType.PRODUCT, category="", value="Team plan",
                                     confidence=0.9, suggest_remember=True)
                consent_id = engine.propose_consent(fact, CONTACT)

                clock.advance(hours=25)
                swept = engine.sweep()
                assert swept["summaries"] == 1
                await engine.drain()
                assert engine.get_session(result.session.id).current_summary

                clock.advance(days=7)
                assert engine.sweep()["consents_expired"] == 1
                assert engine.store.get_consent(consent_id).status == ConsentStatus.EXPIRED

        asyncio.run(scenario())

    def test_status_and_stats(self, workdir):
        async def scenario():
            async with MemoryEngine(make_config(workdir), model=ScriptedModel(), clock=Clock()) as engine:
                session = engine.receive(InboundMessage(KEY, "hi", T0))
                status = engine.status(session.id)
                assert status["turns"] == 1
                assert status["scheduler_state"] == "idle"
                stats = engine.stats()
                assert stats["sessions"] == 1
                assert stats["tasks"]["failed"] == 0

        asyncio.run(scenario())


class TestSyncEntryPoints:

    def test_scheduling_without_running_loop(self, workdir):
        clock = Clock()
        config = make_config(workdir, summary={"delay_seconds": 5, "message_threshold": 2})
        engine = MemoryEngine(config, model=ScriptedModel(), clock=clock)

        session = engine.receive(InboundMessage(KEY, "hi", clock.now))
        session = engine.record_response(session.id, "hello")
        assert session.turn_count == 2
        assert engine.queue.stats()["pending_keys"] == 0

        clock.advance(hours=25)
        assert engine.sweep()["summaries"] == 0

        async def scenario():
            await engine.start()
            assert engine.scheduler.notify(session.id)
            assert engine.scheduler.state(session.id).value == "pending_trigger"
            await engine.close()

        asyncio.run(scenario())


class TestReactivationWithoutSweep:

    def test_cold_return_without_sweep_has_no_brief(self, workdir):
        clock = Clock()
        model = ScriptedModel()

        async def scenario():
            async with MemoryEngine(make_config(workdir), model=model, clock=clock) as engine:
                await engine.handle_turn(InboundMessage(KEY, "Tell me about plans", clock.now),
                                         echo, max_tokens=1000)
                clock.advance(days=9)
                result = await engine.handle_turn(InboundMessage(KEY, "I'm back", clock.now),
                                                  echo, max_tokens=1000)
                assert LayerKind.REACTIVATION_BRIEF not in result.context.layers_included
                await engine.drain()

                # brief exists now, but the flag clears on the next turn
                assert engine.get_session(result.session.id).reactivation_brief
                clock.advance(minutes=1)
                result = await engine.handle_turn(InboundMessage(KEY, "Pricing?", clock.now),
                                                  echo, max_tokens=1000)
                assert LayerKind.REACTIVATION_BRIEF not in result.context.layers_included

        asyncio.run(scenario())
        assert len(model.calls_for(InstructionKind.REACTIVATION_BRIEF)) == 1
