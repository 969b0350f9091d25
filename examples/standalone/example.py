#!/usr/bin/env python3
"""
Standalone example of agent-memlayer usage.

Uses a canned model client so it runs offline. Run from this directory:
    python example.py
"""

import asyncio
import json
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path

# Add src to path for development
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from agent_memlayer import EngineConfig, InboundMessage, MemoryEngine
from agent_memlayer.model import ModelClient
from agent_memlayer.types import InstructionKind, ModelResult, NotePriority, NoteTarget


class CannedModel(ModelClient):
    """Returns fixed completions per instruction kind."""

    async def invoke(self, prompt_text: str, instruction_kind: InstructionKind) -> ModelResult:
        if instruction_kind == InstructionKind.EXTRACT:
            text = json.dumps({"facts": [{
                "type": "pain_point", "category": "", "value": "manual invoicing",
                "confidence": 0.9, "source_text": "we still invoice by hand",
                "suggest_remember": True,
            }]})
        elif instruction_kind == InstructionKind.SUMMARIZE:
            text = "Contact runs a small agency and asked about invoicing automation."
        else:
            text = "Returning contact; last discussed invoicing automation."
        return ModelResult(completion_text=text, usage={"prompt_chars": len(prompt_text)})


def reply(context, message):
    return f"Thanks! ({len(context.layers_included)} context layers, ~{context.tokens_estimate} tokens)"


async def main():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = EngineConfig.from_dict({
            "db_path": f"{tmpdir}/example.db",
            "summary": {"delay_seconds": 0},
            "extraction": {"delay_seconds": 0, "min_new_turns": 4},
        })

        print("=== agent-memlayer Example ===\n")

        async with MemoryEngine(config, model=CannedModel()) as engine:
            key = "whatsapp:+4915112345"
            messages = [
                "Hi, do you integrate with accounting tools?",
                "We still invoice by hand, it takes days.",
                "What does the team plan cost?",
            ]
            for text in messages:
                now = datetime.now(timezone.utc)
                result = await engine.handle_turn(InboundMessage(key, text, now), reply, max_tokens=800)
                print(f"User: {text}")
                print(f"Assistant: {result.reply}")

            await engine.drain()

            print("\nPending consents:")
            for consent in engine.list_consents():
                print(f"  [{consent.id}] {consent.fact.type.value}: {consent.fact.value}")
                engine.resolve_consent(consent.id, accepted=True)

            contact = result.session.contact_ref
            engine.add_note(NoteTarget.CONTACT, contact, "Prefers WhatsApp over email.",
                            priority=NotePriority.HIGH)

            profile = engine.read_contact_memory(contact)
            if profile:
                print(f"\nProfile pain points: {profile.pain_points}")

            context = engine.assemble(result.session.id, max_tokens=600)
            print(f"\nAssembled context ({context.tokens_estimate}/{context.budget} tokens):")
            print(context.text)

            print("\nStats:", engine.stats())


if __name__ == "__main__":
    asyncio.run(main())
