"""
Instruction texts for the model-call collaborator.

Each background job sends one user prompt built here together with the
system instruction for its InstructionKind.
"""

import json
from typing import List, Optional

from .recent import render_turns
from .types import ContactMemory, InstructionKind, OperatorNote, Turn


SUMMARY_SYSTEM_PROMPT = """You are a conversation memory assistant.
Your job is to maintain a rolling summary of a sales/support conversation.

Preserve:
- What the contact wants and why
- Decisions, commitments and agreed next steps
- Concrete names, dates, numbers and products
- Open questions that still need an answer

Remove:
- Greetings and small talk
- Repetition already covered by the previous summary

Write in the third person. Output only the summary, no explanations."""


EXTRACTION_SYSTEM_PROMPT = """You extract facts about a contact from a conversation.

Rules:
- Only extract facts the contact stated explicitly. Never infer.
- Skip anything already present in the existing profile.
- confidence is a number between 0 and 1.
- suggest_remember may only be true when confidence is at least 0.7.

Output a JSON object and nothing else:
{"facts": [{"type": "...", "category": "...", "value": ..., "confidence": 0.0,
            "source_text": "...", "suggest_remember": false}]}

Allowed types:
- preference: category is the preference name, value is a string
- pain_point: value is a short string
- objection: value is {"objection": "...", "resolved": true|false, "resolution": "..."}
- product: value is the product name
- stage: value is one of awareness, consideration, decision, customer, churned
- next_step: value is a short string
- identity: category is name, email, phone or company, value is a string

If there are no facts, output {"facts": []}."""


REACTIVATION_SYSTEM_PROMPT = """You prepare a short re-entry brief for an assistant
picking a conversation back up after a long pause.

In 3-5 sentences cover: who the contact is, where the conversation stood,
what was left open, and how to reopen it naturally.
Do not invent anything that is not in the material provided.
Output only the brief."""


SYSTEM_PROMPTS = {
    InstructionKind.SUMMARIZE: SUMMARY_SYSTEM_PROMPT,
    InstructionKind.EXTRACT: EXTRACTION_SYSTEM_PROMPT,
    InstructionKind.REACTIVATION_BRIEF: REACTIVATION_SYSTEM_PROMPT,
}


def render_profile(profile: ContactMemory) -> str:
    """Readable, stable rendering of a contact profile."""
    lines = []
    for key in sorted(profile.identity):
        lines.append(f"- {key.capitalize()}: {profile.identity[key]}")
    if profile.current_stage:
        lines.append(f"- Stage: {profile.current_stage.value}")
    if profile.next_step:
        lines.append(f"- Next step: {profile.next_step}")
    if profile.preferences:
        prefs = ", ".join(f"{k}={profile.preferences[k]}" for k in sorted(profile.preferences))
        lines.append(f"- Preferences: {prefs}")
    if profile.pain_points:
        lines.append(f"- Pain points: {'; '.join(profile.pain_points)}")
    if profile.products_discussed:
        lines.append(f"- Products discussed: {', '.join(profile.products_discussed)}")
    for o in profile.objections_addressed:
        status = "resolved" if o.resolved else "open"
        detail = f" ({o.resolution})" if o.resolution else ""
        lines.append(f"- Objection [{status}]: {o.objection}{detail}")
    return "\n".join(lines)


def render_note(note: OperatorNote) -> str:
    return f"- [{note.priority.value}/{note.category.value}] {note.content.strip()}"


def build_summary_prompt(turns: List[Turn], previous_summary: Optional[str] = None,
                         max_chars: int = 1200) -> str:
    previous = previous_summary or "(none)"
    return f"""Previous summary:
{previous}

Conversation since then (oldest first):
{render_turns(turns)}

Write the updated summary in at most {max_chars} characters:"""


def build_extraction_prompt(conversation_text: str, existing_profile: Optional[ContactMemory]) -> str:
    existing = json.dumps(existing_profile.to_dict(), indent=2) if existing_profile else "{}"
    return f"""Existing profile:
{existing}

Conversation:
{conversation_text}

Extract new explicit facts:"""


def build_reactivation_prompt(
    idle_days: float,
    summary: Optional[str],
    profile: Optional[ContactMemory],
    notes: List[OperatorNote],
    turns: List[Turn],
    max_chars: int = 600,
) -> str:
    parts = [f"The contact has been silent for {idle_days:.0f} days."]
    if summary:
        parts.append(f"Conversation summary:\n{summary}")
    if profile is not None and not profile.is_empty():
        parts.append(f"Contact profile:\n{render_profile(profile)}")
    if notes:
        parts.append("Operator notes:\n" + "\n".join(render_note(n) for n in notes))
    if turns:
        parts.append(f"Last messages before the pause:\n{render_turns(turns)}")
    parts.append(f"Write the brief in at most {max_chars} characters:")
    return "\n\n".join(parts)
