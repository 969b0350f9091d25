"""
agent-memlayer: bounded-context memory for conversational agents

Per turn, packs recent turns, a rolling summary, pinned operator notes,
a contact profile and a reactivation brief into a token budget. In the
background, decides when to summarize and what to remember.

Usage:
    from agent_memlayer import MemoryEngine, InboundMessage

    async with MemoryEngine("./memlayer.yaml", model=client) as engine:
        session = engine.receive(InboundMessage("whatsapp:+49151", "Hi", now))
        ctx = engine.assemble(session.id, max_tokens=2000)
"""

from .config import EngineConfig
from .engine import MemoryEngine, TurnResult
from .errors import (
    BudgetFloorError,
    ConsentStateError,
    MalformedExtractionError,
    MemlayerError,
    ModelCallError,
    MonotonicWriteError,
    SessionNotFoundError,
)
from .model import HTTPModelClient, ModelClient
from .store import ContactProfileStore, MemoryStore, SQLiteProfileStore
from .types import (
    AssembledContext,
    ContactMemory,
    ExtractedFact,
    InboundMessage,
    LayerKind,
    MemoryConsent,
    MemorySnapshot,
    OperatorNote,
    Session,
    Turn,
)

__version__ = "0.1.0"
__all__ = [
    "MemoryEngine",
    "TurnResult",
    "EngineConfig",
    "ModelClient",
    "HTTPModelClient",
    "MemoryStore",
    "ContactProfileStore",
    "SQLiteProfileStore",
    "AssembledContext",
    "ContactMemory",
    "ExtractedFact",
    "InboundMessage",
    "LayerKind",
    "MemoryConsent",
    "MemorySnapshot",
    "OperatorNote",
    "Session",
    "Turn",
    "MemlayerError",
    "BudgetFloorError",
    "ConsentStateError",
    "MalformedExtractionError",
    "ModelCallError",
    "MonotonicWriteError",
    "SessionNotFoundError",
]
