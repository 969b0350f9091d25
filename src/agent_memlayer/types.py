"""Core data types for the memory layer engine."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Dict, Any, Optional


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class SnapshotKind(str, Enum):
    SESSION_SUMMARY = "session_summary"
    CONTACT_EXTRACTION = "contact_extraction"
    REACTIVATION_CONTEXT = "reactivation_context"


class FunnelStage(str, Enum):
    AWARENESS = "awareness"
    CONSIDERATION = "consideration"
    DECISION = "decision"
    CUSTOMER = "customer"
    CHURNED = "churned"


# Forward order of the sales funnel. CHURNED sits outside it.
FUNNEL_ORDER = [
    FunnelStage.AWARENESS,
    FunnelStage.CONSIDERATION,
    FunnelStage.DECISION,
    FunnelStage.CUSTOMER,
]


class NoteCategory(str, Enum):
    STRATEGY = "strategy"
    RELATIONSHIP = "relationship"
    CONTEXT = "context"
    WARNING = "warning"
    OPPORTUNITY = "opportunity"


class NotePriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """0 for high, 2 for low."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {NotePriority.HIGH: 0, NotePriority.MEDIUM: 1, NotePriority.LOW: 2}


class NoteTarget(str, Enum):
    SESSION = "session"
    CONTACT = "contact"


class ConsentStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


class FactType(str, Enum):
    PREFERENCE = "preference"
    PAIN_POINT = "pain_point"
    OBJECTION = "objection"
    PRODUCT = "product"
    STAGE = "stage"
    NEXT_STEP = "next_step"
    IDENTITY = "identity"


class InstructionKind(str, Enum):
    SUMMARIZE = "summarize"
    EXTRACT = "extract"
    REACTIVATION_BRIEF = "reactivation_brief"


class LayerKind(str, Enum):
    """
    The closed set of context layers.

    Declaration order is assembly priority, highest first.
    """
    PINNED_NOTES = "pinned_notes"
    RECENT_CONTEXT = "recent_context"
    CONTACT_PROFILE = "contact_profile"
    SESSION_SUMMARY = "session_summary"
    REACTIVATION_BRIEF = "reactivation_brief"


@dataclass
class Session:
    """One conversation thread for a (channel, contact) pair."""
    id: str
    session_key: str
    contact_ref: str
    created_at: datetime
    last_message_at: Optional[datetime] = None
    current_summary: Optional[str] = None
    last_summary_at: Optional[datetime] = None
    messages_since_summary: int = 0
    summarized_turns: int = 0  # widest turn-log length any summary has covered
    turn_count: int = 0
    is_reactivation: bool = False
    reactivation_brief: Optional[str] = None
    reactivation_brief_at: Optional[datetime] = None


@dataclass
class Turn:
    """An immutable conversation message."""
    session_id: str
    role: Role
    text: str
    created_at: datetime
    seq: int = 0


@dataclass
class MemorySnapshot:
    """A versioned artifact written by a background task."""
    session_id: str
    kind: SnapshotKind
    content: Any
    message_count_at_snapshot: int
    created_at: datetime
    id: int = 0


@dataclass
class Objection:
    objection: str
    resolved: bool = False
    resolution: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "objection": self.objection,
            "resolved": self.resolved,
            "resolution": self.resolution,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Objection":
        return cls(
            objection=str(data.get("objection", "")),
            resolved=bool(data.get("resolved", False)),
            resolution=data.get("resolution"),
        )


@dataclass
class ContactMemory:
    """
    Accumulated profile of one contact across sessions and channels.

    identity holds core identity fields (name, email, phone, ...).
    human_fields lists identity keys entered by a human; AI facts
    never overwrite those.
    """
    contact_ref: str
    preferences: Dict[str, str] = field(default_factory=dict)
    pain_points: List[str] = field(default_factory=list)
    objections_addressed: List[Objection] = field(default_factory=list)
    products_discussed: List[str] = field(default_factory=list)
    current_stage: Optional[FunnelStage] = None
    next_step: Optional[str] = None
    identity: Dict[str, str] = field(default_factory=dict)
    human_fields: List[str] = field(default_factory=list)
    last_extracted_at: Optional[datetime] = None
    extraction_count: int = 0

    def is_empty(self) -> bool:
        return not (
            self.preferences or self.pain_points or self.objections_addressed
            or self.products_discussed or self.current_stage or self.next_step
            or self.identity
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contact_ref": self.contact_ref,
            "preferences": dict(self.preferences),
            "pain_points": list(self.pain_points),
            "objections_addressed": [o.to_dict() for o in self.objections_addressed],
            "products_discussed": list(self.products_discussed),
            "current_stage": self.current_stage.value if self.current_stage else None,
            "next_step": self.next_step,
            "identity": dict(self.identity),
            "human_fields": list(self.human_fields),
            "last_extracted_at": self.last_extracted_at.isoformat() if self.last_extracted_at else None,
            "extraction_count": self.extraction_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContactMemory":
        stage = data.get("current_stage")
        extracted = data.get("last_extracted_at")
        return cls(
            contact_ref=data["contact_ref"],
            preferences=dict(data.get("preferences") or {}),
            pain_points=list(data.get("pain_points") or []),
            objections_addressed=[
                Objection.from_dict(o) for o in data.get("objections_addressed") or []
            ],
            products_discussed=list(data.get("products_discussed") or []),
            current_stage=FunnelStage(stage) if stage else None,
            next_step=data.get("next_step"),
            identity=dict(data.get("identity") or {}),
            human_fields=list(data.get("human_fields") or []),
            last_extracted_at=datetime.fromisoformat(extracted) if extracted else None,
            extraction_count=int(data.get("extraction_count") or 0),
        )


@dataclass
class OperatorNote:
    """Human-authored strategic context pinned to a session or contact."""
    id: str
    target_type: NoteTarget
    target_id: str
    category: NoteCategory
    content: str
    priority: NotePriority = NotePriority.MEDIUM
    pinned: bool = True
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass
class ExtractedFact:
    """A structured fact proposed by the extractor."""
    type: FactType
    category: str
    value: Any
    confidence: float
    source_text: str = ""
    suggest_remember: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "category": self.category,
            "value": self.value,
            "confidence": self.confidence,
            "source_text": self.source_text,
            "suggest_remember": self.suggest_remember,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExtractedFact":
        return cls(
            type=FactType(data["type"]),
            category=str(data.get("category") or ""),
            value=data.get("value"),
            confidence=float(data.get("confidence", 0.0)),
            source_text=str(data.get("source_text") or ""),
            suggest_remember=bool(data.get("suggest_remember", False)),
        )


@dataclass
class MemoryConsent:
    """A proposed fact waiting for a human (or policy) decision."""
    id: str
    contact_ref: str
    fact: ExtractedFact
    status: ConsentStatus
    created_at: datetime
    session_id: Optional[str] = None
    resolved_at: Optional[datetime] = None


@dataclass
class ModelResult:
    """Completion returned by the model-call collaborator."""
    completion_text: str
    usage: Dict[str, int] = field(default_factory=dict)


@dataclass
class AssembledContext:
    """Result of assemble()."""
    text: str
    tokens_estimate: int
    budget: int
    layers_included: List[LayerKind] = field(default_factory=list)

    # Truncation decisions
    recent_turns_included: int = 0
    recent_turn_truncated: bool = False
    notes_included: List[str] = field(default_factory=list)
    notes_truncated: List[str] = field(default_factory=list)
    notes_dropped: List[str] = field(default_factory=list)
    layers_omitted: Dict[str, str] = field(default_factory=dict)  # layer -> reason

    @property
    def utilization(self) -> float:
        return self.tokens_estimate / self.budget if self.budget > 0 else 0.0


@dataclass
class InboundMessage:
    """A normalized inbound message from the channel transport."""
    session_key: str
    text: str
    timestamp: datetime
    contact_ref: Optional[str] = None

    def resolve_contact_ref(self) -> str:
        """Explicit contact_ref, else the part of "<channel>:<contact>" after the channel."""
        if self.contact_ref:
            return self.contact_ref
        _, sep, contact = self.session_key.partition(":")
        return contact if sep and contact else self.session_key
