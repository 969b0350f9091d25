"""
Consent gate between AI-proposed facts and the contact profile.

    pending -> accepted | declined | expired

Only accepted consents are merged. Facts below the confidence floor
never enter the gate, whatever the caller asks for.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, FrozenSet, List, Optional

from .config import ExtractionConfig
from .errors import ConsentStateError
from .logger import EngineLogger
from .merge import ProfileMerger
from .store import MemoryStore, utc
from .types import ConsentStatus, ExtractedFact, MemoryConsent

logger = logging.getLogger("agent_memlayer")


TRANSITIONS: Dict[ConsentStatus, FrozenSet[ConsentStatus]] = {
    ConsentStatus.PENDING: frozenset({
        ConsentStatus.ACCEPTED, ConsentStatus.DECLINED, ConsentStatus.EXPIRED,
    }),
    ConsentStatus.ACCEPTED: frozenset(),
    ConsentStatus.DECLINED: frozenset(),
    ConsentStatus.EXPIRED: frozenset(),
}


def can_transition(current: ConsentStatus, new: ConsentStatus) -> bool:
    return new in TRANSITIONS[current]


class ConsentGate:
    """
    Proposes facts for remembering and resolves the decisions.

    Usage:
        gate = ConsentGate(store, merger, config.extraction)
        consent_id = gate.propose(fact, contact_ref="+4915112345")
        gate.resolve(consent_id, accepted=True)
    """

    def __init__(
        self,
        store: MemoryStore,
        merger: ProfileMerger,
        config: ExtractionConfig,
        event_log: Optional[EngineLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.merger = merger
        self.config = config
        self.event_log = event_log or EngineLogger()
        self.clock = clock

    def _now(self) -> datetime:
        return utc(self.clock()) if self.clock else datetime.now(timezone.utc)

    @property
    def ttl(self) -> timedelta:
        return timedelta(days=self.config.consent_ttl_days)

    def eligible(self, fact: ExtractedFact) -> bool:
        """A fact may be proposed only if it asks to be remembered with enough confidence."""
        return fact.suggest_remember and fact.confidence >= self.config.min_confidence

    def propose(self, fact: ExtractedFact, contact_ref: str,
                session_id: Optional[str] = None) -> Optional[str]:
        """
        Record a pending consent for a fact.

        With auto_accept_confidence set, facts at or above it are
        accepted and merged straight away.

        Returns:
            The consent id, or None if the fact was rejected
        """
        if not self.eligible(fact):
            self.event_log.log_consent(
                "-", "rejected",
                contact_ref=contact_ref,
                type=fact.type.value,
                confidence=fact.confidence,
                suggest_remember=fact.suggest_remember,
            )
            return None

        now = self._now()
        consent = MemoryConsent(
            id=uuid.uuid4().hex,
            contact_ref=contact_ref,
            session_id=session_id,
            fact=fact,
            status=ConsentStatus.PENDING,
            created_at=now,
        )
        self.store.insert_consent(consent)
        self.event_log.log_consent(
            consent.id, "proposed",
            contact_ref=contact_ref,
            type=fact.type.value,
            confidence=fact.confidence,
        )

        auto = self.config.auto_accept_confidence
        if auto is not None and fact.confidence >= auto:
            self.resolve(consent.id, accepted=True, policy="auto_accept")
        return consent.id

    def is_expired(self, consent: MemoryConsent, now: datetime) -> bool:
        return (consent.status == ConsentStatus.PENDING
                and utc(now) - utc(consent.created_at) > self.ttl)

    def resolve(self, consent_id: str, accepted: bool, policy: str = "human") -> MemoryConsent:
        """
        Accept or decline a pending consent.

        Accepting merges the fact into the contact profile.

        Raises:
            ConsentStateError: unknown id, or the consent is not pending
                (already decided, or expired by TTL)
        """
        now = self._now()
        consent = self.store.get_consent(consent_id)
        if consent is None:
            raise ConsentStateError(f"Unknown consent: {consent_id}")

        if self.is_expired(consent, now):
            self._transition(consent, ConsentStatus.EXPIRED, now)
            raise ConsentStateError(f"Consent {consent_id} expired")

        new_status = ConsentStatus.ACCEPTED if accepted else ConsentStatus.DECLINED
        if accepted and not self.eligible(consent.fact):
            new_status = ConsentStatus.DECLINED
            logger.warning("Consent %s fact is below the confidence floor, declining", consent_id)

        if not can_transition(consent.status, new_status):
            raise ConsentStateError(
                f"Consent {consent_id} is {consent.status.value}, cannot become {new_status.value}"
            )
        if not self._transition(consent, new_status, now, policy=policy):
            raise ConsentStateError(f"Consent {consent_id} was resolved concurrently")

        if new_status == ConsentStatus.ACCEPTED:
            self.merger.merge(consent.contact_ref, [consent.fact], now)

        consent.status = new_status
        consent.resolved_at = now
        return consent

    def _transition(self, consent: MemoryConsent, status: ConsentStatus,
                    now: datetime, **kwargs) -> bool:
        changed = self.store.transition_consent(consent.id, status, now)
        if changed:
            self.event_log.log_consent(
                consent.id, status.value,
                contact_ref=consent.contact_ref,
                type=consent.fact.type.value,
                **kwargs
            )
        return changed

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Expire every pending consent older than the TTL. Returns the count."""
        now = utc(now) or self._now()
        expired = 0
        for consent in self.store.list_consents(status=ConsentStatus.PENDING):
            if self.is_expired(consent, now) and self._transition(consent, ConsentStatus.EXPIRED, now):
                expired += 1
        return expired

    def pending(self, contact_ref: Optional[str] = None) -> List[MemoryConsent]:
        return self.store.list_consents(contact_ref=contact_ref, status=ConsentStatus.PENDING)
