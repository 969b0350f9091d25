"""
SQLite-backed durable state for the memory layer engine.

Holds sessions, the append-only turn log, memory snapshots, operator
notes and consents. Contact profiles live behind ContactProfileStore so
the CRM side can supply its own persistence; SQLiteProfileStore is the
default implementation sharing the same database file.

Every mutation of a monotonic field is checked here, at the write
boundary, and rejected with MonotonicWriteError.
"""

import hashlib
import json
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Dict, Any

from .errors import MonotonicWriteError, SessionNotFoundError
from .types import (
    ConsentStatus,
    ContactMemory,
    ExtractedFact,
    MemoryConsent,
    MemorySnapshot,
    NoteCategory,
    NotePriority,
    NoteTarget,
    OperatorNote,
    Role,
    Session,
    SnapshotKind,
    Turn,
)


def utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalize to an aware UTC datetime. Naive values are taken as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _ts(dt: Optional[datetime]) -> Optional[str]:
    dt = utc(dt)
    return dt.isoformat() if dt else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return utc(datetime.fromisoformat(value)) if value else None


def session_id_for(session_key: str) -> str:
    """Stable session ID derived from the session key."""
    return hashlib.sha256(session_key.encode()).hexdigest()[:16]


class ContactProfileStore(ABC):
    """
    Persistence contract for contact profiles.

    The engine owns merge logic only; implementations own storage.
    """

    @abstractmethod
    def read(self, contact_ref: str) -> Optional[ContactMemory]:
        """Return the stored profile or None."""
        pass

    @abstractmethod
    def write(self, contact_ref: str, memory: ContactMemory) -> None:
        """Persist a merged profile."""
        pass

    def close(self) -> None:
        pass


class MemoryStore:
    """
    Session & snapshot store.

    Usage:
        store = MemoryStore("./memlayer.db")
        session = store.get_or_create_session("whatsapp:+4915112345", "+4915112345", now)
        store.append_turn(session.id, Role.USER, "Hi there", now)
    """

    def __init__(self, db_path: str):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database (":memory:" works for tests)
        """
        self.db_path = str(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._setup_tables()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _setup_tables(self):
        """Create tables if they don't exist."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        conn = self._get_conn()
        cur = conn.cursor()

        cur.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                session_key TEXT UNIQUE,
                contact_ref TEXT,
                created_at TEXT,
                last_message_at TEXT,
                current_summary TEXT,
                last_summary_at TEXT,
                messages_since_summary INTEGER DEFAULT 0,
                summarized_turns INTEGER DEFAULT 0,
                turn_count INTEGER DEFAULT 0,
                is_reactivation INTEGER DEFAULT 0,
                reactivation_brief TEXT,
                reactivation_brief_at TEXT
            )
        """)

        # seq is the insertion order tie-breaker
        cur.execute("""
            CREATE TABLE IF NOT EXISTS turns (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT,
                role TEXT,
                text TEXT,
                created_at TEXT
            )
        """)
        cur.execute("CREATE INDEX IF NOT EXISTS turns_session ON turns(session_id, created_at, seq)")

        cur.execute("""
            CREATE TABLE IF NOT EXISTS snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT,
                kind TEXT,
                content TEXT,
                message_count INTEGER,
                created_at TEXT
            )
        """)
        cur.execute("CREATE INDEX IF NOT EXISTS snapshots_session ON snapshots(session_id, kind, id)")

        cur.execute("""
            CREATE TABLE IF NOT EXISTS operator_notes (
                id TEXT PRIMARY KEY,
                target_type TEXT,
                target_id TEXT,
                category TEXT,
                content TEXT,
                priority TEXT,
                pinned INTEGER DEFAULT 1,
                expires_at TEXT,
                created_at TEXT
            )
        """)

        cur.execute("""
            CREATE TABLE IF NOT EXISTS consents (
                id TEXT PRIMARY KEY,
                contact_ref TEXT,
                session_id TEXT,
                fact TEXT,
                status TEXT,
                created_at TEXT,
                resolved_at TEXT
            )
        """)

        cur.execute("""
            CREATE TABLE IF NOT EXISTS contact_memory (
                contact_ref TEXT PRIMARY KEY,
                data TEXT,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """)

        conn.commit()

    def close(self):
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    # ============ Sessions ============

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            session_key=row["session_key"],
            contact_ref=row["contact_ref"],
            created_at=_dt(row["created_at"]),
            last_message_at=_dt(row["last_message_at"]),
            current_summary=row["current_summary"],
            last_summary_at=_dt(row["last_summary_at"]),
            messages_since_summary=row["messages_since_summary"],
            summarized_turns=row["summarized_turns"],
            turn_count=row["turn_count"],
            is_reactivation=bool(row["is_reactivation"]),
            reactivation_brief=row["reactivation_brief"],
            reactivation_brief_at=_dt(row["reactivation_brief_at"]),
        )

    def get_or_create_session(self, session_key: str, contact_ref: str, now: datetime) -> Session:
        """Return the session for a key, creating it on first contact."""
        session_id = session_id_for(session_key)
        with self._lock:
            conn = self._get_conn()
            with conn:
                conn.execute("""
                    INSERT OR IGNORE INTO sessions (id, session_key, contact_ref, created_at)
                    VALUES (?, ?, ?, ?)
                """, (session_id, session_key, contact_ref, _ts(now)))
            return self.get_session(session_id)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT * FROM sessions WHERE id = ?", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def require_session(self, session_id: str) -> Session:
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list_sessions(self) -> List[Session]:
        with self._lock:
            rows = self._get_conn().execute(
                "SELECT * FROM sessions ORDER BY created_at, id"
            ).fetchall()
        return [self._row_to_session(r) for r in rows]

    def set_reactivation(self, session_id: str, flag: bool, clear_brief: bool = False):
        """
        Set the recomputed is_reactivation flag.

        clear_brief drops a cached brief left over from an earlier idle
        gap. reactivation_brief_at is kept so the next brief must still
        be newer.
        """
        query = "UPDATE sessions SET is_reactivation = ?"
        if clear_brief:
            query += ", reactivation_brief = NULL"
        query += " WHERE id = ?"
        with self._lock:
            conn = self._get_conn()
            with conn:
                cur = conn.execute(query, (int(flag), session_id))
            if cur.rowcount == 0:
                raise SessionNotFoundError(session_id)

    # ============ Turn log ============

    def append_turn(self, session_id: str, role: Role, text: str, created_at: datetime) -> Turn:
        """
        Append a turn and bump the session counters.

        last_message_at only ever moves forward.
        """
        role = Role(role)
        with self._lock:
            conn = self._get_conn()
            session = self.require_session(session_id)
            last = session.last_message_at
            new_last = utc(created_at) if last is None else max(last, utc(created_at))
            with conn:
                cur = conn.execute("""
                    INSERT INTO turns (session_id, role, text, created_at)
                    VALUES (?, ?, ?, ?)
                """, (session_id, role.value, text, _ts(created_at)))
                seq = cur.lastrowid
                conn.execute("""
                    UPDATE sessions SET
                        turn_count = turn_count + 1,
                        messages_since_summary = messages_since_summary + 1,
                        last_message_at = ?
                    WHERE id = ?
                """, (_ts(new_last), session_id))
        return Turn(session_id=session_id, role=role, text=text,
                    created_at=utc(created_at), seq=seq)

    def recent_turns(self, session_id: str, limit: int) -> List[Turn]:
        """Last `limit` turns in chronological order."""
        if limit <= 0:
            return []
        with self._lock:
            rows = self._get_conn().execute("""
                SELECT seq, session_id, role, text, created_at FROM turns
                WHERE session_id = ?
                ORDER BY created_at DESC, seq DESC
                LIMIT ?
            """, (session_id, limit)).fetchall()
        turns = [
            Turn(session_id=r["session_id"], role=Role(r["role"]), text=r["text"],
                 created_at=_dt(r["created_at"]), seq=r["seq"])
            for r in rows
        ]
        turns.reverse()
        return turns

    def count_turns(self, session_id: str) -> int:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT COUNT(*) FROM turns WHERE session_id = ?", (session_id,)
            ).fetchone()
        return row[0]

    # ============ Snapshots ============

    def _insert_snapshot(self, conn, session_id: str, kind: SnapshotKind, content: Any,
                         message_count: int, created_at: datetime) -> MemorySnapshot:
        cur = conn.execute("""
            INSERT INTO snapshots (session_id, kind, content, message_count, created_at)
            VALUES (?, ?, ?, ?, ?)
        """, (session_id, kind.value, json.dumps(content), message_count, _ts(created_at)))
        return MemorySnapshot(
            session_id=session_id,
            kind=kind,
            content=content,
            message_count_at_snapshot=message_count,
            created_at=utc(created_at),
            id=cur.lastrowid,
        )

    def write_snapshot(self, session_id: str, kind: SnapshotKind, content: Any,
                       message_count: int, created_at: datetime) -> MemorySnapshot:
        """Append a snapshot to the audit history."""
        with self._lock:
            conn = self._get_conn()
            with conn:
                return self._insert_snapshot(conn, session_id, SnapshotKind(kind),
                                             content, message_count, created_at)

    def write_summary(self, session_id: str, summary: str, summarized_turns: int,
                      summary_at: datetime) -> MemorySnapshot:
        """
        Store a new session summary.

        The write is accepted only if it advances last_summary_at. Coverage
        is a high-water mark: a newer summary built from fewer turns keeps
        the wider coverage, so messages_since_summary (the turns appended
        after the covered ones) never climbs back up.

        Args:
            session_id: Session to update
            summary: Summary text
            summarized_turns: Turn-log length the summary was built from
            summary_at: Completion time of the summarization job

        Returns:
            The session_summary snapshot

        Raises:
            MonotonicWriteError: if the write is stale
        """
        summary_at = utc(summary_at)
        with self._lock:
            conn = self._get_conn()
            session = self.require_session(session_id)
            if session.last_summary_at is not None and summary_at <= session.last_summary_at:
                raise MonotonicWriteError("last_summary_at", session.last_summary_at, summary_at)
            coverage = max(session.summarized_turns, summarized_turns)
            remaining = max(0, session.turn_count - coverage)
            with conn:
                conn.execute("""
                    UPDATE sessions SET
                        current_summary = ?,
                        last_summary_at = ?,
                        summarized_turns = ?,
                        messages_since_summary = ?
                    WHERE id = ?
                """, (summary, _ts(summary_at), coverage, remaining, session_id))
                return self._insert_snapshot(conn, session_id, SnapshotKind.SESSION_SUMMARY,
                                             summary, summarized_turns, summary_at)

    def cache_reactivation_brief(self, session_id: str, brief: str, message_count: int,
                                 generated_at: datetime) -> MemorySnapshot:
        """Cache a re-entry brief on the session and record it as a snapshot."""
        generated_at = utc(generated_at)
        with self._lock:
            conn = self._get_conn()
            session = self.require_session(session_id)
            current = session.reactivation_brief_at
            if current is not None and generated_at <= current:
                raise MonotonicWriteError("reactivation_brief_at", current, generated_at)
            with conn:
                conn.execute("""
                    UPDATE sessions SET reactivation_brief = ?, reactivation_brief_at = ?
                    WHERE id = ?
                """, (brief, _ts(generated_at), session_id))
                return self._insert_snapshot(conn, session_id, SnapshotKind.REACTIVATION_CONTEXT,
                                             brief, message_count, generated_at)

    def _row_to_snapshot(self, row: sqlite3.Row) -> MemorySnapshot:
        return MemorySnapshot(
            session_id=row["session_id"],
            kind=SnapshotKind(row["kind"]),
            content=json.loads(row["content"]),
            message_count_at_snapshot=row["message_count"],
            created_at=_dt(row["created_at"]),
            id=row["id"],
        )

    def latest_snapshot(self, session_id: str, kind: SnapshotKind) -> Optional[MemorySnapshot]:
        """The authoritative (most recent) snapshot of a kind."""
        with self._lock:
            row = self._get_conn().execute("""
                SELECT * FROM snapshots WHERE session_id = ? AND kind = ?
                ORDER BY created_at DESC, id DESC LIMIT 1
            """, (session_id, SnapshotKind(kind).value)).fetchone()
        return self._row_to_snapshot(row) if row else None

    def list_snapshots(self, session_id: str, kind: Optional[SnapshotKind] = None) -> List[MemorySnapshot]:
        """Full snapshot history, oldest first."""
        query = "SELECT * FROM snapshots WHERE session_id = ?"
        params: list = [session_id]
        if kind is not None:
            query += " AND kind = ?"
            params.append(SnapshotKind(kind).value)
        query += " ORDER BY created_at, id"
        with self._lock:
            rows = self._get_conn().execute(query, params).fetchall()
        return [self._row_to_snapshot(r) for r in rows]

    # ============ Operator notes ============

    def add_note(
        self,
        target_type: NoteTarget,
        target_id: str,
        category: NoteCategory,
        content: str,
        priority: NotePriority = NotePriority.MEDIUM,
        pinned: bool = True,
        expires_at: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
    ) -> OperatorNote:
        """Add an operator note."""
        note = OperatorNote(
            id=uuid.uuid4().hex,
            target_type=NoteTarget(target_type),
            target_id=target_id,
            category=NoteCategory(category),
            content=content,
            priority=NotePriority(priority),
            pinned=pinned,
            expires_at=utc(expires_at),
            created_at=utc(created_at) or datetime.now(timezone.utc),
        )
        with self._lock:
            conn = self._get_conn()
            with conn:
                conn.execute("""
                    INSERT INTO operator_notes
                        (id, target_type, target_id, category, content, priority, pinned, expires_at, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (note.id, note.target_type.value, note.target_id, note.category.value,
                      note.content, note.priority.value, int(note.pinned),
                      _ts(note.expires_at), _ts(note.created_at)))
        return note

    @staticmethod
    def _row_to_note(row: sqlite3.Row) -> OperatorNote:
        return OperatorNote(
            id=row["id"],
            target_type=NoteTarget(row["target_type"]),
            target_id=row["target_id"],
            category=NoteCategory(row["category"]),
            content=row["content"],
            priority=NotePriority(row["priority"]),
            pinned=bool(row["pinned"]),
            expires_at=_dt(row["expires_at"]),
            created_at=_dt(row["created_at"]),
        )

    def list_notes(
        self,
        target_type: Optional[NoteTarget] = None,
        target_id: Optional[str] = None,
        include_expired: bool = True,
        now: Optional[datetime] = None,
    ) -> List[OperatorNote]:
        """List notes, optionally filtered by target."""
        query = "SELECT * FROM operator_notes WHERE 1 = 1"
        params: list = []
        if target_type is not None:
            query += " AND target_type = ?"
            params.append(NoteTarget(target_type).value)
        if target_id is not None:
            query += " AND target_id = ?"
            params.append(target_id)
        query += " ORDER BY created_at, id"
        with self._lock:
            rows = self._get_conn().execute(query, params).fetchall()
        notes = [self._row_to_note(r) for r in rows]
        if not include_expired:
            now = utc(now) or datetime.now(timezone.utc)
            notes = [n for n in notes if not n.is_expired(now)]
        return notes

    def pinned_notes_for(self, session: Session, now: datetime) -> List[OperatorNote]:
        """Pinned, non-expired notes targeting the session or its contact."""
        with self._lock:
            rows = self._get_conn().execute("""
                SELECT * FROM operator_notes
                WHERE pinned = 1 AND (
                    (target_type = 'session' AND target_id = ?)
                    OR (target_type = 'contact' AND target_id = ?)
                )
                ORDER BY created_at, id
            """, (session.id, session.contact_ref)).fetchall()
        now = utc(now)
        return [n for n in (self._row_to_note(r) for r in rows) if not n.is_expired(now)]

    def set_note_pinned(self, note_id: str, pinned: bool) -> bool:
        with self._lock:
            conn = self._get_conn()
            with conn:
                cur = conn.execute(
                    "UPDATE operator_notes SET pinned = ? WHERE id = ?", (int(pinned), note_id)
                )
        return cur.rowcount > 0

    def delete_note(self, note_id: str) -> bool:
        with self._lock:
            conn = self._get_conn()
            with conn:
                cur = conn.execute("DELETE FROM operator_notes WHERE id = ?", (note_id,))
        return cur.rowcount > 0

    # ============ Consents ============

    def insert_consent(self, consent: MemoryConsent):
        with self._lock:
            conn = self._get_conn()
            with conn:
                conn.execute("""
                    INSERT INTO consents (id, contact_ref, session_id, fact, status, created_at, resolved_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (consent.id, consent.contact_ref, consent.session_id,
                      json.dumps(consent.fact.to_dict()), consent.status.value,
                      _ts(consent.created_at), _ts(consent.resolved_at)))

    @staticmethod
    def _row_to_consent(row: sqlite3.Row) -> MemoryConsent:
        return MemoryConsent(
            id=row["id"],
            contact_ref=row["contact_ref"],
            session_id=row["session_id"],
            fact=ExtractedFact.from_dict(json.loads(row["fact"])),
            status=ConsentStatus(row["status"]),
            created_at=_dt(row["created_at"]),
            resolved_at=_dt(row["resolved_at"]),
        )

    def get_consent(self, consent_id: str) -> Optional[MemoryConsent]:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT * FROM consents WHERE id = ?", (consent_id,)
            ).fetchone()
        return self._row_to_consent(row) if row else None

    def transition_consent(self, consent_id: str, new_status: ConsentStatus,
                           resolved_at: datetime) -> bool:
        """
        Move a pending consent to a final status.

        Returns False if the consent was no longer pending.
        """
        with self._lock:
            conn = self._get_conn()
            with conn:
                cur = conn.execute("""
                    UPDATE consents SET status = ?, resolved_at = ?
                    WHERE id = ? AND status = 'pending'
                """, (ConsentStatus(new_status).value, _ts(resolved_at), consent_id))
        return cur.rowcount > 0

    def list_consents(self, contact_ref: Optional[str] = None,
                      status: Optional[ConsentStatus] = None) -> List[MemoryConsent]:
        query = "SELECT * FROM consents WHERE 1 = 1"
        params: list = []
        if contact_ref is not None:
            query += " AND contact_ref = ?"
            params.append(contact_ref)
        if status is not None:
            query += " AND status = ?"
            params.append(ConsentStatus(status).value)
        query += " ORDER BY created_at, id"
        with self._lock:
            rows = self._get_conn().execute(query, params).fetchall()
        return [self._row_to_consent(r) for r in rows]

    # ============ Stats ============

    def stats(self) -> Dict[str, Any]:
        """Get store statistics."""
        with self._lock:
            conn = self._get_conn()
            counts = {
                table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in ("sessions", "turns", "snapshots", "operator_notes", "contact_memory")
            }
            consent_rows = conn.execute(
                "SELECT status, COUNT(*) FROM consents GROUP BY status"
            ).fetchall()
        counts["consents"] = {row[0]: row[1] for row in consent_rows}
        counts["db_path"] = self.db_path
        return counts


class SQLiteProfileStore(ContactProfileStore):
    """
    Contact profiles stored as JSON documents in the engine database.

    Rejects writes that move last_extracted_at or extraction_count backward.
    """

    def __init__(self, store: MemoryStore):
        self._store = store

    def read(self, contact_ref: str) -> Optional[ContactMemory]:
        with self._store._lock:
            row = self._store._get_conn().execute(
                "SELECT data FROM contact_memory WHERE contact_ref = ?", (contact_ref,)
            ).fetchone()
        return ContactMemory.from_dict(json.loads(row["data"])) if row else None

    def write(self, contact_ref: str, memory: ContactMemory) -> None:
        with self._store._lock:
            current = self.read(contact_ref)
            if current is not None:
                if memory.extraction_count < current.extraction_count:
                    raise MonotonicWriteError(
                        "extraction_count", current.extraction_count, memory.extraction_count
                    )
                if (current.last_extracted_at is not None
                        and (memory.last_extracted_at is None
                             or utc(memory.last_extracted_at) < utc(current.last_extracted_at))):
                    raise MonotonicWriteError(
                        "last_extracted_at", current.last_extracted_at, memory.last_extracted_at
                    )
            conn = self._store._get_conn()
            with conn:
                conn.execute("""
                    INSERT INTO contact_memory (contact_ref, data, updated_at)
                    VALUES (?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(contact_ref) DO UPDATE SET
                        data = excluded.data,
                        updated_at = excluded.updated_at
                """, (contact_ref, json.dumps(memory.to_dict())))
