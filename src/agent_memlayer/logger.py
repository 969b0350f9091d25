"""
Event logging for the memory layer engine.
"""

from pathlib import Path
from typing import Optional, List
import json
from datetime import datetime


class EngineLogger:
    """
    Logs engine activity to JSONL files.

    Files:
    - assembly.jsonl: Context assembly decisions
    - summary.jsonl: Summarization triggers and results
    - extraction.jsonl: Fact extraction batches
    - consent.jsonl: Consent proposals and decisions
    - reactivation.jsonl: Cold-return detections and briefs

    With no log_path every call is a no-op.
    """

    def __init__(self, log_path: Optional[str] = None):
        """
        Initialize logger.

        Args:
            log_path: Path to log directory, or None to disable
        """
        self.log_path = Path(log_path) if log_path else None
        if self.log_path:
            self.log_path.mkdir(parents=True, exist_ok=True)

    @property
    def enabled(self) -> bool:
        return self.log_path is not None

    def _log(self, file: str, entry: dict):
        """Write a log entry to file."""
        if not self.log_path:
            return
        entry["timestamp"] = datetime.now().isoformat()
        with open(self.log_path / file, "a") as f:
            f.write(json.dumps(entry, default=str) + "\n")

    def log_assembly(self, session_id: str, result):
        """Log an assemble() result."""
        self._log("assembly.jsonl", {
            "event": "assembly",
            "session_id": session_id,
            "budget": result.budget,
            "tokens_estimate": result.tokens_estimate,
            "layers_included": [k.value for k in result.layers_included],
            "layers_omitted": result.layers_omitted,
            "recent_turns": result.recent_turns_included,
            "notes_truncated": len(result.notes_truncated),
            "notes_dropped": len(result.notes_dropped),
        })

    def log_summary(self, session_id: str, event: str, **kwargs):
        """Log a summarization event (triggered, written, stale, failed)."""
        self._log("summary.jsonl", {
            "event": event,
            "session_id": session_id,
            **kwargs
        })

    def log_extraction(self, session_id: str, event: str, **kwargs):
        """Log an extraction batch."""
        self._log("extraction.jsonl", {
            "event": event,
            "session_id": session_id,
            **kwargs
        })

    def log_consent(self, consent_id: str, event: str, **kwargs):
        """Log a consent transition."""
        self._log("consent.jsonl", {
            "event": event,
            "consent_id": consent_id,
            **kwargs
        })

    def log_reactivation(self, session_id: str, event: str, **kwargs):
        """Log a reactivation event."""
        self._log("reactivation.jsonl", {
            "event": event,
            "session_id": session_id,
            **kwargs
        })

    def _read_since(self, file: str, hours: int) -> List[dict]:
        if not self.log_path:
            return []
        log_file = self.log_path / file
        if not log_file.exists():
            return []

        since = datetime.now().timestamp() - (hours * 3600)
        entries = []
        with open(log_file) as f:
            for line in f:
                entry = json.loads(line)
                ts = datetime.fromisoformat(entry["timestamp"]).timestamp()
                if ts > since:
                    entries.append(entry)
        return entries

    def get_summary_stats(self, hours: int = 24) -> dict:
        """Get summarization statistics for the last N hours."""
        by_event = {}
        for entry in self._read_since("summary.jsonl", hours):
            event = entry.get("event", "unknown")
            by_event[event] = by_event.get(event, 0) + 1
        return {
            "summaries_written": by_event.get("written", 0),
            "summaries_failed": by_event.get("failed", 0),
            "stale_rejected": by_event.get("stale", 0),
            "events": by_event,
        }

    def get_consent_stats(self, hours: int = 24) -> dict:
        """Get consent decision counts for the last N hours."""
        by_event = {}
        for entry in self._read_since("consent.jsonl", hours):
            event = entry.get("event", "unknown")
            by_event[event] = by_event.get(event, 0) + 1
        return by_event
