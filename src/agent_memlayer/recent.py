"""Recent-context formatter: the last N raw turns as a flat transcript."""

from typing import List

from .store import MemoryStore
from .types import Role, Turn


ROLE_LABELS = {
    Role.USER: "User",
    Role.ASSISTANT: "Assistant",
}


def render_turn(turn: Turn) -> str:
    return f"{ROLE_LABELS[turn.role]}: {turn.text.strip()}"


def render_turns(turns: List[Turn]) -> str:
    """Render turns in the order given, one per line."""
    return "\n".join(render_turn(t) for t in turns)


class RecentContextFormatter:
    """
    Reads the tail of a session's turn log.

    Pure reads; an unknown session or an empty log renders as "".
    """

    def __init__(self, store: MemoryStore, default_max_turns: int = 12):
        self.store = store
        self.default_max_turns = default_max_turns

    def recent_turns(self, session_id: str, max_turns: int = None) -> List[Turn]:
        if max_turns is None:
            max_turns = self.default_max_turns
        return self.store.recent_turns(session_id, max_turns)

    def format_recent(self, session_id: str, max_turns: int = None) -> str:
        """
        Render the last max_turns turns of a session, oldest first.

        Args:
            session_id: Session to read
            max_turns: Window size (defaults to the configured window)

        Returns:
            Transcript text, "" when there is nothing to show
        """
        return render_turns(self.recent_turns(session_id, max_turns))
