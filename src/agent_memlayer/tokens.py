"""Token estimation for context assembly."""

import math


class TokenEstimator:
    """
    Cheap, deterministic token estimate.

    Character count divided by a constant, rounded up. This is an
    approximation of the downstream tokenizer, so callers compare it
    against a budget that has been rounded down.
    """

    def __init__(self, chars_per_token: int = 4):
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be positive")
        self.chars_per_token = chars_per_token

    def count(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self.chars_per_token)

    def max_chars(self, tokens: int) -> int:
        """Longest text whose estimate stays within tokens."""
        return max(0, tokens) * self.chars_per_token

    def truncate(self, text: str, tokens: int, marker: str = "...") -> str:
        """
        Cut text so its estimate fits within tokens.

        Keeps the head of the text and appends marker when anything
        was removed. Returns "" when even the marker does not fit.
        """
        if self.count(text) <= tokens:
            return text
        limit = self.max_chars(tokens) - len(marker)
        if limit <= 0:
            return ""
        return text[:limit].rstrip() + marker
