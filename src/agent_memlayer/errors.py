"""Exceptions raised by agent-memlayer."""


class MemlayerError(Exception):
    """Base class for engine errors."""


class BudgetFloorError(MemlayerError, ValueError):
    """Requested token budget is below the configured absolute floor."""

    def __init__(self, max_tokens: int, floor: int):
        self.max_tokens = max_tokens
        self.floor = floor
        super().__init__(
            f"max_tokens={max_tokens} is below the minimum assembly floor of {floor} tokens"
        )


class MonotonicWriteError(MemlayerError):
    """A write would move a monotonic field backward."""

    def __init__(self, field_name: str, current, proposed):
        self.field_name = field_name
        self.current = current
        self.proposed = proposed
        super().__init__(f"Refusing to move {field_name} from {current} to {proposed}")


class MalformedExtractionError(MemlayerError, ValueError):
    """Extractor output could not be parsed into valid facts."""


class ConsentStateError(MemlayerError):
    """Consent is not in a state that allows the requested transition."""


class SessionNotFoundError(MemlayerError, KeyError):
    """No session with the given id."""


class ModelCallError(MemlayerError):
    """The model-call collaborator failed or returned nothing usable."""
