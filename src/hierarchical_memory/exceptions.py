"""Exceptions raised by the hierarchical memory engine."""


class MemoryEngineError(Exception):
    """Base exception for all memory engine errors."""

    pass


class ConfigurationError(MemoryEngineError):
    """Configuration value is missing or out of range."""

    pass


class NotFound(MemoryEngineError, KeyError):
    """An id could not be found in the item store or the archive."""

    def __init__(self, item_id: str, where: str = "store"):
        self.item_id = item_id
        self.where = where
        super().__init__(f"{item_id!r} not found in {where}")

    def __str__(self) -> str:
        return self.args[0]


class BrokenChain(MemoryEngineError):
    """A covers reference could not be resolved during decompression.

    ``result`` holds everything that was resolved before the break.
    """

    def __init__(self, broken_id: str, result):
        self.broken_id = broken_id
        self.result = result
        super().__init__(f"covers chain broken at {broken_id!r}")


class SummarizationFailed(MemoryEngineError):
    """The summarizer errored, timed out or returned empty text."""

    pass


class DimensionMismatch(MemoryEngineError, ValueError):
    """Two embedding vectors have different lengths."""

    pass


class StateError(MemoryEngineError):
    """An imported memory state violates the item/archive invariants."""

    pass
