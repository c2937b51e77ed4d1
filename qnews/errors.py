"""Exception hierarchy for qnews."""

from __future__ import annotations


class QNewsError(Exception):
    """Base class for all qnews errors."""


class ConfigError(QNewsError):
    """Raised when configuration is missing or invalid at startup."""


class SourceError(QNewsError):
    """Raised when the story source cannot produce a usable rank list."""


class StoreError(QNewsError):
    """Raised when the datapoint store cannot be opened or initialized."""


class InvalidVoteError(QNewsError, ValueError):
    """Raised for out-of-range vote parameters. Safe to show to clients."""


class ItemNotFoundError(QNewsError, LookupError):
    """Raised when an item has no samples in the store."""

    def __init__(self, item_id: int) -> None:
        super().__init__(f"Item {item_id} not found")
        self.item_id = item_id


class UnknownFormulaError(QNewsError, KeyError):
    """Raised when a scoring formula name is not registered."""


class NonFiniteScoreError(QNewsError, ArithmeticError):
    """Raised when a scoring formula produces NaN or infinity."""

    def __init__(self, formula: str, position_id: int, value: float) -> None:
        super().__init__(
            f"Formula {formula} produced {value} for position {position_id}"
        )
        self.formula = formula
        self.position_id = position_id
        self.value = value


class ArchiveError(QNewsError):
    """Raised by archive stores on failed existence checks or uploads."""


class CrawlTimeoutError(QNewsError, TimeoutError):
    """Raised when a crawl tick runs past its deadline."""
