"""Place/business directory records read by the ledger and claim flows."""

from directory.errors import DirectoryError, PlaceAlreadyOwnedError, PlaceNotFoundError
from directory.registry import Business, Place, PlaceRegistry, SqlitePlaceRegistry

__all__ = [
    "Business",
    "DirectoryError",
    "Place",
    "PlaceAlreadyOwnedError",
    "PlaceNotFoundError",
    "PlaceRegistry",
    "SqlitePlaceRegistry",
]
