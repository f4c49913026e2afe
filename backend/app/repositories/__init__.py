"""Repository abstractions for database interactions."""

from .group_repository import GroupRepository
from .ledger_repository import LedgerRepository, UpsertStats, WindowTotals

__all__ = [
    "GroupRepository",
    "LedgerRepository",
    "UpsertStats",
    "WindowTotals",
]
