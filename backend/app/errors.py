"""Exception taxonomy shared by ingestion, persistence, caching and the API."""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for every error raised by the ledger backend."""


class ConfigurationError(LedgerError):
    """Administrative configuration is missing or inconsistent; fatal at startup."""


class IndexerError(LedgerError):
    """The upstream indexer was unreachable or returned an unusable response."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class LedgerPersistenceError(LedgerError):
    """A ledger batch could not be written and was rolled back."""


class DataUnavailableError(LedgerError):
    """No cached payload exists and the refresh that would produce one failed."""

    def __init__(self, key: str, cause: BaseException | None = None) -> None:
        detail = f"{type(cause).__name__}: {cause}" if cause is not None else "unknown error"
        super().__init__(f"data unavailable for {key}: {detail}")
        self.key = key
        self.cause = cause


class GroupNotFoundError(LedgerError):
    """The requested group slug or id does not exist."""
