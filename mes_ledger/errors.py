"""Exception hierarchy shared by the ledgers, the record stores and the web layer."""

from __future__ import annotations


class MESError(Exception):
    """Base exception for every error raised by the MES core."""

    kind = "error"


class ValidationError(MESError):
    """Raised when a request is incomplete or inconsistent, before any write."""

    kind = "validation_error"


class ReworkLimitExceeded(MESError):
    """Raised when a work order that was already reworked is reworked again."""

    kind = "rework_limit_exceeded"


class RepositoryError(MESError):
    """Base exception for record store errors."""

    kind = "repository_error"


class DuplicateRecordError(RepositoryError):
    """Raised when attempting to insert a record that already exists."""

    kind = "duplicate_record"


class RecordNotFoundError(RepositoryError):
    """Raised when a requested record is missing."""

    kind = "not_found"


class StaleRecordError(RepositoryError):
    """Raised when a record changed between read and write."""

    kind = "stale_record"


class PersistenceUnavailable(RepositoryError):
    """Raised when the backing store cannot be reached."""

    kind = "persistence_unavailable"


__all__ = [
    "MESError",
    "ValidationError",
    "ReworkLimitExceeded",
    "RepositoryError",
    "DuplicateRecordError",
    "RecordNotFoundError",
    "StaleRecordError",
    "PersistenceUnavailable",
]
