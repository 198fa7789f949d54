"""Exception types raised by the consensus core."""

from __future__ import annotations


class ScholarXPError(Exception):
    """Base class for consensus-core errors."""


class StorageError(ScholarXPError):
    """A storage operation failed.

    transient errors (locked database, dropped connection) may be
    retried with backoff; the rest are not.
    """

    def __init__(self, message: str, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class FormulaError(ScholarXPError):
    """A reliability formula definition is invalid."""


class VoteRejected(ScholarXPError):
    """A judgment vote cannot be accepted for a case."""


class NotFoundError(ScholarXPError):
    """A referenced submission, review or vote case does not exist."""


class ConflictError(ScholarXPError):
    """A write collided with an existing row (duplicate id, broken reference).

    Permanent: retrying the same write cannot succeed.
    """
