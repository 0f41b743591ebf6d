"""
Error taxonomy for the transaction pitfalls harness.

Every failure a scenario can surface derives from TransactionalError so the
orchestration layer can catch and narrate them per scenario.
"""


class TransactionalError(Exception):
    """Base class for all harness errors."""
    pass


class NotFound(TransactionalError):
    """Raised when no user exists for the requested identifier."""

    def __init__(self, entity: str, identifier):
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} {identifier} not found")


class StaleAccess(TransactionalError):
    """Raised when deferred data is touched after its owning boundary closed."""
    pass


class OptimisticConflict(TransactionalError):
    """Raised when a versioned write finds the row's version has moved on."""

    def __init__(self, entity: str, identifier, expected_version: int):
        self.entity = entity
        self.identifier = identifier
        self.expected_version = expected_version
        super().__init__(
            f"{entity} {identifier} was modified concurrently "
            f"(expected version {expected_version})"
        )


class ReadOnlyViolation(TransactionalError):
    """Raised when a write is attempted under a read-only boundary."""
    pass


class NoActiveBoundary(TransactionalError):
    """Raised when data access happens outside any transaction boundary."""
    pass


class UnexpectedRollback(TransactionalError):
    """Raised when committing a boundary a participant marked rollback-only."""
    pass


class RecoverableFailure(TransactionalError):
    """
    Recoverable failure category.

    By default a boundary still commits when its body raises one of these.
    """
    pass


class FatalFailure(TransactionalError):
    """Fatal failure category. A boundary always rolls back on these."""
    pass
