"""
Explicit transaction boundaries.

A boundary is opened with `TransactionManager.boundary(definition)`, runs a
body and always ends in commit or rollback. Service methods declare their
boundary with `@transactional(...)`; the declaration only takes effect when
the method is reached through a `TransactionalProxy`. A method calling
another method on `self` skips the proxy and therefore skips that method's
declaration.
"""

import functools
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List, Optional, Tuple, Type

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, SessionTransaction, sessionmaker

from .database import begin_sqlite_transaction, dialect_isolation_level, get_session_factory
from .errors import NoActiveBoundary, RecoverableFailure, UnexpectedRollback
from .logger import StructuredLogger, get_logger

TRANSACTION_ATTRIBUTE = "__transaction_definition__"


class Propagation(str, Enum):
    """How a boundary relates to the one already active on the thread."""

    REQUIRED = "required"
    REQUIRES_NEW = "requires_new"
    NESTED = "nested"


class Isolation(str, Enum):
    """Isolation level applied when a physical transaction starts."""

    DEFAULT = "DEFAULT"
    READ_UNCOMMITTED = "READ UNCOMMITTED"
    READ_COMMITTED = "READ COMMITTED"
    SERIALIZABLE = "SERIALIZABLE"


class Outcome(str, Enum):
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class BoundaryKind(str, Enum):
    PHYSICAL = "physical"
    SAVEPOINT = "savepoint"
    JOINED = "joined"


@dataclass(frozen=True)
class TransactionDefinition:
    """
    Boundary configuration.

    Rollback rules: `rollback_for` wins over `no_rollback_for`, which wins
    over the default (roll back on everything except RecoverableFailure).
    """

    propagation: Propagation = Propagation.REQUIRED
    isolation: Isolation = Isolation.DEFAULT
    read_only: bool = False
    rollback_for: Tuple[Type[BaseException], ...] = ()
    no_rollback_for: Tuple[Type[BaseException], ...] = ()

    def rollback_on(self, exc: BaseException) -> bool:
        if isinstance(exc, self.rollback_for):
            return True
        if isinstance(exc, self.no_rollback_for):
            return False
        return not isinstance(exc, RecoverableFailure)


class TransactionBoundary:
    """
    One unit of work on the boundary stack of a thread.

    PHYSICAL boundaries own a session, SAVEPOINT boundaries own a nested
    transaction on their parent's session, JOINED boundaries only
    participate in the boundary they joined (their `owner`).
    """

    def __init__(
        self,
        session: Session,
        definition: TransactionDefinition,
        kind: BoundaryKind,
        owner: Optional["TransactionBoundary"] = None,
        savepoint: Optional[SessionTransaction] = None,
    ):
        self.session = session
        self.definition = definition
        self.kind = kind
        self.owner = owner if owner is not None else self
        self.savepoint = savepoint
        self.rollback_only = False
        self.outcome: Optional[Outcome] = None
        self._observer = None

    @property
    def is_new(self) -> bool:
        return self.kind is not BoundaryKind.JOINED

    @property
    def read_only(self) -> bool:
        """True if this boundary or the transaction it runs in is read-only."""
        return self.definition.read_only or bool(self.session.info.get("read_only"))

    @property
    def observer(self):
        return self.owner._observer

    def register_observer(self, observer) -> bool:
        """
        Fill this boundary's observer slot.

        Joined boundaries share the slot of the boundary they joined.
        Returns False when the slot is already taken.
        """
        if self.kind is BoundaryKind.JOINED:
            return self.owner.register_observer(observer)
        if self._observer is not None:
            return False
        self._observer = observer
        return True

    def set_rollback_only(self):
        self.owner.rollback_only = True

    def _complete(self, outcome: Outcome):
        self.outcome = outcome
        if self._observer is not None:
            self._observer.after_completion(outcome)

    def __repr__(self) -> str:
        return (
            f"TransactionBoundary(kind={self.kind.value}, "
            f"propagation={self.definition.propagation.value}, outcome={self.outcome})"
        )


class TransactionManager:
    """
    Opens, stacks and completes boundaries.

    The stack is per thread: at most one boundary is current on a thread,
    REQUIRES_NEW suspends it by pushing a new physical boundary on top.
    """

    def __init__(
        self,
        engine: Engine,
        session_factory: Optional[sessionmaker] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        self.engine = engine
        self.session_factory = session_factory or get_session_factory(engine)
        self.logger = logger or get_logger()
        self._local = threading.local()

    def _stack(self) -> List[TransactionBoundary]:
        stack = getattr(self._local, "stack", None)
        if stack is None:
            stack = self._local.stack = []
        return stack

    def current(self) -> Optional[TransactionBoundary]:
        """Return the boundary current on this thread, if any."""
        stack = self._stack()
        return stack[-1] if stack else None

    def current_session(self) -> Session:
        """Return the session of the current boundary or raise NoActiveBoundary."""
        boundary = self.current()
        if boundary is None:
            raise NoActiveBoundary("no transaction boundary is active on this thread")
        return boundary.session

    @contextmanager
    def boundary(self, definition: Optional[TransactionDefinition] = None) -> Iterator[TransactionBoundary]:
        """
        Open a boundary for `definition` and complete it on every exit path.

        Exceptions propagate after the rollback rules decided between
        commit and rollback.
        """
        definition = definition or TransactionDefinition()
        current = self.current()

        if current is None or definition.propagation is Propagation.REQUIRES_NEW:
            boundary = self._begin_physical(definition)
        elif definition.propagation is Propagation.NESTED:
            boundary = self._begin_savepoint(current, definition)
        else:
            boundary = TransactionBoundary(
                current.session, definition, BoundaryKind.JOINED, owner=current.owner
            )

        # A read-only participant keeps the shared session read-only while it runs
        marks_read_only = (
            boundary.kind is not BoundaryKind.PHYSICAL
            and definition.read_only
            and not boundary.session.info.get("read_only")
        )
        if marks_read_only:
            # Pending work belongs to the writable owner
            boundary.session.flush()
            boundary.session.info["read_only"] = True

        stack = self._stack()
        stack.append(boundary)
        try:
            yield boundary
        except BaseException as exc:
            if definition.rollback_on(exc):
                self._rollback(boundary, reason=type(exc).__name__)
            else:
                self.logger.debug(
                    "Exception does not trigger rollback",
                    error=type(exc).__name__,
                    kind=boundary.kind.value,
                )
                self._commit(boundary)
            raise
        else:
            self._commit(boundary)
        finally:
            stack.pop()
            if marks_read_only:
                boundary.session.info["read_only"] = False
            if boundary.kind is BoundaryKind.PHYSICAL:
                boundary.session.close()

    def _begin_physical(self, definition: TransactionDefinition) -> TransactionBoundary:
        session = self.session_factory()
        session.info["read_only"] = definition.read_only
        try:
            session.begin()
            if definition.isolation is not Isolation.DEFAULT:
                level = dialect_isolation_level(self.engine, definition.isolation.value)
                session.connection(execution_options={"isolation_level": level})
        except BaseException:
            session.close()
            raise

        self.logger.record_boundary_begun()
        self.logger.debug(
            "Transaction begun",
            propagation=definition.propagation.value,
            isolation=definition.isolation.value,
            read_only=definition.read_only,
        )
        return TransactionBoundary(session, definition, BoundaryKind.PHYSICAL)

    def _begin_savepoint(self, parent: TransactionBoundary, definition: TransactionDefinition) -> TransactionBoundary:
        session = parent.session
        # A SAVEPOINT issued before pysqlite's deferred BEGIN would open the
        # outer transaction itself, and its RELEASE would commit it.
        begin_sqlite_transaction(session.connection())
        savepoint = session.begin_nested()

        self.logger.record_boundary_begun()
        self.logger.debug("Savepoint begun", parent=parent.kind.value)
        return TransactionBoundary(
            session, definition, BoundaryKind.SAVEPOINT, savepoint=savepoint
        )

    def _commit(self, boundary: TransactionBoundary):
        if boundary.kind is BoundaryKind.JOINED:
            return

        if boundary.rollback_only:
            self._rollback(boundary, reason="rollback-only")
            raise UnexpectedRollback(
                "transaction rolled back because a participant marked it rollback-only"
            )

        try:
            if boundary.kind is BoundaryKind.SAVEPOINT:
                boundary.savepoint.commit()
            else:
                boundary.session.commit()
        except BaseException:
            self._rollback(boundary, reason="commit failed")
            raise

        self.logger.record_boundary_completed(Outcome.COMMITTED.value)
        self.logger.debug("Transaction committed", kind=boundary.kind.value)
        boundary._complete(Outcome.COMMITTED)

    def _rollback(self, boundary: TransactionBoundary, reason: str):
        if boundary.kind is BoundaryKind.JOINED:
            # Participants cannot roll back on their own
            boundary.set_rollback_only()
            self.logger.debug("Participant marked transaction rollback-only", reason=reason)
            return

        if boundary.kind is BoundaryKind.SAVEPOINT:
            if boundary.savepoint.is_active:
                boundary.savepoint.rollback()
        else:
            boundary.session.rollback()

        self.logger.record_boundary_completed(Outcome.ROLLED_BACK.value)
        self.logger.debug("Transaction rolled back", kind=boundary.kind.value, reason=reason)
        boundary._complete(Outcome.ROLLED_BACK)


def transactional(
    propagation: Propagation = Propagation.REQUIRED,
    isolation: Isolation = Isolation.DEFAULT,
    read_only: bool = False,
    rollback_for: Tuple[Type[BaseException], ...] = (),
    no_rollback_for: Tuple[Type[BaseException], ...] = (),
):
    """
    Declare the boundary a method runs in when invoked through a proxy.

    The decorator does not wrap the function; calling it directly runs it
    without any boundary of its own.

    Example:
        @transactional(propagation=Propagation.REQUIRES_NEW)
        def update_user_name(self, user_id, new_name):
            ...
    """
    definition = TransactionDefinition(
        propagation=propagation,
        isolation=isolation,
        read_only=read_only,
        rollback_for=tuple(rollback_for),
        no_rollback_for=tuple(no_rollback_for),
    )

    def decorator(func):
        setattr(func, TRANSACTION_ATTRIBUTE, definition)
        return func
    return decorator


def transaction_definition(func) -> Optional[TransactionDefinition]:
    """Return the definition declared on `func` (or bound method), if any."""
    return getattr(func, TRANSACTION_ATTRIBUTE, None)


class TransactionalProxy:
    """
    Boundary-aware entry point to a service.

    Attribute access returns the target's attribute; methods carrying a
    definition come back wrapped so each call runs inside its own boundary.
    """

    def __init__(self, target, manager: TransactionManager):
        self._target = target
        self._manager = manager

    @property
    def target(self):
        return self._target

    def __getattr__(self, name):
        attribute = getattr(self._target, name)
        definition = transaction_definition(attribute)
        if definition is None or not callable(attribute):
            return attribute

        manager = self._manager

        @functools.wraps(attribute)
        def invoke(*args, **kwargs):
            with manager.boundary(definition):
                return attribute(*args, **kwargs)
        return invoke

    def __repr__(self) -> str:
        return f"TransactionalProxy({self._target!r})"
