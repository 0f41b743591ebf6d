"""
Users Repository.

Responsibilities:
- Find, insert and update users and their addresses.
- Versioned (optimistic) and blind writes.

Non-Responsibilities:
- No transaction control; every call runs in the current boundary.
- No scenario logic.

Invariant:
Writes never happen outside a boundary or inside a read-only one.
"""

from sqlalchemy import select, update
from sqlalchemy.orm import Session, joinedload

from .boundary import TransactionManager
from .database import Address, User, begin_sqlite_transaction
from .errors import NotFound, OptimisticConflict, ReadOnlyViolation


class UserRepository:
    """Data access for User rows, bound to the manager's current boundary."""

    def __init__(self, manager: TransactionManager):
        self.manager = manager

    @property
    def session(self) -> Session:
        return self.manager.current_session()

    def find_by_id(self, user_id: int, *, with_addresses: bool = False, for_update: bool = False) -> User:
        """
        Load a user.

        Args:
            user_id: Identifier of the user
            with_addresses: Load addresses in the same round trip
            for_update: Take a write lock as part of the read. SQLite has
                no row locks; there the whole database is locked with
                BEGIN IMMEDIATE and other writers wait until this
                transaction ends

        Raises:
            NotFound: No user with that identifier
        """
        session = self.session
        stmt = select(User).where(User.id == user_id)
        if with_addresses:
            stmt = stmt.options(joinedload(User.addresses))
        if for_update:
            begin_sqlite_transaction(session.connection(), immediate=True)
            stmt = stmt.with_for_update().execution_options(populate_existing=True)

        user = session.execute(stmt).unique().scalar_one_or_none()
        if user is None:
            raise NotFound("User", user_id)
        return user

    def save(self, user: User, *, check_version: bool = True) -> User:
        """
        Insert a new user or write an existing one back.

        Updates increment `version` in SQL. With `check_version` the UPDATE
        only matches the version the user was read at.

        Raises:
            OptimisticConflict: The row's version moved on since it was read
            NotFound: The row no longer exists
            ReadOnlyViolation: The current boundary is read-only
        """
        session = self.session
        self._check_writable()

        if user.id is None:
            session.add(user)
            session.flush()
            return user

        users = User.__table__
        stmt = (
            update(users)
            .where(users.c.id == user.id)
            .values(name=user.name, age=user.age, version=users.c.version + 1)
        )
        if check_version:
            stmt = stmt.where(users.c.version == user.version)

        with session.no_autoflush:
            result = session.execute(stmt)
            if result.rowcount == 0:
                if check_version and self._exists(session, user.id):
                    raise OptimisticConflict("User", user.id, user.version)
                raise NotFound("User", user.id)
            session.refresh(user)
        return user

    def add_address(self, user: User, city: str) -> Address:
        session = self.session
        self._check_writable()

        address = Address(city=city)
        user.addresses.append(address)
        session.flush()
        return address

    def _exists(self, session: Session, user_id: int) -> bool:
        users = User.__table__
        return session.execute(select(users.c.id).where(users.c.id == user_id)).first() is not None

    def _check_writable(self):
        if self.manager.current().read_only:
            raise ReadOnlyViolation("write attempted inside a read-only transaction")
