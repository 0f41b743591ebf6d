"""
User service: the catalog of transactional operations.

Each public method declares its boundary with @transactional. The
declarations only apply when the method is called through a
TransactionalProxy; see update_user_directly for what happens otherwise.
Every operation returns UserView snapshots, never live entities.
"""

from enum import Enum
from typing import Callable, Optional

from .boundary import Isolation, Propagation, transactional
from .database import User
from .errors import FatalFailure, RecoverableFailure
from .listener import TransactionEventListener
from .repository import UserRepository
from .views import UserView

CHECKED_ERROR_NAME = "Checked Error"
UNCHECKED_ERROR_NAME = "Unchecked Error"
FORCED_ROLLBACK_NAME = "Forced Rollback"


class LockMode(str, Enum):
    OPTIMISTIC = "optimistic"
    PESSIMISTIC = "pessimistic"


class UserService:
    """Transactional operations over users."""

    def __init__(self, repository: UserRepository):
        self.repository = repository
        self.manager = repository.manager

    def _register_listener(self):
        TransactionEventListener.register(self.manager)

    @transactional()
    def create_user(self, name: str, age: int = 20) -> UserView:
        self._register_listener()
        user = self.repository.save(User(name=name, age=age, version=0))
        return UserView.from_entity(user)

    @transactional(propagation=Propagation.REQUIRED)
    def create_user_with_propagation(self, name: str) -> UserView:
        """Joins the caller's boundary when there is one."""
        self._register_listener()
        user = self.repository.save(User(name=name, age=25, version=0))
        return UserView.from_entity(user)

    @transactional(read_only=True)
    def find_user_by_id(self, user_id: int) -> UserView:
        self._register_listener()
        return UserView.from_entity(self.repository.find_by_id(user_id))

    @transactional()
    def add_address(self, user_id: int, city: str) -> UserView:
        self._register_listener()
        user = self.repository.find_by_id(user_id, with_addresses=True)
        self.repository.add_address(user, city)
        return UserView.from_entity(user)

    @transactional()
    def update_user_age(self, user_id: int, age: int) -> UserView:
        self._register_listener()
        user = self.repository.find_by_id(user_id)
        user.age = age
        return UserView.from_entity(self.repository.save(user))

    # Lazy loading: addresses are not loaded, so the view marks them DETACHED
    @transactional()
    def get_user_with_lazy_loading_issue(self, user_id: int) -> UserView:
        self._register_listener()
        user = self.repository.find_by_id(user_id)
        return UserView.from_entity(user)

    @transactional()
    def get_user_with_lazy_loading_solution(self, user_id: int) -> UserView:
        """Loads the user and its addresses in one round trip."""
        self._register_listener()
        user = self.repository.find_by_id(user_id, with_addresses=True)
        return UserView.from_entity(user)

    @transactional()
    def update_user_concurrently(
        self,
        user_id: int,
        new_name: str,
        pause: Optional[Callable[[], None]] = None,
    ) -> UserView:
        """
        Read-modify-write with a blind write: concurrent callers can
        silently overwrite each other (lost update).

        `pause` runs between the read and the write.
        """
        self._register_listener()
        user = self.repository.find_by_id(user_id)
        if pause is not None:
            pause()
        user.name = new_name
        return UserView.from_entity(self.repository.save(user, check_version=False))

    @transactional()
    def update_user_with_lock(
        self,
        user_id: int,
        new_name: str,
        lock_mode: LockMode = LockMode.OPTIMISTIC,
        pause: Optional[Callable[[], None]] = None,
    ) -> UserView:
        """
        Read-modify-write protected by a lock taken as part of the read.

        OPTIMISTIC remembers the version read and writes only if it is
        unchanged; a concurrent writer that got there first makes this one
        fail with OptimisticConflict. PESSIMISTIC locks on the read, so a
        concurrent writer blocks until this boundary ends and then reads
        the version this one produced. The version check stays on in both
        modes.
        """
        self._register_listener()
        user = self.repository.find_by_id(
            user_id, for_update=lock_mode is LockMode.PESSIMISTIC
        )
        if pause is not None:
            pause()
        user.name = new_name
        return UserView.from_entity(self.repository.save(user, check_version=True))

    @transactional(read_only=True)
    def update_user_in_read_only_transaction(self, user_id: int, new_name: str) -> UserView:
        self._register_listener()
        user = self.repository.find_by_id(user_id)
        user.name = new_name
        return UserView.from_entity(self.repository.save(user))

    @transactional()
    def update_user_directly(self, user_id: int, new_name: str) -> UserView:
        """
        Calls update_user_name on self, bypassing the proxy, then fails.

        update_user_name's REQUIRES_NEW is not applied: the rename runs in
        this boundary and is rolled back with it.
        """
        self._register_listener()
        self.update_user_name(user_id, new_name)
        raise FatalFailure("work after the direct call failed")

    @transactional(propagation=Propagation.REQUIRES_NEW)
    def update_user_name(self, user_id: int, new_name: str) -> UserView:
        self._register_listener()
        user = self.repository.find_by_id(user_id)
        user.name = new_name
        return UserView.from_entity(self.repository.save(user))

    @transactional(propagation=Propagation.NESTED)
    def nested_transaction_example(self, user_id: int, new_name: str, fail: bool = False) -> UserView:
        """Rename inside a savepoint; with `fail` the savepoint is rolled back."""
        self._register_listener()
        user = self.repository.find_by_id(user_id)
        user.name = new_name
        view = UserView.from_entity(self.repository.save(user))
        if fail:
            raise FatalFailure("nested work failed after the rename")
        return view

    @transactional()
    def rename_and_abandon(
        self,
        user_id: int,
        new_name: str,
        hold: Optional[Callable[[], None]] = None,
    ) -> UserView:
        """
        Writer half of the isolation scenario, not a catalog operation.

        Renames the user, keeps the change uncommitted while `hold` runs so
        readers can look at it, then fails so the rename is rolled back.
        """
        self._register_listener()
        user = self.repository.find_by_id(user_id)
        user.name = new_name
        self.repository.save(user, check_version=False)
        if hold is not None:
            hold()
        raise FatalFailure("writer abandoned its uncommitted change")

    @transactional(isolation=Isolation.READ_UNCOMMITTED)
    def read_uncommitted_example(self, user_id: int) -> UserView:
        self._register_listener()
        return UserView.from_entity(self.repository.find_by_id(user_id))

    @transactional(isolation=Isolation.READ_COMMITTED)
    def read_committed_example(self, user_id: int) -> UserView:
        self._register_listener()
        return UserView.from_entity(self.repository.find_by_id(user_id))

    # Rollback rules

    @transactional()
    def create_user_with_checked_exception(self, user_id: int) -> UserView:
        """RecoverableFailure does not roll back by default: the write commits."""
        self._register_listener()
        user = self.repository.find_by_id(user_id)
        user.name = CHECKED_ERROR_NAME
        self.repository.save(user)
        raise RecoverableFailure("recoverable failure after the write")

    @transactional()
    def create_user_with_unchecked_exception(self, user_id: int) -> UserView:
        self._register_listener()
        user = self.repository.find_by_id(user_id)
        user.name = UNCHECKED_ERROR_NAME
        self.repository.save(user)
        raise FatalFailure("fatal failure after the write")

    @transactional(rollback_for=(RecoverableFailure,))
    def create_user_with_checked_exception_rollback(self, user_id: int) -> UserView:
        self._register_listener()
        user = self.repository.find_by_id(user_id)
        user.name = FORCED_ROLLBACK_NAME
        self.repository.save(user)
        raise RecoverableFailure("recoverable failure after the write, rollback forced")
