"""
Tests for service.py - each operation's boundary and its observable effect.

Committed state is always read back outside any boundary.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import select

from transactional.database import User
from transactional.errors import (
    FatalFailure,
    NoActiveBoundary,
    OptimisticConflict,
    ReadOnlyViolation,
    RecoverableFailure,
    StaleAccess,
    UnexpectedRollback,
)
from transactional.service import (
    CHECKED_ERROR_NAME,
    FORCED_ROLLBACK_NAME,
    LockMode,
)
from transactional.views import DETACHED


def run_pair(operation, user_id, names, **kwargs):
    """Run `operation` for both names on two threads; return name -> error or None."""
    results = {}
    with ThreadPoolExecutor(max_workers=2) as pool:
        futures = {name: pool.submit(operation, user_id, name, **kwargs) for name in names}
        for name, future in futures.items():
            try:
                future.result()
                results[name] = None
            except OptimisticConflict as e:
                results[name] = e
    return results


class TestCreateAndFind:
    """Test creating, reading and extending users."""

    def test_create_user_defaults(self, proxy, committed_user):
        view = proxy.create_user("Alice")
        assert view.id is not None
        assert view.age == 20
        assert view.version == 0
        assert committed_user(view.id).name == "Alice"

    def test_create_user_with_propagation_age(self, proxy):
        assert proxy.create_user_with_propagation("Bob").age == 25

    def test_find_user_by_id(self, proxy, alice):
        view = proxy.find_user_by_id(alice.id)
        assert view.name == "Alice"
        assert view.loaded_addresses is DETACHED

    def test_add_address(self, proxy):
        view = proxy.create_user("Alice")
        view = proxy.add_address(view.id, "Seoul")
        view = proxy.add_address(view.id, "Busan")
        assert view.addresses == ("Seoul", "Busan")

    def test_update_user_age(self, proxy, alice, committed_user):
        view = proxy.update_user_age(alice.id, 42)
        assert view.age == 42
        assert view.version == alice.version + 1
        assert committed_user(alice.id).age == 42

    def test_operations_need_the_proxy(self, service, alice):
        with pytest.raises(NoActiveBoundary):
            service.find_user_by_id(alice.id)


class TestLazyLoading:
    """Test associations handed out after the boundary closed."""

    def test_issue_raises_stale_access(self, proxy, alice):
        view = proxy.get_user_with_lazy_loading_issue(alice.id)
        assert not view.addresses_loaded
        with pytest.raises(StaleAccess):
            view.addresses

    def test_solution_loads_addresses(self, proxy, alice):
        view = proxy.get_user_with_lazy_loading_solution(alice.id)
        assert view.addresses_loaded
        assert view.addresses == ("Seoul",)


class TestConcurrentUpdates:
    """Test two writers that both read before either writes."""

    def test_unprotected_loses_an_update(self, proxy, alice, line_up, committed_user):
        errors = run_pair(
            proxy.update_user_concurrently, alice.id, ("Carol", "Dave"), pause=line_up
        )

        assert errors == {"Carol": None, "Dave": None}
        stored = committed_user(alice.id)
        # Both writes applied, only one name survives
        assert stored.name in ("Carol", "Dave")
        assert stored.version == alice.version + 2

    def test_optimistic_detects_conflict(self, proxy, alice, line_up, committed_user):
        errors = run_pair(
            proxy.update_user_with_lock, alice.id, ("Carol", "Dave"),
            lock_mode=LockMode.OPTIMISTIC, pause=line_up,
        )

        winners = [name for name, error in errors.items() if error is None]
        losers = [name for name, error in errors.items() if error is not None]
        assert len(winners) == 1
        assert len(losers) == 1
        stored = committed_user(alice.id)
        assert stored.name == winners[0]
        assert stored.version == alice.version + 1

    def test_pessimistic_writer_blocks_until_lock_released(self, proxy, alice, committed_user):
        locked = threading.Event()
        release = threading.Event()

        def hold():
            locked.set()
            release.wait(5)

        with ThreadPoolExecutor(max_workers=2) as pool:
            first = pool.submit(
                proxy.update_user_with_lock, alice.id, "Carol",
                lock_mode=LockMode.PESSIMISTIC, pause=hold,
            )
            assert locked.wait(5)
            second = pool.submit(
                proxy.update_user_with_lock, alice.id, "Dave", lock_mode=LockMode.PESSIMISTIC
            )
            try:
                time.sleep(0.3)
                # Still waiting on the lock taken by the first read
                assert not second.done()
            finally:
                release.set()
            assert first.result().name == "Carol"
            # Read after the first commit, so its version check passes
            assert second.result().version == alice.version + 2

        stored = committed_user(alice.id)
        assert stored.name == "Dave"
        assert stored.version == alice.version + 2

    def test_protected_sequential_updates_succeed(self, proxy, alice):
        proxy.update_user_with_lock(alice.id, "Carol")
        view = proxy.update_user_with_lock(alice.id, "Dave", lock_mode=LockMode.PESSIMISTIC)
        assert view.name == "Dave"
        assert view.version == alice.version + 2


class TestReadOnly:
    def test_write_in_read_only_boundary_fails(self, proxy, alice, committed_user):
        with pytest.raises(ReadOnlyViolation):
            proxy.update_user_in_read_only_transaction(alice.id, "ReadOnly Name")
        assert committed_user(alice.id).name == "Alice"

    def test_joined_read_only_write_fails(self, proxy, alice, manager, committed_user):
        with pytest.raises(ReadOnlyViolation):
            with manager.boundary():
                proxy.update_user_in_read_only_transaction(alice.id, "ReadOnly Name")
        assert committed_user(alice.id).name == "Alice"

    def test_caught_joined_violation_rolls_back_caller(self, proxy, alice, manager, committed_user):
        with pytest.raises(UnexpectedRollback):
            with manager.boundary():
                proxy.update_user_age(alice.id, 30)
                with pytest.raises(ReadOnlyViolation):
                    proxy.update_user_in_read_only_transaction(alice.id, "ReadOnly Name")

        stored = committed_user(alice.id)
        assert stored.name == "Alice"
        assert stored.age == alice.age

    def test_caller_writable_again_after_joined_read(self, proxy, alice, manager, committed_user):
        with manager.boundary():
            assert proxy.find_user_by_id(alice.id).name == "Alice"
            proxy.update_user_age(alice.id, 30)
        assert committed_user(alice.id).age == 30


class TestSelfInvocation:
    """Test REQUIRES_NEW applied or skipped depending on the call path."""

    def test_direct_call_rolls_back_with_caller(self, proxy, alice, committed_user):
        with pytest.raises(FatalFailure):
            proxy.update_user_directly(alice.id, "Direct Call Name")
        assert committed_user(alice.id).name == "Alice"

    def test_proxied_call_survives_caller_failure(self, proxy, alice, manager, committed_user):
        with pytest.raises(FatalFailure):
            with manager.boundary():
                proxy.update_user_name(alice.id, "Proxied Call Name")
                raise FatalFailure("caller failed")
        assert committed_user(alice.id).name == "Proxied Call Name"


class TestNested:
    """Test savepoint semantics of nested_transaction_example."""

    def test_parent_rollback_discards_child(self, proxy, alice, manager, committed_user):
        with pytest.raises(FatalFailure):
            with manager.boundary():
                proxy.update_user_age(alice.id, 30)
                proxy.nested_transaction_example(alice.id, "Nested Name")
                raise FatalFailure("parent failed")

        stored = committed_user(alice.id)
        assert stored.name == "Alice"
        assert stored.age == alice.age

    def test_released_child_visible_to_parent(self, proxy, alice, manager, committed_user):
        with pytest.raises(FatalFailure):
            with manager.boundary() as parent:
                proxy.nested_transaction_example(alice.id, "Nested Name")
                stored_name = parent.session.execute(
                    select(User.name).where(User.id == alice.id)
                ).scalar_one()
                assert stored_name == "Nested Name"
                assert committed_user(alice.id).name == "Alice"
                raise FatalFailure("parent failed")

        assert committed_user(alice.id).name == "Alice"

    def test_child_rollback_keeps_parent(self, proxy, alice, manager, committed_user):
        with manager.boundary():
            proxy.update_user_age(alice.id, 30)
            with pytest.raises(FatalFailure):
                proxy.nested_transaction_example(alice.id, "Nested Name", fail=True)

        stored = committed_user(alice.id)
        assert stored.name == "Alice"
        assert stored.age == 30

    def test_without_parent_commits_on_its_own(self, proxy, alice, committed_user):
        view = proxy.nested_transaction_example(alice.id, "Nested Name")
        assert view.name == "Nested Name"
        assert committed_user(alice.id).name == "Nested Name"


class TestRequiresNew:
    def test_child_survives_parent_rollback(self, proxy, alice, manager, committed_user):
        with pytest.raises(FatalFailure):
            with manager.boundary():
                proxy.update_user_name(alice.id, "Requires New Name")
                proxy.update_user_age(alice.id, 30)
                raise FatalFailure("parent failed")

        stored = committed_user(alice.id)
        assert stored.name == "Requires New Name"
        assert stored.age == alice.age


class TestIsolation:
    """Test reads while another thread holds an uncommitted rename."""

    def test_uncommitted_read_sees_pending_rename(self, proxy, isolation_proxy, alice, committed_user):
        written = threading.Event()
        release = threading.Event()

        def hold():
            written.set()
            release.wait(5)

        with ThreadPoolExecutor(max_workers=1) as pool:
            writer = pool.submit(isolation_proxy.rename_and_abandon, alice.id, "Uncommitted Name", hold=hold)
            try:
                assert written.wait(5)
                uncommitted = isolation_proxy.read_uncommitted_example(alice.id)
                committed = proxy.read_committed_example(alice.id)
            finally:
                release.set()
            with pytest.raises(FatalFailure):
                writer.result()

        assert uncommitted.name == "Uncommitted Name"
        assert committed.name == "Alice"
        assert committed_user(alice.id).name == "Alice"


class TestRollbackRules:
    """Test how each failure category ends the boundary."""

    def test_recoverable_failure_commits(self, proxy, alice, committed_user):
        with pytest.raises(RecoverableFailure):
            proxy.create_user_with_checked_exception(alice.id)
        assert committed_user(alice.id).name == CHECKED_ERROR_NAME

    def test_fatal_failure_rolls_back(self, proxy, alice, committed_user):
        with pytest.raises(FatalFailure):
            proxy.create_user_with_unchecked_exception(alice.id)
        assert committed_user(alice.id).name == "Alice"

    def test_forced_rollback_on_recoverable_failure(self, proxy, alice, committed_user):
        with pytest.raises(RecoverableFailure):
            proxy.create_user_with_checked_exception_rollback(alice.id)
        stored = committed_user(alice.id)
        assert stored.name != FORCED_ROLLBACK_NAME
        assert stored.name == "Alice"
