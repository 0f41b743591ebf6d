"""
Orchestration of the transaction pitfall scenarios.

Each execute_* method runs one scenario through the service proxy, narrates
what happened and returns a ScenarioResult. Failures are caught per
scenario; none of them stops a full run.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import OperationalError

from .boundary import TransactionManager, TransactionalProxy
from .errors import (
    FatalFailure,
    ReadOnlyViolation,
    RecoverableFailure,
    StaleAccess,
    TransactionalError,
)
from .logger import StructuredLogger, get_logger
from .repository import UserRepository
from .retry import RetryError, exponential_backoff, is_transient_error
from .service import LockMode, UserService
from .views import UserView

CONCURRENT_NAMES = ("Alice", "Bob")


@dataclass
class ScenarioResult:
    name: str
    outcome: str
    detail: str = ""
    error: Optional[str] = None
    final: Optional[UserView] = None


class _LineUp:
    """Makes each thread wait at a barrier the first time it is called."""

    def __init__(self, parties: int, timeout: float):
        self._barrier = threading.Barrier(parties, timeout=timeout)
        self._local = threading.local()

    def __call__(self):
        if getattr(self._local, "passed", False):
            return
        self._local.passed = True
        self._barrier.wait()


class UserUsecase:
    """Runs scenarios against a proxied UserService."""

    def __init__(
        self,
        service: TransactionalProxy,
        manager: TransactionManager,
        logger: Optional[StructuredLogger] = None,
        echo: Callable[[str], None] = print,
        line_up_timeout: float = 5.0,
        max_retries: int = 3,
        lock_hold: float = 0.2,
        isolation_service: Optional[TransactionalProxy] = None,
    ):
        self.service = service
        self.manager = manager
        # Readers and writer of the isolation scenario; shared-cache connections when set
        self.isolation_service = isolation_service or service
        self.lock_hold = lock_hold
        self.logger = logger or get_logger()
        self.echo = echo
        self.line_up_timeout = line_up_timeout
        self.max_retries = max_retries

    @staticmethod
    def proxy_for(manager: TransactionManager) -> TransactionalProxy:
        return TransactionalProxy(UserService(UserRepository(manager)), manager)

    @classmethod
    def build(
        cls,
        manager: TransactionManager,
        isolation_manager: Optional[TransactionManager] = None,
        **kwargs,
    ) -> "UserUsecase":
        """
        Wire repository, service and proxy on `manager`.

        `isolation_manager` should run on a shared-cache engine over the
        same database; without it the isolation scenario cannot observe
        uncommitted changes.
        """
        isolation_service = cls.proxy_for(isolation_manager) if isolation_manager is not None else None
        return cls(cls.proxy_for(manager), manager, isolation_service=isolation_service, **kwargs)

    def _result(
        self,
        name: str,
        outcome: str,
        detail: str = "",
        error: Optional[BaseException] = None,
        final: Optional[UserView] = None,
    ) -> ScenarioResult:
        self.logger.record_scenario(name, outcome)
        if error is not None:
            self.logger.record_error(type(error).__name__)
        self.logger.info("Scenario finished", scenario=name, outcome=outcome)
        return ScenarioResult(
            name=name,
            outcome=outcome,
            detail=detail,
            error=f"{type(error).__name__}: {error}" if error is not None else None,
            final=final,
        )

    def create_user(self, name: str) -> UserView:
        view = self.service.create_user(name)
        self.echo(f"Created user {view.id} ({view.name})")
        return view

    def execute_lazy_loading_issue(self, user_id: int) -> ScenarioResult:
        view = self.service.get_user_with_lazy_loading_issue(user_id)
        try:
            cities = view.addresses
        except StaleAccess as e:
            self.echo(f"Lazy loading problem: {e}")
            return self._result("lazy_loading_issue", "stale_access", error=e, final=view)
        self.echo(f"Addresses unexpectedly available: {cities}")
        return self._result("lazy_loading_issue", "loaded", final=view)

    def execute_lazy_loading_solution(self, user_id: int) -> ScenarioResult:
        view = self.service.get_user_with_lazy_loading_solution(user_id)
        self.echo(f"{view.name} loaded with addresses {list(view.addresses)}")
        return self._result("lazy_loading_solution", "loaded", final=view)

    def _hold_lock(self):
        time.sleep(self.lock_hold)

    def _run_concurrently(
        self,
        operation: Callable,
        user_id: int,
        line_up_first: bool = False,
        **kwargs,
    ) -> Dict[str, Optional[BaseException]]:
        """
        Run `operation` once per name in CONCURRENT_NAMES, one thread each.

        By default both writers are lined up between their read and their
        write. With `line_up_first` they start together instead and keep
        whatever they locked for `lock_hold` seconds before writing.
        """
        line_up = _LineUp(len(CONCURRENT_NAMES), self.line_up_timeout)
        errors: Dict[str, Optional[BaseException]] = {}

        def run(name):
            if line_up_first:
                line_up()
                return operation(user_id, name, pause=self._hold_lock, **kwargs)
            return operation(user_id, name, pause=line_up, **kwargs)

        with ThreadPoolExecutor(max_workers=len(CONCURRENT_NAMES), thread_name_prefix="writer") as pool:
            futures = {name: pool.submit(run, name) for name in CONCURRENT_NAMES}
            for name, future in futures.items():
                try:
                    future.result()
                    errors[name] = None
                except (TransactionalError, RetryError) as e:
                    self.echo(f"{name} update failed: {e}")
                    errors[name] = e
        return errors

    def execute_concurrency_issue(self, user_id: int) -> ScenarioResult:
        errors = self._run_concurrently(self.service.update_user_concurrently, user_id)
        final = self.service.get_user_with_lazy_loading_solution(user_id)
        self.echo(f"Final user name: {final.name}")

        failures = [e for e in errors.values() if e is not None]
        if failures:
            return self._result("concurrency_issue", "conflict", error=failures[0], final=final)
        lost = [name for name in CONCURRENT_NAMES if name != final.name]
        return self._result(
            "concurrency_issue",
            "lost_update",
            detail=f"both writers succeeded, update from {', '.join(lost)} was lost",
            final=final,
        )

    def execute_concurrency_solution(self, user_id: int, lock_mode: LockMode = LockMode.OPTIMISTIC) -> ScenarioResult:
        if lock_mode is LockMode.PESSIMISTIC:
            return self.execute_concurrency_pessimistic(user_id)
        errors = self._run_concurrently(self.service.update_user_with_lock, user_id, lock_mode=lock_mode)
        final = self.service.get_user_with_lazy_loading_solution(user_id)
        self.echo(f"Final user name: {final.name}")

        failures = [e for e in errors.values() if e is not None]
        if failures:
            return self._result("concurrency_solution", "conflict_detected", error=failures[0], final=final)
        return self._result("concurrency_solution", "serialized", detail="writers did not overlap", final=final)

    def execute_concurrency_pessimistic(self, user_id: int) -> ScenarioResult:
        """Both writers lock on the read; the second waits for the first to commit."""
        before = self.service.find_user_by_id(user_id)
        durations: Dict[str, float] = {}
        service = self.service

        def timed_update(user_id, new_name, pause=None):
            started = time.monotonic()
            try:
                return service.update_user_with_lock(
                    user_id, new_name, lock_mode=LockMode.PESSIMISTIC, pause=pause
                )
            finally:
                durations[new_name] = round(time.monotonic() - started, 3)

        errors = self._run_concurrently(timed_update, user_id, line_up_first=True)
        final = self.service.get_user_with_lazy_loading_solution(user_id)
        self.echo(f"Final user name: {final.name} (seconds per writer: {durations})")

        failures = [e for e in errors.values() if e is not None]
        if failures:
            return self._result("concurrency_pessimistic", "conflict_detected", error=failures[0], final=final)
        return self._result(
            "concurrency_pessimistic",
            "serialized",
            detail=f"version {before.version} -> {final.version}, seconds per writer: {durations}",
            final=final,
        )

    def execute_concurrency_with_retry(self, user_id: int) -> ScenarioResult:
        attempts: Dict[str, int] = {name: 0 for name in CONCURRENT_NAMES}
        service = self.service

        def update_with_retry(user_id, new_name, pause=None):
            @exponential_backoff(
                max_retries=self.max_retries,
                exceptions=(TransactionalError, OperationalError),
                retry_if=is_transient_error,
            )
            def attempt():
                attempts[new_name] += 1
                return service.update_user_with_lock(user_id, new_name, pause=pause)
            return attempt()

        errors = self._run_concurrently(update_with_retry, user_id)
        final = self.service.get_user_with_lazy_loading_solution(user_id)
        self.echo(f"Final user name: {final.name} (attempts: {attempts})")

        failures = [e for e in errors.values() if e is not None]
        if failures:
            return self._result("concurrency_with_retry", "retries_exhausted", error=failures[0], final=final)
        return self._result(
            "concurrency_with_retry",
            "both_applied",
            detail=f"attempts per writer: {attempts}",
            final=final,
        )

    def execute_read_only_transaction_update(self, user_id: int, new_name: str) -> ScenarioResult:
        try:
            self.service.update_user_in_read_only_transaction(user_id, new_name)
        except ReadOnlyViolation as e:
            self.echo(f"Read-only transaction problem: {e}")
            final = self.service.find_user_by_id(user_id)
            return self._result("read_only_update", "read_only_violation", error=e, final=final)
        final = self.service.find_user_by_id(user_id)
        return self._result("read_only_update", "written", final=final)

    def execute_direct_method_call(self, user_id: int, new_name: str) -> ScenarioResult:
        before = self.service.find_user_by_id(user_id)
        try:
            self.service.update_user_directly(user_id, new_name)
        except FatalFailure as e:
            self.echo(f"Direct call failed: {e}")
            error = e
        else:
            error = None
        final = self.service.find_user_by_id(user_id)
        self.echo(f" before => {before.name}, after => {final.name}")
        outcome = "inner_rolled_back" if final.name == before.name else "inner_committed"
        return self._result(
            "direct_method_call",
            outcome,
            detail="inner REQUIRES_NEW ignored on self-invocation",
            error=error,
            final=final,
        )

    def execute_separately_invoked_call(self, user_id: int, new_name: str) -> ScenarioResult:
        before = self.service.find_user_by_id(user_id)
        error = None
        try:
            with self.manager.boundary():
                self.service.update_user_name(user_id, new_name)
                raise FatalFailure("caller failed after the proxied call")
        except FatalFailure as e:
            self.echo(f"Caller failed: {e}")
            error = e
        final = self.service.find_user_by_id(user_id)
        self.echo(f" before => {before.name}, after => {final.name}")
        outcome = "inner_committed" if final.name == new_name else "inner_rolled_back"
        return self._result("separately_invoked_call", outcome, error=error, final=final)

    def execute_nested_transaction(self, user_id: int, new_name: str) -> ScenarioResult:
        """Child savepoint commits, then the parent rolls back."""
        before = self.service.find_user_by_id(user_id)
        error = None
        try:
            with self.manager.boundary():
                self.service.update_user_age(user_id, before.age + 1)
                self.service.nested_transaction_example(user_id, new_name)
                inside = self.service.find_user_by_id(user_id)
                self.echo(f"Parent sees {inside.name} after the savepoint was released")
                raise FatalFailure("parent failed after the nested rename")
        except FatalFailure as e:
            self.echo(f"Parent failed: {e}")
            error = e
        final = self.service.find_user_by_id(user_id)
        self.echo(f" before => {before.name}, after => {final.name}")
        outcome = "child_discarded" if final.name == before.name else "child_retained"
        return self._result(
            "nested_transaction",
            outcome,
            detail=f"parent saw {inside.name} before rolling back",
            error=error,
            final=final,
        )

    def execute_nested_child_rollback(self, user_id: int, new_name: str) -> ScenarioResult:
        """Child savepoint rolls back, the parent carries on and commits."""
        before = self.service.find_user_by_id(user_id)
        error = None
        with self.manager.boundary():
            self.service.update_user_age(user_id, before.age + 1)
            try:
                self.service.nested_transaction_example(user_id, new_name, fail=True)
            except FatalFailure as e:
                self.echo(f"Nested work failed: {e}")
                error = e
        final = self.service.find_user_by_id(user_id)
        self.echo(f" before => {before.name}/{before.age}, after => {final.name}/{final.age}")
        outcome = "parent_committed" if final.age == before.age + 1 else "parent_rolled_back"
        return self._result("nested_child_rollback", outcome, error=error, final=final)

    def execute_requires_new_transaction(self, user_id: int, new_name: str) -> ScenarioResult:
        """Child commits in its own transaction, then the parent rolls back."""
        before = self.service.find_user_by_id(user_id)
        error = None
        try:
            with self.manager.boundary():
                self.service.update_user_name(user_id, new_name)
                self.service.update_user_age(user_id, before.age + 1)
                raise FatalFailure("parent failed after the independent rename")
        except FatalFailure as e:
            self.echo(f"Parent failed: {e}")
            error = e
        final = self.service.find_user_by_id(user_id)
        self.echo(f" before => {before.name}/{before.age}, after => {final.name}/{final.age}")
        outcome = "child_retained" if final.name == new_name else "child_discarded"
        return self._result("requires_new_transaction", outcome, error=error, final=final)

    def execute_isolation_level_mismatch(self, user_id: int, uncommitted_name: str = "Uncommitted Name") -> ScenarioResult:
        """
        Reads the user at READ_UNCOMMITTED and READ_COMMITTED while another
        boundary holds an uncommitted rename.

        The writer and the uncommitted read share `isolation_service`; the
        committed read goes through the regular service.
        """
        written = threading.Event()
        release = threading.Event()

        def hold():
            written.set()
            release.wait(self.line_up_timeout)

        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="writer") as pool:
            writer = pool.submit(self.isolation_service.rename_and_abandon, user_id, uncommitted_name, hold=hold)
            try:
                written.wait(self.line_up_timeout)
                user1 = self.isolation_service.read_uncommitted_example(user_id)
                user2 = self.service.read_committed_example(user_id)
            finally:
                release.set()
            try:
                writer.result()
            except FatalFailure as e:
                self.logger.debug("Writer rolled back", error=str(e))

        self.echo(f"READ_UNCOMMITTED: {user1.name}, READ_COMMITTED: {user2.name}")
        outcome = "dirty_read" if user1.name == uncommitted_name else "same_view"
        return self._result(
            "isolation_level_mismatch",
            outcome,
            detail=f"read uncommitted saw {user1.name!r}, read committed saw {user2.name!r}",
            final=user2,
        )

    def _execute_failing_write(self, name: str, operation: Callable, user_id: int, expected: type) -> ScenarioResult:
        before = self.service.find_user_by_id(user_id)
        self.echo(f" before => {before.name}")
        error = None
        try:
            operation(user_id)
        except expected as e:
            self.echo(f"{type(e).__name__} raised: {e}")
            error = e
        final = self.service.find_user_by_id(user_id)
        self.echo(f" after => {final.name}")
        outcome = "rolled_back" if final.name == before.name else "committed"
        return self._result(name, outcome, error=error, final=final)

    def execute_create_user_with_checked_exception(self, user_id: int) -> ScenarioResult:
        return self._execute_failing_write(
            "checked_exception", self.service.create_user_with_checked_exception,
            user_id, RecoverableFailure,
        )

    def execute_create_user_with_unchecked_exception(self, user_id: int) -> ScenarioResult:
        return self._execute_failing_write(
            "unchecked_exception", self.service.create_user_with_unchecked_exception,
            user_id, FatalFailure,
        )

    def execute_create_user_with_checked_exception_rollback(self, user_id: int) -> ScenarioResult:
        return self._execute_failing_write(
            "checked_exception_forced_rollback",
            self.service.create_user_with_checked_exception_rollback,
            user_id, RecoverableFailure,
        )

    def run_scenario(self, name: str, user_id: int) -> ScenarioResult:
        """Run one named scenario; unexpected failures become an `error` result."""
        method_name, args = SCENARIOS[name]
        self.echo(f"=== {name} ===")
        try:
            return getattr(self, method_name)(user_id, *args)
        except Exception as e:
            self.logger.error("Scenario failed", scenario=name, error=f"{type(e).__name__}: {e}")
            self.echo(f"[error] {name} -> {e}")
            return self._result(name, "error", error=e)

    def run_all(self) -> List[ScenarioResult]:
        """Seed two users and run every scenario against the first one."""
        first = self.create_user("Alice")
        self.echo("")
        self.create_user("Alice")
        self.echo("")
        self.service.add_address(first.id, "Seoul")

        results = []
        for name in SCENARIOS:
            results.append(self.run_scenario(name, first.id))
            self.echo("")
        return results


# Scenario name -> (UserUsecase method, extra arguments after user_id)
SCENARIOS = {
    "lazy_loading_issue": ("execute_lazy_loading_issue", ()),
    "lazy_loading_solution": ("execute_lazy_loading_solution", ()),
    "concurrency_issue": ("execute_concurrency_issue", ()),
    "concurrency_solution": ("execute_concurrency_solution", ()),
    "concurrency_pessimistic": ("execute_concurrency_pessimistic", ()),
    "concurrency_with_retry": ("execute_concurrency_with_retry", ()),
    "read_only_update": ("execute_read_only_transaction_update", ("ReadOnly Name",)),
    "direct_method_call": ("execute_direct_method_call", ("Direct Call Name",)),
    "separately_invoked_call": ("execute_separately_invoked_call", ("Proxied Call Name",)),
    "nested_transaction": ("execute_nested_transaction", ("Nested Name",)),
    "nested_child_rollback": ("execute_nested_child_rollback", ("Nested Name",)),
    "requires_new_transaction": ("execute_requires_new_transaction", ("Requires New Name",)),
    "isolation_level_mismatch": ("execute_isolation_level_mismatch", ()),
    "checked_exception": ("execute_create_user_with_checked_exception", ()),
    "unchecked_exception": ("execute_create_user_with_unchecked_exception", ()),
    "checked_exception_forced_rollback": ("execute_create_user_with_checked_exception_rollback", ()),
}
