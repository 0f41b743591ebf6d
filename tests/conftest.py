"""
Pytest configuration and shared fixtures.
"""

import threading

import pytest
from sqlalchemy.orm import Session

from transactional.boundary import TransactionManager, TransactionalProxy
from transactional.database import User, get_engine, init_database
from transactional.logger import StructuredLogger, get_logger, reset_logger
from transactional.repository import UserRepository
from transactional.service import UserService
from transactional.views import UserView


@pytest.fixture(autouse=True)
def quiet_logger():
    """Keep the global logger off the console during tests."""
    reset_logger()
    yield get_logger(enable_console=False)
    reset_logger()


@pytest.fixture
def logger() -> StructuredLogger:
    """Logger with fresh metrics and no handlers."""
    return StructuredLogger(name="test", enable_console=False)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test.db"


@pytest.fixture
def engine(db_path):
    """Create a temporary database and return its engine."""
    engine = init_database(db_path, lock_timeout=5.0)
    yield engine
    engine.dispose()


@pytest.fixture
def manager(engine, logger) -> TransactionManager:
    return TransactionManager(engine, logger=logger)


@pytest.fixture
def shared_engine(engine, db_path):
    """Shared-cache engine over the same database file."""
    shared = get_engine(db_path, lock_timeout=5.0, shared_cache=True)
    yield shared
    shared.dispose()


@pytest.fixture
def isolation_manager(shared_engine, logger) -> TransactionManager:
    return TransactionManager(shared_engine, logger=logger)


@pytest.fixture
def repository(manager) -> UserRepository:
    return UserRepository(manager)


@pytest.fixture
def service(repository) -> UserService:
    return UserService(repository)


@pytest.fixture
def proxy(service, manager) -> TransactionalProxy:
    """Boundary-aware entry point to the service."""
    return TransactionalProxy(service, manager)


@pytest.fixture
def isolation_proxy(isolation_manager) -> TransactionalProxy:
    """Service proxy whose boundaries run on shared-cache connections."""
    return TransactionalProxy(UserService(UserRepository(isolation_manager)), isolation_manager)


@pytest.fixture
def alice(proxy) -> UserView:
    """Committed user named Alice with one address."""
    view = proxy.create_user("Alice")
    return proxy.add_address(view.id, "Seoul")


@pytest.fixture
def committed_user(engine):
    """Return a function reading a user's committed state outside any boundary."""
    def read(user_id: int) -> User:
        with Session(engine) as session:
            return session.get(User, user_id)
    return read


@pytest.fixture
def line_up():
    """Barrier making two threads both read before either writes."""
    return threading.Barrier(2, timeout=5).wait
