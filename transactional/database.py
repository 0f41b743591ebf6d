"""
Database schema and connection management.

Uses SQLite with SQLAlchemy for the user store.
"""

from pathlib import Path
from typing import Optional

from sqlalchemy import Column, ForeignKey, Integer, String, create_engine, event
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from .errors import ReadOnlyViolation

Base = declarative_base()

# Isolation levels a dialect lacks are raised to the nearest stricter one it has.
SQLITE_ISOLATION_LEVELS = {
    "READ UNCOMMITTED": "READ UNCOMMITTED",
    "READ COMMITTED": "SERIALIZABLE",
    "REPEATABLE READ": "SERIALIZABLE",
    "SERIALIZABLE": "SERIALIZABLE",
}


class User(Base):
    """User model. `version` is bumped by the store on every update."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    age = Column(Integer, nullable=False, default=20)
    version = Column(Integer, nullable=False, default=0)

    addresses = relationship(
        "Address",
        back_populates="user",
        lazy="select",
        order_by="Address.id",
    )

    def __repr__(self) -> str:
        return f"User(id={self.id!r}, name={self.name!r}, age={self.age!r}, version={self.version!r})"


class Address(Base):
    """Address model, the association loaded lazily from User."""

    __tablename__ = "addresses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    city = Column(String, nullable=False)

    user = relationship("User", back_populates="addresses")


def get_engine(db_path: Path, lock_timeout: float = 5.0, shared_cache: bool = False) -> Engine:
    """
    Create an engine for the SQLite file.

    Args:
        db_path: Path to SQLite database file
        lock_timeout: Seconds a writer waits on the database lock
        shared_cache: Open connections in SQLite shared-cache mode. Only
            shared-cache connections can read each other's uncommitted
            changes under READ UNCOMMITTED; conflicting writers fail with
            "database table is locked" instead of waiting.

    Returns:
        SQLAlchemy engine
    """
    if shared_cache:
        url = f"sqlite:///file:{Path(db_path).as_posix()}?cache=shared&uri=true"
    else:
        url = f"sqlite:///{db_path}"
    return create_engine(url, connect_args={"timeout": lock_timeout})


def init_database(db_path: Path, lock_timeout: float = 5.0) -> Engine:
    """
    Initialize database and create tables.

    Args:
        db_path: Path to SQLite database file
        lock_timeout: Seconds a writer waits on the database lock

    Returns:
        Engine bound to the initialized database
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = get_engine(db_path, lock_timeout=lock_timeout)
    Base.metadata.create_all(engine)
    return engine


def _refuse_read_only_flush(session, flush_context, instances):
    if session.info.get("read_only") and (session.new or session.dirty or session.deleted):
        raise ReadOnlyViolation("flush attempted inside a read-only transaction")


def get_session_factory(engine: Engine) -> sessionmaker:
    """
    Build the session factory used by transaction boundaries.

    Sessions keep loaded attributes after commit so views can be taken
    from them, and refuse to flush while marked read-only.
    """
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    event.listen(factory, "before_flush", _refuse_read_only_flush)
    return factory


def begin_sqlite_transaction(connection: Connection, immediate: bool = False) -> bool:
    """
    Open the driver transaction pysqlite would otherwise defer until the
    first write.

    With `immediate` the database write lock is taken at once; other
    writers wait on it for up to the busy timeout.

    Returns:
        True if a transaction was opened, False when one was already open
        or the connection is not SQLite
    """
    if connection.dialect.name != "sqlite":
        return False
    if connection.connection.driver_connection.in_transaction:
        return False
    connection.exec_driver_sql("BEGIN IMMEDIATE" if immediate else "BEGIN")
    return True


def dialect_isolation_level(engine: Engine, level: str) -> Optional[str]:
    """
    Map a requested isolation level onto one the engine's dialect accepts.

    Args:
        engine: Engine the boundary will run on
        level: SQL isolation level name, e.g. "READ COMMITTED"

    Returns:
        Level name to pass as the `isolation_level` execution option
    """
    if engine.dialect.name == "sqlite":
        return SQLITE_ISOLATION_LEVELS.get(level)
    return level
