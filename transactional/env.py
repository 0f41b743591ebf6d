import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def load_env() -> None:
    """Load .env from the working directory if present.
    Variables already set in the environment win.
    """
    env_path = Path.cwd() / ".env"
    if not env_path.exists():
        return
    load_dotenv(dotenv_path=env_path, override=False)


@dataclass
class Settings:
    """Runtime settings, read from TRANSACTIONAL_* environment variables."""

    db_path: Path = Path("data/transactional.db")
    log_level: str = "INFO"
    log_dir: Optional[Path] = None
    lock_timeout: float = 5.0
    max_retries: int = 3
    shared_cache: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        log_dir = os.getenv("TRANSACTIONAL_LOG_DIR")
        return cls(
            db_path=Path(os.getenv("TRANSACTIONAL_DB_PATH", str(cls.db_path))),
            log_level=os.getenv("TRANSACTIONAL_LOG_LEVEL", cls.log_level).upper(),
            log_dir=Path(log_dir) if log_dir else None,
            lock_timeout=float(os.getenv("TRANSACTIONAL_LOCK_TIMEOUT", cls.lock_timeout)),
            max_retries=int(os.getenv("TRANSACTIONAL_MAX_RETRIES", cls.max_retries)),
            shared_cache=os.getenv("TRANSACTIONAL_SHARED_CACHE", "true").lower() in ("1", "true", "yes"),
        )
