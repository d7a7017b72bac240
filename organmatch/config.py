"""
Runtime configuration.

Settings come from environment variables, optionally seeded from a .env
file in the current working directory.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def load_env() -> None:
    """Load .env from the working directory if present."""
    env_path = Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(dotenv_path=env_path)


@dataclass(frozen=True)
class MatchingSettings:
    db_path: Path = Path("data/organmatch.db")
    acceptance_threshold: int = 50
    fully_waited_days: int = 100
    high_confidence_score: int = 85
    log_level: str = "INFO"
    log_to_file: bool = False
    log_dir: Path = Path("logs")
    ledger_url: Optional[str] = None


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def load_settings() -> MatchingSettings:
    """
    Build settings from the environment.

    Raises:
        ValueError: If a numeric setting cannot be parsed or is out of range
    """
    settings = MatchingSettings(
        db_path=Path(os.getenv("ORGANMATCH_DB_PATH", "data/organmatch.db")),
        acceptance_threshold=_int_env("ORGANMATCH_ACCEPTANCE_THRESHOLD", 50),
        fully_waited_days=_int_env("ORGANMATCH_FULLY_WAITED_DAYS", 100),
        high_confidence_score=_int_env("ORGANMATCH_HIGH_CONFIDENCE_SCORE", 85),
        log_level=os.getenv("ORGANMATCH_LOG_LEVEL", "INFO"),
        log_to_file=_bool_env("ORGANMATCH_LOG_FILE", False),
        log_dir=Path(os.getenv("ORGANMATCH_LOG_DIR", "logs")),
        ledger_url=os.getenv("ORGANMATCH_LEDGER_URL") or None,
    )
    if not 0 < settings.acceptance_threshold <= 100:
        raise ValueError("ORGANMATCH_ACCEPTANCE_THRESHOLD must be between 1 and 100")
    if settings.fully_waited_days <= 0:
        raise ValueError("ORGANMATCH_FULLY_WAITED_DAYS must be positive")
    return settings
