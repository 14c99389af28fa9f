# agentledger/config.py
"""
Runtime settings, read from the environment.

    LEDGER_DB_PATH              -> db_path
    LEDGER_APPEND_ATTEMPTS      -> append_max_attempts
    LEDGER_CHECKPOINT_ATTEMPTS  -> checkpoint_max_attempts
    LEDGER_CHECKPOINT_PAGE      -> checkpoint_page_size
    LEDGER_BUSY_TIMEOUT         -> busy_timeout (seconds SQLite waits on a locked db)
    LEDGER_LOG_LEVEL            -> log_level
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_DB_NAME = "agent-ledger.db"


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    value = int(raw)
    if value < 1:
        raise ValueError(f"{key} must be >= 1, got {value}")
    return value


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


@dataclass(frozen=True)
class LedgerSettings:
    db_path: Optional[Path] = None          # None -> ./agent-ledger.db
    append_max_attempts: int = 5
    checkpoint_max_attempts: int = 5
    checkpoint_page_size: int = 500
    busy_timeout: float = 5.0
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "LedgerSettings":
        env = os.environ if env is None else env
        db = env.get("LEDGER_DB_PATH")
        return cls(
            db_path=Path(db) if db else None,
            append_max_attempts=_int(env, "LEDGER_APPEND_ATTEMPTS", cls.append_max_attempts),
            checkpoint_max_attempts=_int(env, "LEDGER_CHECKPOINT_ATTEMPTS", cls.checkpoint_max_attempts),
            checkpoint_page_size=_int(env, "LEDGER_CHECKPOINT_PAGE", cls.checkpoint_page_size),
            busy_timeout=_float(env, "LEDGER_BUSY_TIMEOUT", cls.busy_timeout),
            log_level=env.get("LEDGER_LOG_LEVEL", cls.log_level).upper(),
        )

    def resolved_db_path(self) -> Path:
        return (self.db_path or Path.cwd() / DEFAULT_DB_NAME).resolve()
