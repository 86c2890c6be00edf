"""Runtime settings read from the environment.

Environment variables:

- ``RFV_DATABASE_URL``: SQLAlchemy URL of the customer store; unset means
  runs are not persisted
- ``RFV_BATCH_SIZE``: records per upsert transaction (default 100)
- ``RFV_LOG_LEVEL``: log level name (default INFO)
- ``RFV_LOG_JSON``: render logs as JSON lines (default false)
- ``RFV_UPLOADED_BY``: uploader identity written to the upload log (default ``cli``)
- ``RFV_TRACE``: export OpenTelemetry spans and counters to stderr (default false)

Command line flags take precedence over these values.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from customer_rfv.persistence.gateway import DEFAULT_BATCH_SIZE

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_flag(env: Mapping[str, str], name: str) -> bool:
    return env.get(name, "").strip().lower() in _TRUE_VALUES


@dataclass(frozen=True)
class Settings:
    """Resolved runtime settings."""

    database_url: Optional[str] = None
    batch_size: int = DEFAULT_BATCH_SIZE
    log_level: str = "INFO"
    log_json: bool = False
    uploaded_by: str = "cli"
    trace: bool = False

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``env`` (defaults to ``os.environ``)."""
        env = os.environ if env is None else env
        raw_batch_size = env.get("RFV_BATCH_SIZE", str(DEFAULT_BATCH_SIZE))
        try:
            batch_size = int(raw_batch_size)
        except ValueError:
            raise ValueError(f"RFV_BATCH_SIZE must be an integer, got {raw_batch_size!r}")
        return cls(
            database_url=env.get("RFV_DATABASE_URL") or None,
            batch_size=batch_size,
            log_level=env.get("RFV_LOG_LEVEL", "INFO"),
            log_json=_env_flag(env, "RFV_LOG_JSON"),
            uploaded_by=env.get("RFV_UPLOADED_BY") or "cli",
            trace=_env_flag(env, "RFV_TRACE"),
        )
