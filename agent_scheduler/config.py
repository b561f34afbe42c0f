from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_DEFAULT_JOB_TIMEOUT_SECONDS = 600.0


def _env(name: str) -> str | None:
    value = os.environ.get(name)
    if not value:
        return None
    trimmed = value.strip()
    return trimmed or None


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", name, raw)
        return default
    return parsed if parsed > 0 else default


def _expand_home(value: str) -> Path:
    return Path(value).expanduser()


@dataclass(frozen=True)
class Settings:
    data_dir: Path
    workspace_dir: Path
    default_timezone: str | None = None
    job_timeout_seconds: float = _DEFAULT_JOB_TIMEOUT_SECONDS
    claude_model: str | None = None
    permission_mode: str | None = None
    push_gateway_base_url: str | None = None
    push_secret: str | None = None

    @property
    def store_path(self) -> Path:
        return self.data_dir / "scheduler" / "jobs.json"

    @classmethod
    def from_env(cls) -> Settings:
        workspace_dir = _expand_home(_env("SCHEDULER_WORKSPACE_DIR") or ".")
        data_dir = _expand_home(_env("SCHEDULER_DATA_DIR") or "data")
        return cls(
            data_dir=data_dir.resolve(),
            workspace_dir=workspace_dir.resolve(),
            default_timezone=_env("SCHEDULER_DEFAULT_TIMEZONE"),
            job_timeout_seconds=_env_float("SCHEDULER_JOB_TIMEOUT_SECONDS", _DEFAULT_JOB_TIMEOUT_SECONDS),
            claude_model=_env("SCHEDULER_CLAUDE_MODEL"),
            permission_mode=_env("SCHEDULER_PERMISSION_MODE"),
            push_gateway_base_url=_env("SCHEDULER_PUSH_GATEWAY_BASE_URL"),
            push_secret=_env("SCHEDULER_PUSH_SECRET"),
        )
