"""Defaults and environment-driven settings."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional


DONATE_MESSAGE_PREFIX = "Assign accumulated Scavenger rights to: "
DEFAULT_UA = "ScavengerConsolidator/0.3"
DEFAULT_API_URL = "https://scavenger.prod.gd.midnighttge.io"
DEFAULT_LAUNCHER_URL = "http://localhost:3002"

REQUEST_TIMEOUT = 30          # seconds per donate_to call
INTER_REQUEST_DELAY = 0.5     # seconds between consecutive batch calls

LAUNCHER_LAUNCH_TIMEOUT = 10
LAUNCHER_POLL_INTERVAL = 1.0
LAUNCHER_SINGLE_MAX_POLLS = 60
LAUNCHER_BATCH_MAX_POLLS = 300

DEFAULT_DATA_ROOT = Path.home() / "NightConsolidation"

ENV_PREFIX = "SCAVENGER_"


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from None


@dataclass
class Settings:
    api_url: str = DEFAULT_API_URL
    user_agent: str = DEFAULT_UA
    request_timeout: float = REQUEST_TIMEOUT
    inter_request_delay: float = INTER_REQUEST_DELAY
    launcher_url: str = DEFAULT_LAUNCHER_URL
    data_root: Path = field(default_factory=lambda: DEFAULT_DATA_ROOT)
    result_file: Optional[Path] = None

    @property
    def log_root(self) -> Path:
        return self.data_root

    @property
    def records_path(self) -> Path:
        return self.data_root / "records" / "consolidations.jsonl"

    @property
    def sessions_dir(self) -> Path:
        return self.data_root / "records" / "sessions"

    @property
    def wallet_path(self) -> Path:
        return self.data_root / "wallet.json"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``SCAVENGER_*`` variables, falling back to defaults."""
        env = os.environ if env is None else env
        settings = cls()
        settings.api_url = env.get(ENV_PREFIX + "API_URL") or settings.api_url
        settings.user_agent = env.get(ENV_PREFIX + "USER_AGENT") or settings.user_agent
        settings.launcher_url = env.get(ENV_PREFIX + "LAUNCHER_URL") or settings.launcher_url
        settings.request_timeout = _env_float(env, "REQUEST_TIMEOUT", settings.request_timeout)
        settings.inter_request_delay = _env_float(env, "REQUEST_DELAY", settings.inter_request_delay)
        data_root = env.get(ENV_PREFIX + "DATA_ROOT")
        if data_root:
            settings.data_root = Path(data_root).expanduser()
        result_file = env.get(ENV_PREFIX + "RESULT_FILE")
        if result_file:
            settings.result_file = Path(result_file).expanduser()
        return settings
