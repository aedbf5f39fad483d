"""
Engine configuration.

Built once at process start (explicitly, or from CAPTABLE_IO_* environment
variables via EngineConfig.from_env) and passed to the collaborators that
need it. Nothing in the engine reads the environment after that.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

from captable_io.errors import ConfigError

ENV_PREFIX = "CAPTABLE_IO_"
DEFAULT_BATCH_SIZE = 100
DEFAULT_MAX_FILE_BYTES = 10 * 1024 * 1024


@dataclass(frozen=True)
class EngineConfig:
    batch_size: int = DEFAULT_BATCH_SIZE
    rest_url: Optional[str] = None
    rest_api_key: Optional[str] = None
    request_timeout: float = 30.0
    data_dir: Optional[Path] = None
    template_path: Optional[Path] = None
    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ConfigError(f"batch_size must be at least 1, got {self.batch_size}")
        if self.request_timeout <= 0:
            raise ConfigError(f"request_timeout must be positive, got {self.request_timeout}")
        if self.max_file_bytes < 1:
            raise ConfigError(f"max_file_bytes must be positive, got {self.max_file_bytes}")
        if self.rest_url and not self.rest_api_key:
            raise ConfigError(f"{ENV_PREFIX}REST_API_KEY is required when {ENV_PREFIX}REST_URL is set")

    def with_overrides(self, **changes) -> "EngineConfig":
        return replace(self, **{key: value for key, value in changes.items() if value is not None})

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            return value.strip() if value and value.strip() else None

        def as_int(name: str, default: int) -> int:
            raw = get(name)
            if raw is None:
                return default
            try:
                return int(raw)
            except ValueError:
                raise ConfigError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from None

        def as_float(name: str, default: float) -> float:
            raw = get(name)
            if raw is None:
                return default
            try:
                return float(raw)
            except ValueError:
                raise ConfigError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from None

        data_dir = get("DATA_DIR")
        template_path = get("TEMPLATE_PATH")
        return cls(
            batch_size=as_int("BATCH_SIZE", DEFAULT_BATCH_SIZE),
            rest_url=get("REST_URL"),
            rest_api_key=get("REST_API_KEY"),
            request_timeout=as_float("REQUEST_TIMEOUT", 30.0),
            data_dir=Path(data_dir) if data_dir else None,
            template_path=Path(template_path) if template_path else None,
            max_file_bytes=as_int("MAX_FILE_BYTES", DEFAULT_MAX_FILE_BYTES),
        )
