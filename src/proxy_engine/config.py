"""
Engine configuration.

Read from an optional TOML file, then overridden by environment variables:

```toml
[engine]
db_path = "proxy-engine.db"
max_call_depth = 32
max_steps = 10000
trace = false
```
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Union

DEFAULT_DB_PATH = "proxy-engine.db"
DEFAULT_MAX_CALL_DEPTH = 32
DEFAULT_MAX_STEPS = 10_000


@dataclass
class EngineConfig:
    """Settings shared by the engine, CLI and HTTP surfaces."""

    db_path: str = DEFAULT_DB_PATH
    max_call_depth: int = DEFAULT_MAX_CALL_DEPTH  # bounds nested invocations per transaction
    max_steps: int = DEFAULT_MAX_STEPS  # bounds nodes executed per procedure body
    trace: bool = False


def _env_flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(path: Union[str, Path, None] = None) -> EngineConfig:
    """Load configuration from TOML (if present) and the environment.

    Environment overrides:
        PROXY_ENGINE_DB, PROXY_ENGINE_MAX_DEPTH, PROXY_ENGINE_MAX_STEPS,
        PROXY_ENGINE_TRACE
    """
    config = EngineConfig()

    if path is not None:
        path = Path(path)
        if path.exists():
            with open(path, "rb") as f:
                data = tomllib.load(f)
            section = data.get("engine", {})
            config.db_path = str(section.get("db_path", config.db_path))
            config.max_call_depth = int(section.get("max_call_depth", config.max_call_depth))
            config.max_steps = int(section.get("max_steps", config.max_steps))
            config.trace = bool(section.get("trace", config.trace))

    env_db = os.environ.get("PROXY_ENGINE_DB")
    if env_db:
        config.db_path = env_db
    env_depth = os.environ.get("PROXY_ENGINE_MAX_DEPTH")
    if env_depth:
        config.max_call_depth = int(env_depth)
    env_steps = os.environ.get("PROXY_ENGINE_MAX_STEPS")
    if env_steps:
        config.max_steps = int(env_steps)
    env_trace = os.environ.get("PROXY_ENGINE_TRACE")
    if env_trace:
        config.trace = _env_flag(env_trace)

    if config.max_call_depth < 1:
        raise ValueError(f"max_call_depth must be at least 1, got {config.max_call_depth}")
    return config
