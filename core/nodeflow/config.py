"""Shared nodeflow configuration utilities.

Centralises reading of ~/.nodeflow/configuration.json and the process
environment so the HTTP server, the CLI and the caller worker share one
implementation of the engine limits and store credentials.
"""

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

NODEFLOW_CONFIG_FILE = Path.home() / ".nodeflow" / "configuration.json"

DEFAULT_MAX_EXECUTIONS_PER_NODE = 10
DEFAULT_MAX_TOTAL_EXECUTIONS = 100
DEFAULT_HISTORY_LIMIT = 50
DEFAULT_LIVEBLOCKS_BASE_URL = "https://api.liveblocks.io/v2"


def get_nodeflow_config(path: Path | None = None) -> dict[str, Any]:
    """Load nodeflow configuration from ~/.nodeflow/configuration.json."""
    config_file = path or NODEFLOW_CONFIG_FILE
    if not config_file.exists():
        return {}
    try:
        with open(config_file, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_liveblocks_secret(path: Path | None = None) -> str | None:
    """Return the backend secret used to authenticate against the document store.

    The ``store.secret_env_var`` setting of the config file at ``path`` names
    the environment variable holding it.
    """
    store = get_nodeflow_config(path).get("store", {})
    secret_env_var = store.get("secret_env_var", "LIVEBLOCKS_SECRET_KEY")
    return os.environ.get(secret_env_var) or None


def get_port() -> int:
    """Return the HTTP port from PORT, falling back to 3001."""
    try:
        return int(os.environ.get("PORT", "3001"))
    except ValueError:
        return 3001


# ---------------------------------------------------------------------------
# EngineConfig – shared by server, CLI and worker
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Execution engine configuration loaded from ~/.nodeflow/configuration.json."""

    max_executions_per_node: int = DEFAULT_MAX_EXECUTIONS_PER_NODE
    max_total_executions: int = DEFAULT_MAX_TOTAL_EXECUTIONS
    caller_poll_interval: float = 0.5  # seconds between shared-state polls
    caller_timeout: float = 60.0  # max wait for a caller-mode node
    script_timeout: float = 30.0  # wall-clock limit per script invocation
    feedback_delay: float = 0.0  # pause after marking a node as executing
    history_limit: int = DEFAULT_HISTORY_LIMIT
    liveblocks_secret: str | None = field(default_factory=get_liveblocks_secret)
    liveblocks_base_url: str = DEFAULT_LIVEBLOCKS_BASE_URL
    host: str = "0.0.0.0"
    port: int = field(default_factory=get_port)

    @classmethod
    def load(cls, path: Path | None = None, **overrides: Any) -> "EngineConfig":
        """Build a config from the ``engine`` section of the config file.

        Unknown keys are ignored. Keyword overrides win over file values;
        ``None`` overrides are skipped so CLI defaults don't mask the file.
        """
        section = get_nodeflow_config(path).get("engine", {})
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in section.items() if k in known}
        values.update({k: v for k, v in overrides.items() if k in known and v is not None})
        if "liveblocks_secret" not in values:
            values["liveblocks_secret"] = get_liveblocks_secret(path)
        return cls(**values)
