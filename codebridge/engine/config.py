"""Bridge configuration.

All settings have sensible defaults. Override via BRIDGE_* env vars or a
YAML file with a top-level ``bridge:`` section:

    bridge:
      port: 3001
      workspace_root: /var/tmp/codebridge
      agent_cli_path: claude
      agent_cli_args: ["--print"]
      execution_timeout_seconds: 300
      skip_dirs: [.git, node_modules]
      auth_tokens:
        dev-token: alice
"""
from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}

DEFAULT_SKIP_DIRS: tuple[str, ...] = (
    ".git", ".hg", ".svn", "node_modules", "__pycache__",
    ".venv", "venv", ".mypy_cache", ".pytest_cache",
)


def _default_workspace_root() -> str:
    return str(Path(tempfile.gettempdir()) / "codebridge" / "workspaces")


def _default_store_root() -> str:
    return str(Path.home() / ".codebridge" / "store")


def _default_audit_dir() -> str:
    return str(Path.home() / ".codebridge" / "logs")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if raw is None:
        return list(default)
    return [part.strip() for part in raw.split(",") if part.strip()]


def _parse_token_map(raw: str) -> dict[str, str]:
    """Parse ``token:user,token2:user2`` into a mapping."""
    tokens: dict[str, str] = {}
    for pair in raw.split(","):
        pair = pair.strip()
        if not pair or ":" not in pair:
            continue
        token, user = pair.split(":", 1)
        if token.strip() and user.strip():
            tokens[token.strip()] = user.strip()
    return tokens


@dataclass
class BridgeConfig:
    """Execution bridge configuration."""

    # Server
    host: str = "127.0.0.1"
    port: int = 3001

    # Filesystem
    workspace_root: str = field(default_factory=_default_workspace_root)
    store_root: str = field(default_factory=_default_store_root)
    skip_dirs: list[str] = field(default_factory=lambda: list(DEFAULT_SKIP_DIRS))
    # Files above this size are not uploaded during reconciliation.
    max_file_size: int = 10 * 1024 * 1024

    # Agent CLI. The sanitized command is written to the child's stdin.
    agent_cli_path: str = "claude"
    agent_cli_args: list[str] = field(default_factory=lambda: ["--print"])

    # Command validation
    max_command_length: int = 5000
    extra_deny_patterns: list[str] = field(default_factory=list)

    # Execution
    # Seconds between SIGTERM and SIGKILL when stopping a child.
    stop_grace_seconds: float = 3.0
    # Upper bound enforced by the transport. 0 disables the timeout.
    execution_timeout_seconds: float = 0.0
    result_cache_size: int = 100

    # Auth
    auth_enabled: bool = False
    auth_tokens: dict[str, str] = field(default_factory=dict)

    # Audit
    audit_enabled: bool = True
    audit_log_dir: str = field(default_factory=_default_audit_dir)
    audit_memory_size: int = 1000

    # Rate limiting for execute requests, per user
    rate_limit_window_seconds: float = 60.0
    rate_limit_max_executions: int = 5

    # Logging
    log_level: str = "INFO"

    # Reap orphaned agent CLI processes at startup
    cleanup_stale_processes: bool = True

    @property
    def agent_argv(self) -> list[str]:
        return [self.agent_cli_path, *self.agent_cli_args]

    @classmethod
    def from_env(cls) -> BridgeConfig:
        """Load configuration from BRIDGE_* environment variables."""
        bridge_vars = sorted(k for k in os.environ if k.startswith("BRIDGE_"))
        if bridge_vars:
            # Values are not logged; BRIDGE_AUTH_TOKENS holds secrets.
            logger.info("BridgeConfig.from_env: overrides set: %s", ", ".join(bridge_vars))
        else:
            logger.debug("BridgeConfig.from_env: no BRIDGE_* env vars set, using defaults")

        defaults = cls()
        config = cls(
            host=os.getenv("BRIDGE_HOST", defaults.host),
            port=int(os.getenv("BRIDGE_PORT", str(defaults.port))),
            workspace_root=os.getenv("BRIDGE_WORKSPACE_ROOT", defaults.workspace_root),
            store_root=os.getenv("BRIDGE_STORE_ROOT", defaults.store_root),
            skip_dirs=_env_list("BRIDGE_SKIP_DIRS", defaults.skip_dirs),
            max_file_size=int(os.getenv(
                "BRIDGE_MAX_FILE_SIZE", str(defaults.max_file_size)
            )),
            agent_cli_path=os.getenv(
                "BRIDGE_AGENT_CLI_PATH",
                os.getenv("CLAUDE_CLI_PATH", defaults.agent_cli_path),
            ),
            agent_cli_args=_env_list("BRIDGE_AGENT_CLI_ARGS", defaults.agent_cli_args),
            max_command_length=int(os.getenv(
                "BRIDGE_MAX_COMMAND_LENGTH", str(defaults.max_command_length)
            )),
            stop_grace_seconds=float(os.getenv(
                "BRIDGE_STOP_GRACE_SECONDS", str(defaults.stop_grace_seconds)
            )),
            execution_timeout_seconds=float(os.getenv(
                "BRIDGE_EXECUTION_TIMEOUT", str(defaults.execution_timeout_seconds)
            )),
            result_cache_size=int(os.getenv(
                "BRIDGE_RESULT_CACHE_SIZE", str(defaults.result_cache_size)
            )),
            auth_enabled=_env_bool("BRIDGE_AUTH_ENABLED", defaults.auth_enabled),
            auth_tokens=_parse_token_map(os.getenv("BRIDGE_AUTH_TOKENS", "")),
            audit_enabled=_env_bool("BRIDGE_AUDIT_ENABLED", defaults.audit_enabled),
            audit_log_dir=os.getenv("BRIDGE_AUDIT_LOG_DIR", defaults.audit_log_dir),
            rate_limit_window_seconds=float(os.getenv(
                "BRIDGE_RATE_LIMIT_WINDOW", str(defaults.rate_limit_window_seconds)
            )),
            rate_limit_max_executions=int(os.getenv(
                "BRIDGE_RATE_LIMIT_MAX", str(defaults.rate_limit_max_executions)
            )),
            log_level=os.getenv("BRIDGE_LOG_LEVEL", defaults.log_level),
            cleanup_stale_processes=_env_bool(
                "BRIDGE_CLEANUP_STALE_PROCESSES", defaults.cleanup_stale_processes
            ),
        )
        logger.info(
            "BridgeConfig.from_env: host=%s port=%s workspace=%s agent=%s auth=%s",
            config.host, config.port, config.workspace_root,
            config.agent_cli_path, config.auth_enabled,
        )
        return config

    def apply_overrides(self, overrides: dict[str, Any]) -> BridgeConfig:
        """Set known fields from a mapping; unknown keys are logged and ignored."""
        known = {f.name: f for f in fields(self)}
        for key, value in overrides.items():
            if key not in known:
                logger.warning("Ignoring unknown bridge config key: %s", key)
                continue
            current = getattr(self, key)
            if isinstance(current, bool):
                value = value if isinstance(value, bool) else str(value).lower() in _TRUTHY
            elif isinstance(current, int):
                value = int(value)
            elif isinstance(current, float):
                value = float(value)
            elif isinstance(current, list):
                if isinstance(value, str):
                    value = [v.strip() for v in value.split(",") if v.strip()]
                else:
                    value = [str(v) for v in (value or [])]
            elif isinstance(current, dict):
                value = {str(k): str(v) for k, v in (value or {}).items()}
            elif value is not None:
                value = str(value)
            setattr(self, key, value)
        return self


def load_yaml_config(path: str | Path, base: BridgeConfig | None = None) -> BridgeConfig:
    """Overlay the ``bridge:`` section of a YAML file onto ``base``.

    Raises FileNotFoundError if the file is missing and ValueError if it
    does not contain a mapping.
    """
    path = Path(path)
    with path.open(encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    section = raw.get("bridge", raw)
    if not isinstance(section, dict):
        raise ValueError(f"'bridge' section in {path} must be a mapping")
    config = base if base is not None else BridgeConfig.from_env()
    config.apply_overrides(section)
    logger.info("Loaded bridge config from %s (%d keys)", path, len(section))
    return config
