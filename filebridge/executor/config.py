"""Persistent executor configuration helpers."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any

from filebridge.contracts import DEFAULT_BRIDGE_HOST, DEFAULT_BRIDGE_PORT, EXECUTOR_CONFIG_SCHEMA_V1
from filebridge.executor.access_guard import canonicalize

CONFIG_PATH = Path.home() / ".filebridge" / "executor.json"
LOOPBACK_HOSTS = {"127.0.0.1", "localhost", "::1"}
DEFAULT_COMMAND_TIMEOUT_MS = 30_000
MAX_COMMAND_TIMEOUT_MS = 300_000


@dataclass(frozen=True)
class ExecutorConfig:
    host: str = DEFAULT_BRIDGE_HOST
    port: int = DEFAULT_BRIDGE_PORT
    allowed_paths: tuple[str, ...] = field(default_factory=tuple)
    unrestricted: bool = False
    working_dir: str | None = None
    default_command_timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS
    max_command_timeout_ms: int = MAX_COMMAND_TIMEOUT_MS

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["allowed_paths"] = list(self.allowed_paths)
        payload["schema_version"] = EXECUTOR_CONFIG_SCHEMA_V1
        return payload

    def with_overrides(self, **overrides: Any) -> "ExecutorConfig":
        """Return validated copy with non-None overrides applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        if not changes:
            return self
        return validate_executor_config(replace(self, **changes).to_dict())

    def ensure_servable(self) -> None:
        """Reject an empty allow-list unless unrestricted mode was opted into."""
        if not self.allowed_paths and not self.unrestricted:
            raise ValueError(
                "allowed_paths is empty; pass --allow PATH or opt into --unrestricted"
            )


def default_executor_config() -> ExecutorConfig:
    return ExecutorConfig()


def _positive_int(raw: dict[str, Any], key: str, default: int) -> int:
    value = raw.get(key, default)
    if isinstance(value, bool):
        raise ValueError(f"{key} must be a positive integer")
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{key} must be a positive integer") from exc
    if number <= 0:
        raise ValueError(f"{key} must be a positive integer")
    return number


def validate_executor_config(raw: dict[str, Any]) -> ExecutorConfig:
    """Validate raw config mapping and return normalized ExecutorConfig."""
    if not isinstance(raw, dict):
        raise ValueError("config must be object")
    schema_version = raw.get("schema_version", EXECUTOR_CONFIG_SCHEMA_V1)
    if schema_version != EXECUTOR_CONFIG_SCHEMA_V1:
        raise ValueError("unsupported config schema_version")

    host = str(raw.get("host", DEFAULT_BRIDGE_HOST)).strip() or DEFAULT_BRIDGE_HOST
    if host not in LOOPBACK_HOSTS:
        raise ValueError(f"host must be loopback, got: {host}")
    port = _positive_int(raw, "port", DEFAULT_BRIDGE_PORT)
    if port > 65535:
        raise ValueError("port must be <= 65535")

    allowed_raw = raw.get("allowed_paths", [])
    if allowed_raw is None:
        allowed_raw = []
    if not isinstance(allowed_raw, (list, tuple)):
        raise ValueError("allowed_paths must be list")
    allowed_paths: list[str] = []
    for entry in allowed_raw:
        text = str(entry).strip()
        if not text:
            continue
        resolved = str(canonicalize(text))
        if resolved not in allowed_paths:
            allowed_paths.append(resolved)

    working_dir_raw = raw.get("working_dir")
    working_dir = None
    if working_dir_raw is not None and str(working_dir_raw).strip():
        working_dir = str(canonicalize(str(working_dir_raw).strip()))

    unrestricted = raw.get("unrestricted", False)
    if not isinstance(unrestricted, bool):
        raise ValueError("unrestricted must be true or false")

    default_timeout = _positive_int(raw, "default_command_timeout_ms", DEFAULT_COMMAND_TIMEOUT_MS)
    max_timeout = _positive_int(raw, "max_command_timeout_ms", MAX_COMMAND_TIMEOUT_MS)
    if default_timeout > max_timeout:
        raise ValueError("default_command_timeout_ms exceeds max_command_timeout_ms")

    return ExecutorConfig(
        host=host,
        port=port,
        allowed_paths=tuple(allowed_paths),
        unrestricted=unrestricted,
        working_dir=working_dir,
        default_command_timeout_ms=default_timeout,
        max_command_timeout_ms=max_timeout,
    )


def load_executor_config(path: Path = CONFIG_PATH) -> ExecutorConfig:
    """Load config from disk or return defaults."""
    if not path.exists():
        return default_executor_config()
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        return default_executor_config()
    if not isinstance(raw, dict):
        return default_executor_config()
    try:
        return validate_executor_config(raw)
    except ValueError:
        return default_executor_config()


def save_executor_config(config: ExecutorConfig, path: Path = CONFIG_PATH) -> ExecutorConfig:
    """Validate and persist config to disk."""
    validated = validate_executor_config(config.to_dict())
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(validated.to_dict(), indent=2), encoding="utf-8")
    return validated
