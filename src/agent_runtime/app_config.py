from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from agent_runtime.agent_config import DEFAULT_MAX_ITERATIONS, DEFAULT_MAX_NESTING_DEPTH, DEFAULT_MODEL
from agent_runtime.checkpoint import DEFAULT_APPROVAL_TIMEOUT_MS, approval_timeout_from_env
from agent_runtime.errors import ConfigError
from agent_runtime.retry import RetryConfig
from agent_runtime.tool import CONTROL_ROLE, IMPL_ROLE


@dataclass
class RuntimeEnv:
    provider_api_key: str
    provider_env_var: str
    max_session_tokens: int | None
    max_session_cost: float | None
    approval_timeout_ms: int | None


@dataclass
class AppConfig:
    provider_name: str
    model: str
    max_tokens: int
    role: str
    role_id: str | None
    chain_id: str | None
    task_id: str | None
    workspace_root: str
    max_iterations: int
    max_nesting_depth: int
    dry_run: bool
    max_session_tokens: int | None
    max_session_cost: float | None
    require_approval: bool
    auto_approve: bool
    approval_timeout_ms: int
    retry: RetryConfig
    audit_enabled: bool
    session_retention_days: int
    resume_session_id: str | None
    roles: dict[str, list[str]]
    log_level: str
    log_consumers: list | None


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value).strip() or None


def _positive_int(value: object) -> int | None:
    if value is None:
        return None
    try:
        parsed = int(str(value).strip())
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def _positive_float(value: object) -> float | None:
    if value is None:
        return None
    try:
        parsed = float(str(value).strip())
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def _parse_retry(raw: object) -> RetryConfig:
    if raw is None:
        return RetryConfig()
    if not isinstance(raw, dict):
        raise ConfigError("Retry must be an object")
    defaults = RetryConfig()
    return RetryConfig(
        max_retries=int(raw.get("MaxRetries", defaults.max_retries)),
        base_delay_ms=int(raw.get("BaseDelayMs", defaults.base_delay_ms)),
        max_delay_ms=int(raw.get("MaxDelayMs", defaults.max_delay_ms)),
        enabled=_to_bool(raw.get("Enabled"), default=defaults.enabled),
    )


def parse_app_config(config: dict) -> AppConfig:
    role = str(config.get("Role", CONTROL_ROLE)).strip().lower()
    role_id = _optional_str(config.get("RoleId"))
    if role not in (CONTROL_ROLE, IMPL_ROLE) and role_id is None:
        raise ConfigError(f"Unknown role {role!r}. Supported: 'control', 'impl' (or set RoleId)")

    try:
        return AppConfig(
            provider_name=str(config.get("Provider", "anthropic")).strip().lower(),
            model=config.get("Model", DEFAULT_MODEL),
            max_tokens=int(config.get("MaxTokens", 8192)),
            role=role,
            role_id=role_id,
            chain_id=_optional_str(config.get("ChainId")),
            task_id=_optional_str(config.get("TaskId")),
            workspace_root=str(config.get("WorkspaceRoot") or Path.cwd()),
            max_iterations=int(config.get("MaxIterations", DEFAULT_MAX_ITERATIONS)),
            max_nesting_depth=int(config.get("MaxNestingDepth", DEFAULT_MAX_NESTING_DEPTH)),
            dry_run=_to_bool(config.get("DryRun", False), default=False),
            max_session_tokens=_positive_int(config.get("MaxSessionTokens")),
            max_session_cost=_positive_float(config.get("MaxSessionCost")),
            require_approval=_to_bool(config.get("RequireApproval", False), default=False),
            auto_approve=_to_bool(config.get("AutoApprove", False), default=False),
            approval_timeout_ms=int(config.get("ApprovalTimeoutMs", DEFAULT_APPROVAL_TIMEOUT_MS)),
            retry=_parse_retry(config.get("Retry")),
            audit_enabled=_to_bool(config.get("AuditEnabled", True), default=True),
            session_retention_days=int(config.get("SessionRetentionDays", 30)),
            resume_session_id=_optional_str(config.get("ResumeSessionId")),
            roles={str(k): list(v) for k, v in (config.get("Roles") or {}).items()},
            log_level=config.get("LogLevel", "INFO"),
            log_consumers=config.get("LogConsumers"),
        )
    except (TypeError, ValueError) as ex:
        raise ConfigError(f"Invalid configuration: {ex}") from ex


def resolve_runtime_env(provider_name: str = "anthropic") -> RuntimeEnv:
    approval_raw = os.environ.get("AGENT_RUNTIME_APPROVAL_TIMEOUT")
    return RuntimeEnv(
        provider_api_key=os.environ.get("ANTHROPIC_API_KEY", ""),
        provider_env_var="ANTHROPIC_API_KEY",
        max_session_tokens=_positive_int(os.environ.get("AGENT_RUNTIME_MAX_TOKENS")),
        max_session_cost=_positive_float(os.environ.get("AGENT_RUNTIME_MAX_COST")),
        approval_timeout_ms=approval_timeout_from_env(approval_raw, default=0) or None,
    )
