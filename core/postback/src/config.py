"""
Postback receiver configuration (from env + policy YAML).

Parsed once at startup into a ``Settings`` object that is handed to the
Access Guard and the app factory.  Nothing reads the environment at
request time.
"""

from __future__ import annotations

import os
import warnings
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Policy precedence (override, NOT merge):
#   1. If POSTBACK_ALLOWLIST env var is set and non-empty → use it for IPs.
#   2. Else load allowed_ips from the policy YAML.
#   3. If neither → empty allowlist (secure mode then blocks every caller).
# ---------------------------------------------------------------------------

DEFAULT_POLICY_PATH = "shared/policy/v1/postback_policy.yaml"

_DEFAULTS: dict[str, Any] = {
    "allowed_ips": [],
    "conversions_log": "conversions.log",
    "security_log": "security.log",
}


class Settings(BaseModel):
    mode: Literal["secure", "open"] = "open"
    host: str = "0.0.0.0"
    port: int = Field(default=3000, ge=0, le=65535)
    allowed_ips: frozenset[str] = frozenset()
    conversions_log: Path = Path("conversions.log")
    security_log: Path = Path("security.log")

    model_config = {"frozen": True, "extra": "forbid"}

    @property
    def secure(self) -> bool:
        return self.mode == "secure"


def load_policy(policy_path: Optional[Path] = None) -> dict[str, Any]:
    """
    Load postback_policy.yaml.  Returns a dict with defaults if the file
    doesn't exist or can't be parsed.
    """
    if policy_path is None:
        policy_path = Path(os.getenv("POSTBACK_POLICY_PATH", DEFAULT_POLICY_PATH))
    defaults = dict(_DEFAULTS)
    if not policy_path.exists():
        return defaults
    try:
        with open(policy_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            warnings.warn(f"Policy YAML ({policy_path}) is not a mapping; using defaults")
            return defaults
        for key, val in defaults.items():
            data.setdefault(key, val)
        return data
    except (OSError, yaml.YAMLError) as exc:
        warnings.warn(f"Failed to parse policy YAML ({policy_path}): {exc}")
        return defaults


def _resolve_mode(env: dict[str, str]) -> str:
    mode = env.get("POSTBACK_MODE", "").strip().lower()
    if mode:
        return mode
    # No explicit mode: production deploys are locked down.
    return "secure" if env.get("APP_ENV", "development") == "production" else "open"


def load_settings(env: Optional[dict[str, str]] = None) -> Settings:
    """Build ``Settings`` from the process environment and the policy YAML."""
    if env is None:
        env = dict(os.environ)

    policy = load_policy(Path(env.get("POSTBACK_POLICY_PATH", DEFAULT_POLICY_PATH)))

    env_allowlist = env.get("POSTBACK_ALLOWLIST", "").strip()
    if env_allowlist:
        allowed = {ip.strip() for ip in env_allowlist.split(",") if ip.strip()}
    else:
        allowed = {str(ip).strip() for ip in policy.get("allowed_ips") or []}

    return Settings(
        mode=_resolve_mode(env),
        host=env.get("HOST", "0.0.0.0"),
        port=int(env.get("PORT", "3000")),
        allowed_ips=frozenset(allowed),
        conversions_log=Path(env.get("CONVERSIONS_LOG_PATH", policy["conversions_log"])),
        security_log=Path(env.get("SECURITY_LOG_PATH", policy["security_log"])),
    )
