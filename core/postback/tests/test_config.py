"""Tests for settings loading (env + policy YAML)."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from core.postback.src.config import load_policy, load_settings


@pytest.fixture
def policy_file(tmp_path: Path) -> Path:
    path = tmp_path / "postback_policy.yaml"
    path.write_text(
        "allowed_ips:\n"
        "  - 52.1.2.3\n"
        "  - 54.5.6.7\n"
        "security_log: blocked.log\n",
        encoding="utf-8",
    )
    return path


class TestLoadPolicy:

    def test_missing_file_gives_defaults(self, tmp_path: Path):
        policy = load_policy(tmp_path / "absent.yaml")
        assert policy["allowed_ips"] == []
        assert policy["conversions_log"] == "conversions.log"

    def test_defaults_fill_missing_keys(self, policy_file: Path):
        policy = load_policy(policy_file)
        assert policy["allowed_ips"] == ["52.1.2.3", "54.5.6.7"]
        assert policy["security_log"] == "blocked.log"
        assert policy["conversions_log"] == "conversions.log"

    def test_bad_yaml_warns_and_defaults(self, tmp_path: Path):
        path = tmp_path / "broken.yaml"
        path.write_text("allowed_ips: [unclosed\n", encoding="utf-8")
        with pytest.warns(UserWarning, match="Failed to parse policy YAML"):
            policy = load_policy(path)
        assert policy["allowed_ips"] == []


class TestLoadSettings:

    def test_defaults(self, tmp_path: Path):
        settings = load_settings({"POSTBACK_POLICY_PATH": str(tmp_path / "absent.yaml")})
        assert settings.mode == "open"
        assert settings.port == 3000
        assert settings.host == "0.0.0.0"
        assert settings.allowed_ips == frozenset()

    def test_yaml_allowlist(self, policy_file: Path):
        settings = load_settings({"POSTBACK_POLICY_PATH": str(policy_file)})
        assert settings.allowed_ips == frozenset({"52.1.2.3", "54.5.6.7"})
        assert settings.security_log == Path("blocked.log")

    def test_env_allowlist_overrides_yaml(self, policy_file: Path):
        settings = load_settings({
            "POSTBACK_POLICY_PATH": str(policy_file),
            "POSTBACK_ALLOWLIST": " 10.0.0.1, 10.0.0.2 ,",
        })
        assert settings.allowed_ips == frozenset({"10.0.0.1", "10.0.0.2"})

    def test_production_defaults_to_secure(self, tmp_path: Path):
        settings = load_settings({
            "POSTBACK_POLICY_PATH": str(tmp_path / "absent.yaml"),
            "APP_ENV": "production",
        })
        assert settings.mode == "secure"
        assert settings.secure is True

    def test_explicit_mode_wins(self, tmp_path: Path):
        settings = load_settings({
            "POSTBACK_POLICY_PATH": str(tmp_path / "absent.yaml"),
            "APP_ENV": "production",
            "POSTBACK_MODE": "OPEN",
        })
        assert settings.mode == "open"

    def test_port_and_log_paths_from_env(self, policy_file: Path):
        settings = load_settings({
            "POSTBACK_POLICY_PATH": str(policy_file),
            "PORT": "8080",
            "CONVERSIONS_LOG_PATH": "/var/log/postback/conversions.log",
        })
        assert settings.port == 8080
        assert settings.conversions_log == Path("/var/log/postback/conversions.log")

    def test_invalid_mode_rejected(self, tmp_path: Path):
        with pytest.raises(ValidationError):
            load_settings({
                "POSTBACK_POLICY_PATH": str(tmp_path / "absent.yaml"),
                "POSTBACK_MODE": "strict",
            })

    def test_settings_are_frozen(self, tmp_path: Path):
        settings = load_settings({"POSTBACK_POLICY_PATH": str(tmp_path / "absent.yaml")})
        with pytest.raises(ValidationError):
            settings.mode = "secure"
