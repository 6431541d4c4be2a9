"""Tests for marathon.core.config."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from marathon.core.config import (
    CleanupMode,
    JobConfig,
    RetryPolicyConfig,
    env_overrides,
    load_job_config,
    read_config_file,
)
from marathon.core.exceptions import ConfigurationError
from marathon.execution.retry import POLICY_PRESETS, RetryPolicy


class TestJobConfig:
    """Tests for the JobConfig model."""

    def test_defaults(self):
        config = JobConfig(job_name="demo")
        assert config.cleanup_mode is CleanupMode.KEEP
        assert config.inglob == "*"
        assert config.reports_path == config.logspace / "reports"
        assert config.retry_policy == RetryPolicy(3, 60.0, 3600.0, 2.0)

    def test_frozen(self):
        config = JobConfig(job_name="demo")
        with pytest.raises(ValidationError):
            config.job_name = "other"

    @pytest.mark.parametrize("name", ["", "a/b", ".", ".."])
    def test_job_name_must_be_path_component(self, name: str):
        with pytest.raises(ValidationError):
            JobConfig(job_name=name)

    def test_encrypt_requires_identities(self):
        with pytest.raises(ValidationError, match="sign_key"):
            JobConfig(job_name="demo", encrypt=True)

    def test_encrypt_with_identities(self):
        config = JobConfig(
            job_name="demo", encrypt=True, crypto={"sign_key": "me", "recipient": "you"},
        )
        assert config.encrypt

    def test_unknown_cleanup_mode(self):
        with pytest.raises(ValidationError):
            JobConfig(job_name="demo", cleanup_mode="sometimes")


class TestRetryPolicyConfig:
    """Tests for presets and explicit retry values."""

    @pytest.mark.parametrize("profile", ["critical", "normal", "batch"])
    def test_profile_supplies_values(self, profile: str):
        policy = RetryPolicyConfig(profile=profile).to_policy()
        assert policy == POLICY_PRESETS[profile]

    def test_explicit_values_override_profile(self):
        policy = RetryPolicyConfig(profile="critical", max_attempts=2).to_policy()
        assert policy.max_attempts == 2
        assert policy.initial_delay == POLICY_PRESETS["critical"].initial_delay

    def test_backoff_factor_below_one_rejected(self):
        with pytest.raises(ValidationError):
            RetryPolicyConfig(backoff_factor=0.5)


# ─── Loading ───────────────────────────────────────────────────────────


class TestEnvOverrides:
    """Tests for MARATHON_* environment variables."""

    def test_nested_paths(self):
        overrides = env_overrides({
            "MARATHON_INPUT": "remote:in",
            "MARATHON_MAX_WORKERS": "8",
            "MARATHON_RETRY_PROFILE": "batch",
            "UNRELATED": "x",
        })
        assert overrides == {
            "input": "remote:in",
            "fanout": {"max_workers": "8"},
            "retry": {"profile": "batch"},
        }

    @pytest.mark.parametrize(("raw", "expected"), [("yes", True), ("NO", False), ("1", True)])
    def test_flags(self, raw: str, expected: bool):
        assert env_overrides({"MARATHON_ENCRYPT": raw}) == {"encrypt": expected}

    def test_bad_flag(self):
        with pytest.raises(ConfigurationError):
            env_overrides({"MARATHON_SPOT_CHECK": "maybe"})


class TestLoadJobConfig:
    """Tests for load_job_config() precedence and errors."""

    def test_file_then_env(self, tmp_path: Path):
        config_file = tmp_path / "job.yaml"
        config_file.write_text(
            "input: remote:in\n"
            "output: remote:out\n"
            "fanout:\n"
            "  command: gzip -k\n"
            "  max_workers: 2\n"
        )
        config = load_job_config(
            "demo",
            "all",
            config_file=config_file,
            environ={"MARATHON_MAX_WORKERS": "6", "MARATHON_OUTPUT": "remote:elsewhere"},
        )
        assert config.cleanup_mode is CleanupMode.ALL
        assert config.input == "remote:in"
        assert config.output == "remote:elsewhere"
        assert config.fanout.command == "gzip -k"
        assert config.fanout.max_workers == 6

    def test_command_line_wins_over_file(self, tmp_path: Path):
        config_file = tmp_path / "job.yaml"
        config_file.write_text("job_name: from-file\ncleanup_mode: keep\n")
        config = load_job_config("from-cli", CleanupMode.OUTPUT, config_file=config_file, environ={})
        assert config.job_name == "from-cli"
        assert config.cleanup_mode is CleanupMode.OUTPUT

    def test_validation_error_becomes_configuration_error(self):
        with pytest.raises(ConfigurationError):
            load_job_config("demo", "keep", environ={"MARATHON_MAX_WORKERS": "zero"})

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigurationError, match="cannot read"):
            read_config_file(tmp_path / "absent.yaml")

    def test_invalid_yaml(self, tmp_path: Path):
        bad = tmp_path / "bad.yaml"
        bad.write_text("input: [unclosed\n")
        with pytest.raises(ConfigurationError, match="invalid YAML"):
            read_config_file(bad)

    def test_non_mapping_yaml(self, tmp_path: Path):
        bad = tmp_path / "list.yaml"
        bad.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            read_config_file(bad)
