"""
Tests for configuration loading.
"""

import os
from pathlib import Path

import pytest

from aicli.config import AppConfig, ConfigError, LoopConfig, SandboxConfig
from aicli.sandbox import DEFAULT_ENV_ALLOWLIST

CONFIG_KEYS = [
    "API_BASE_URL", "API_VERSION", "MODEL", "API_KEY",
    "LLM_TEMPERATURE", "LLM_MAX_TOKENS", "LLM_TIMEOUT",
    "AICLI_SANDBOX_ROOT", "AICLI_COMMAND_TIMEOUT", "AICLI_MAX_OUTPUT_BYTES", "AICLI_ENV_ALLOWLIST",
    "AICLI_MAX_TURNS", "AICLI_TRANSPORT_RETRIES", "AICLI_RETRY_BACKOFF", "AICLI_RETRY_BACKOFF_MAX",
    "AICLI_TOOL_OUTPUT_BYTES", "AICLI_HANDLER_TIMEOUT",
    "SMTP_SERVER_IP", "SMTP_USERNAME", "SMTP_PASSWORD", "DESTINATION_EMAIL", "SENDER_EMAIL",
    "GOOGLE_SEARCH_API_KEY", "GOOGLE_SEARCH_ENGINE_ID", "ALPHA_VANTAGE_API_KEY",
]


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Give every test its own copy of the environment and an empty home."""
    monkeypatch.setattr(os, "environ", os.environ.copy())
    for key in CONFIG_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))


class TestDefaults:
    """Tests for values when nothing is configured."""

    def test_defaults(self):
        config = AppConfig.from_env()
        assert config.llm.model == "gpt-4o-mini"
        assert config.llm.endpoint == "https://api.openai.com/v1/chat/completions"
        assert config.llm.temperature is None
        assert config.loop.max_turns == 25
        assert config.sandbox.root == Path.cwd()
        assert config.sandbox.environment_allowlist == DEFAULT_ENV_ALLOWLIST
        assert config.services.smtp_server == "localhost"


class TestFromEnv:
    """Tests for environment overrides."""

    def test_llm_settings(self, monkeypatch):
        monkeypatch.setenv("API_BASE_URL", "http://localhost:8000")
        monkeypatch.setenv("MODEL", "qwen")
        monkeypatch.setenv("API_KEY", "secret")
        monkeypatch.setenv("LLM_TEMPERATURE", "0.3")
        monkeypatch.setenv("LLM_MAX_TOKENS", "512")
        config = AppConfig.from_env()
        assert config.llm.endpoint == "http://localhost:8000/v1/chat/completions"
        assert config.llm.model == "qwen"
        assert config.llm.temperature == 0.3
        assert config.llm.max_tokens == 512

    def test_sandbox_settings(self, monkeypatch, tmp_path):
        monkeypatch.setenv("AICLI_SANDBOX_ROOT", str(tmp_path))
        monkeypatch.setenv("AICLI_COMMAND_TIMEOUT", "5")
        monkeypatch.setenv("AICLI_ENV_ALLOWLIST", "PATH, LANG ,")
        config = SandboxConfig.from_env()
        assert config.root == tmp_path
        assert config.timeout == 5.0
        assert config.environment_allowlist == frozenset({"PATH", "LANG"})
        assert config.to_policy().root == tmp_path.resolve()

    def test_loop_settings(self, monkeypatch):
        monkeypatch.setenv("AICLI_MAX_TURNS", "7")
        monkeypatch.setenv("AICLI_TRANSPORT_RETRIES", "0")
        config = LoopConfig.from_env()
        assert config.max_turns == 7
        assert config.max_transport_retries == 0

    def test_bad_integer(self, monkeypatch):
        monkeypatch.setenv("AICLI_MAX_TURNS", "many")
        with pytest.raises(ConfigError, match="AICLI_MAX_TURNS"):
            AppConfig.from_env()

    def test_bad_number(self, monkeypatch):
        monkeypatch.setenv("AICLI_COMMAND_TIMEOUT", "soon")
        with pytest.raises(ConfigError):
            AppConfig.from_env()

    def test_zero_turns_rejected(self, monkeypatch):
        monkeypatch.setenv("AICLI_MAX_TURNS", "0")
        with pytest.raises(ConfigError):
            LoopConfig.from_env()

    def test_invalid_policy_is_config_error(self, tmp_path):
        with pytest.raises(ConfigError):
            SandboxConfig(root=tmp_path, timeout=-1).to_policy()

    def test_services(self, monkeypatch):
        monkeypatch.setenv("SMTP_SERVER_IP", "10.0.0.5")
        monkeypatch.setenv("DESTINATION_EMAIL", "me@example.com")
        monkeypatch.setenv("ALPHA_VANTAGE_API_KEY", "demo")
        services = AppConfig.from_env().services
        assert services.smtp_server == "10.0.0.5"
        assert services.destination_email == "me@example.com"
        assert services.alpha_vantage_api_key == "demo"


class TestConfigFile:
    """Tests for loading the KEY=value config file."""

    def test_loads_explicit_file(self, tmp_path):
        path = tmp_path / "aicli.conf"
        path.write_text("MODEL=from-file\nGOOGLE_SEARCH_API_KEY=gkey\n")
        config = AppConfig.load(path)
        assert config.llm.model == "from-file"
        assert config.services.google_search_api_key == "gkey"

    def test_environment_wins_over_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MODEL", "from-env")
        path = tmp_path / "aicli.conf"
        path.write_text("MODEL=from-file\n")
        assert AppConfig.load(path).llm.model == "from-env"

    def test_default_file_in_home(self, tmp_path):
        (tmp_path / ".aicli.conf").write_text("AICLI_MAX_TURNS=4\n")
        assert AppConfig.load().loop.max_turns == 4

    def test_missing_default_file_is_fine(self):
        assert AppConfig.load().llm.model == "gpt-4o-mini"

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            AppConfig.load(tmp_path / "nope.conf")


class TestSummary:
    """Tests for the masked summary."""

    def test_secrets_are_masked(self, monkeypatch):
        monkeypatch.setenv("API_KEY", "sk-1234567890abcdefghij")
        monkeypatch.setenv("SMTP_PASSWORD", "pw")
        summary = AppConfig.from_env().summary()
        assert "sk-1234567890abcdefghij" not in summary
        assert "sk-1...ghij" in summary
        assert "SMTP password: ****" in summary
        assert "Alpha Vantage key: <unset>" in summary
