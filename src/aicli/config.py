"""
Configuration for the assistant.

All configuration comes from environment variables. The optional config
file (``~/.aicli.conf`` by default, KEY=value lines) is loaded into the
environment first with python-dotenv, without overriding variables that
are already set, so the real environment always wins.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from aicli.sandbox import (
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_ENV_ALLOWLIST,
    DEFAULT_MAX_OUTPUT_BYTES,
    SandboxPolicy,
)

DEFAULT_CONFIG_PATH = Path("~/.aicli.conf")


class ConfigError(ValueError):
    """A configuration value could not be parsed."""


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


def _mask(value: str) -> str:
    if not value:
        return "<unset>"
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}...{value[-4:]}"


@dataclass
class LLMConfig:
    """Configuration for the LLM client."""
    base_url: str = "https://api.openai.com"
    api_version: str = "v1"
    model: str = "gpt-4o-mini"
    api_key: str = ""
    temperature: float | None = None
    max_tokens: int | None = None
    timeout: float = 180.0

    @classmethod
    def from_env(cls) -> "LLMConfig":
        """Load configuration from environment variables."""
        temperature = os.getenv("LLM_TEMPERATURE")
        max_tokens = os.getenv("LLM_MAX_TOKENS")
        return cls(
            base_url=os.getenv("API_BASE_URL", "https://api.openai.com"),
            api_version=os.getenv("API_VERSION", "v1"),
            model=os.getenv("MODEL", "gpt-4o-mini"),
            api_key=os.getenv("API_KEY", ""),
            temperature=_get_float("LLM_TEMPERATURE", 0.0) if temperature else None,
            max_tokens=_get_int("LLM_MAX_TOKENS", 0) if max_tokens else None,
            timeout=_get_float("LLM_TIMEOUT", 180.0),
        )

    @property
    def endpoint(self) -> str:
        """Full chat completions URL."""
        base = self.base_url.rstrip("/")
        version = self.api_version.strip("/")
        if version and not base.endswith(f"/{version}"):
            base = f"{base}/{version}"
        return f"{base}/chat/completions"


@dataclass
class SandboxConfig:
    """Where and how shell commands run."""
    root: Path = field(default_factory=Path.cwd)
    timeout: float = DEFAULT_COMMAND_TIMEOUT
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES
    environment_allowlist: frozenset[str] = DEFAULT_ENV_ALLOWLIST

    @classmethod
    def from_env(cls) -> "SandboxConfig":
        """Load configuration from environment variables."""
        root = os.getenv("AICLI_SANDBOX_ROOT")
        allowlist = os.getenv("AICLI_ENV_ALLOWLIST")
        return cls(
            root=Path(root).expanduser() if root else Path.cwd(),
            timeout=_get_float("AICLI_COMMAND_TIMEOUT", DEFAULT_COMMAND_TIMEOUT),
            max_output_bytes=_get_int("AICLI_MAX_OUTPUT_BYTES", DEFAULT_MAX_OUTPUT_BYTES),
            environment_allowlist=(
                frozenset(n.strip() for n in allowlist.split(",") if n.strip())
                if allowlist is not None else DEFAULT_ENV_ALLOWLIST
            ),
        )

    def to_policy(self) -> SandboxPolicy:
        try:
            return SandboxPolicy(
                root=self.root,
                environment_allowlist=self.environment_allowlist,
                timeout=self.timeout,
                max_output_bytes=self.max_output_bytes,
            )
        except ValueError as e:
            raise ConfigError(str(e)) from e


@dataclass
class LoopConfig:
    """
    Configuration for the orchestration loop.

    max_turns bounds model round trips per user message. Transport retries
    back off exponentially from retry_backoff, capped at retry_backoff_max.
    """
    max_turns: int = 25
    max_transport_retries: int = 3
    retry_backoff: float = 2.0
    retry_backoff_max: float = 60.0
    tool_output_bytes: int = 16 * 1024
    handler_timeout: float = 120.0

    @classmethod
    def from_env(cls) -> "LoopConfig":
        """Load configuration from environment variables."""
        config = cls(
            max_turns=_get_int("AICLI_MAX_TURNS", 25),
            max_transport_retries=_get_int("AICLI_TRANSPORT_RETRIES", 3),
            retry_backoff=_get_float("AICLI_RETRY_BACKOFF", 2.0),
            retry_backoff_max=_get_float("AICLI_RETRY_BACKOFF_MAX", 60.0),
            tool_output_bytes=_get_int("AICLI_TOOL_OUTPUT_BYTES", 16 * 1024),
            handler_timeout=_get_float("AICLI_HANDLER_TIMEOUT", 120.0),
        )
        if config.max_turns < 1:
            raise ConfigError("AICLI_MAX_TURNS must be at least 1")
        if config.max_transport_retries < 0:
            raise ConfigError("AICLI_TRANSPORT_RETRIES must not be negative")
        return config


@dataclass
class ServicesConfig:
    """Credentials and endpoints for the external tool handlers."""
    smtp_server: str = "localhost"
    smtp_username: str = ""
    smtp_password: str = ""
    destination_email: str = ""
    sender_email: str = ""
    google_search_api_key: str = ""
    google_search_engine_id: str = ""
    alpha_vantage_api_key: str = ""

    @classmethod
    def from_env(cls) -> "ServicesConfig":
        """Load configuration from environment variables."""
        return cls(
            smtp_server=os.getenv("SMTP_SERVER_IP", "localhost"),
            smtp_username=os.getenv("SMTP_USERNAME", ""),
            smtp_password=os.getenv("SMTP_PASSWORD", ""),
            destination_email=os.getenv("DESTINATION_EMAIL", ""),
            sender_email=os.getenv("SENDER_EMAIL", ""),
            google_search_api_key=os.getenv("GOOGLE_SEARCH_API_KEY", ""),
            google_search_engine_id=os.getenv("GOOGLE_SEARCH_ENGINE_ID", ""),
            alpha_vantage_api_key=os.getenv("ALPHA_VANTAGE_API_KEY", ""),
        )


@dataclass
class AppConfig:
    """Combined configuration for the whole application."""
    llm: LLMConfig = field(default_factory=LLMConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    services: ServicesConfig = field(default_factory=ServicesConfig)

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Load all configuration from environment variables."""
        return cls(
            llm=LLMConfig.from_env(),
            sandbox=SandboxConfig.from_env(),
            loop=LoopConfig.from_env(),
            services=ServicesConfig.from_env(),
        )

    @classmethod
    def load(cls, path: str | Path | None = None) -> "AppConfig":
        """
        Load the config file into the environment, then read the environment.

        A missing default config file is fine. A path given explicitly must
        exist.
        """
        config_path = Path(path).expanduser() if path else DEFAULT_CONFIG_PATH.expanduser()
        if config_path.is_file():
            load_dotenv(dotenv_path=config_path, override=False)
        elif path:
            raise ConfigError(f"Config file not found: {config_path}")
        return cls.from_env()

    def summary(self) -> str:
        """Human-readable summary with secrets masked."""
        lines = [
            f"API endpoint: {self.llm.endpoint}",
            f"Model: {self.llm.model}",
            f"API key: {_mask(self.llm.api_key)}",
            f"Sandbox root: {self.sandbox.root}",
            f"Command timeout: {self.sandbox.timeout:g}s",
            f"Max turns: {self.loop.max_turns}",
            f"SMTP server: {self.services.smtp_server}",
            f"SMTP password: {_mask(self.services.smtp_password)}",
            f"Destination email: {self.services.destination_email or '<unset>'}",
            f"Google search key: {_mask(self.services.google_search_api_key)}",
            f"Alpha Vantage key: {_mask(self.services.alpha_vantage_api_key)}",
        ]
        return "\n".join(lines)
