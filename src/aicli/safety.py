"""
Safety Policy Layer - risk classification and secret redaction.

Every tool call is assigned a RiskTier before it runs:

- SAFE: runs immediately (``ls``, reading a file inside the root, a search)
- AMBIGUOUS: asks the operator first (package installs, ``git push``,
  edits inside the root, sending e-mail)
- DESTRUCTIVE: asks the operator first and says so loudly (``rm -rf``,
  ``mkfs``, writing to block devices, edits outside the root)

The command patterns are heuristics over the command text. They catch
the obvious cases a cooperative model produces; they are not a sandbox.

The SecretsRedactor scrubs credentials out of tool output before it is
returned to the model or written to the debug log.
"""

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from aicli.sandbox import is_within
from aicli.tools import ToolSpec
from aicli.types import EditMode, RiskTier

logger = logging.getLogger(__name__)


DEFAULT_DESTRUCTIVE_PATTERNS: tuple[str, ...] = (
    r"\brm\s+(?:\S+\s+)*-\w*[rRf]",  # Recursive or forced delete
    r"\brm\s+(?:\S+\s+)*(?:/|~|\*)(?:\s|$)",  # Delete root, home, everything
    r"\bmkfs(?:\.\w+)?\b",  # Format filesystem
    r"\bdd\s+.*\bof=/dev/",  # Write to device
    r">\s*/dev/(?:sd|hd|nvme|disk|mmcblk)",  # Write to disk
    r":\(\)\s*\{\s*:\|:&\s*\}\s*;",  # Fork bomb
    r"\bshred\b",
    r"\bwipefs\b",
    r"\bchmod\s+(?:-\w+\s+)*[0-7]*777\s+/",
    r"\b(?:shutdown|reboot|halt|poweroff)\b",
    r"\bgit\s+reset\s+--hard\b",
    r"\bgit\s+clean\s+-\w*f",
    r"\bgit\s+push\s+.*(?:--force\b|-f\b)",
    r"\bfind\b.*\s-delete\b",
    r"\b(?:curl|wget)\b[^|]*\|\s*(?:sudo\s+)?(?:ba|z)?sh\b",  # Pipe download to shell
)

DEFAULT_AMBIGUOUS_PATTERNS: tuple[str, ...] = (
    r"\brm\b",
    r"\bmv\b",
    r"\b(?:chmod|chown|chgrp)\b",
    r"\bsudo\b",
    r"(?:^|[;&|(]\s*)su\b",
    r"\b(?:kill|pkill|killall)\b",
    r"\bgit\s+(?:push|commit|checkout|rebase|merge|reset|stash|branch\s+-[dD])\b",
    r"\b(?:pip3?|npm|yarn|pnpm|gem|cargo)\s+(?:install|uninstall|remove|add)\b",
    r"\b(?:apt|apt-get|brew|yum|dnf|pacman|choco|winget)\b",
    r"\b(?:curl|wget)\b",
    r"\bsed\s+(?:\S+\s+)*-i",
    r"\btee\b",
    r"\btruncate\b",
    r"(?<![0-9&>])>>?(?!&)\s*(?!/dev/null\b)[^\s&|;]",  # Redirect into a file
    r"(?:^|[;&|(]\s*)(?:del|erase|rmdir|rd|format)\s",  # Windows shells
)


@dataclass
class RiskPolicy:
    """
    Configurable risk rules.

    tool_overrides pins a tool to a tier regardless of its arguments.
    file_mutation_tier is the tier for file edits inside the sandbox root.
    """
    destructive_patterns: tuple[str, ...] = DEFAULT_DESTRUCTIVE_PATTERNS
    ambiguous_patterns: tuple[str, ...] = DEFAULT_AMBIGUOUS_PATTERNS
    tool_overrides: dict[str, RiskTier] = field(default_factory=dict)
    file_mutation_tier: RiskTier = RiskTier.AMBIGUOUS


class RiskClassifier:
    """Assigns a RiskTier to a tool call."""

    def __init__(self, root: str | Path, policy: RiskPolicy | None = None) -> None:
        self.root = Path(root).expanduser().resolve()
        self.policy = policy or RiskPolicy()
        self._destructive = [re.compile(p, re.IGNORECASE | re.MULTILINE) for p in self.policy.destructive_patterns]
        self._ambiguous = [re.compile(p, re.IGNORECASE | re.MULTILINE) for p in self.policy.ambiguous_patterns]

    def classify(self, spec: ToolSpec, arguments: dict[str, Any]) -> RiskTier:
        """
        Tier for one call of spec with arguments.

        An override wins outright. Otherwise the spec's own tier is a floor
        that the per-call classifier can only raise.
        """
        override = self.policy.tool_overrides.get(spec.name)
        if override is not None:
            return override
        tier = spec.risk_tier
        if spec.classifier is not None:
            tier = tier.escalate(spec.classifier(arguments))
        return tier

    def classify_command(self, arguments: dict[str, Any]) -> RiskTier:
        """Tier for a shell command, from the command text."""
        command = str(arguments.get("command", ""))
        for pattern in self._destructive:
            if pattern.search(command):
                logger.debug(f"Command matches destructive pattern {pattern.pattern}: {command}")
                return RiskTier.DESTRUCTIVE
        for pattern in self._ambiguous:
            if pattern.search(command):
                logger.debug(f"Command matches ambiguous pattern {pattern.pattern}: {command}")
                return RiskTier.AMBIGUOUS
        return RiskTier.SAFE

    def classify_file_edit(self, arguments: dict[str, Any]) -> RiskTier:
        """Tier for a file editor call, from its mode and target path."""
        try:
            mode = EditMode(arguments.get("mode", EditMode.READ.value))
        except ValueError:
            return RiskTier.AMBIGUOUS
        inside = self.contains(str(arguments.get("path", "")))
        if not mode.is_mutation:
            return RiskTier.SAFE if inside else RiskTier.AMBIGUOUS
        if not inside:
            return RiskTier.DESTRUCTIVE
        return self.policy.file_mutation_tier

    def contains(self, path: str) -> bool:
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = self.root / candidate
        return is_within(candidate.resolve(), self.root)


class SecretsRedactor:
    """Redacts secrets from tool output."""

    def __init__(self, known_secrets: Iterable[str] = ()) -> None:
        """Initialize with common secret patterns plus configured secret values."""
        self.secret_patterns: list[tuple[re.Pattern[str], str]] = [
            # OpenAI API keys
            (re.compile(r"sk-[a-zA-Z0-9_-]{20,}"), "<REDACTED_OPENAI_KEY>"),
            # GitHub tokens
            (re.compile(r"gh[pousr]_[a-zA-Z0-9]{36}"), "<REDACTED_GITHUB_TOKEN>"),
            # AWS access keys
            (re.compile(r"AKIA[0-9A-Z]{16}"), "<REDACTED_AWS_KEY>"),
            # Google API keys and OAuth tokens
            (re.compile(r"AIza[0-9A-Za-z_-]{35}"), "<REDACTED_GOOGLE_KEY>"),
            (re.compile(r"ya29\.[a-zA-Z0-9_-]{50,}"), "<REDACTED_GOOGLE_TOKEN>"),
            # Slack tokens
            (re.compile(r"xox[baprs]-[a-zA-Z0-9-]+"), "<REDACTED_SLACK_TOKEN>"),
            # Generic API key assignments
            (
                re.compile(r"api[_-]?key[\"']?\s*[:=]\s*[\"']?([a-zA-Z0-9_-]{20,})[\"']?", re.IGNORECASE),
                "api_key=<REDACTED_API_KEY>",
            ),
            # Bearer tokens
            (
                re.compile(r"Bearer\s+[a-zA-Z0-9_.-]{20,}"),
                "Bearer <REDACTED_TOKEN>",
            ),
            # Password assignments
            (
                re.compile(r"password[\"']?\s*[:=]\s*[\"']?([^\s\"']+)[\"']?", re.IGNORECASE),
                "password=<REDACTED_PASSWORD>",
            ),
            # Private keys
            (
                re.compile(r"-----BEGIN (?:RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----[\s\S]*?-----END (?:RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----"),
                "<REDACTED_PRIVATE_KEY>",
            ),
        ]
        # Literal values from the config (API keys, SMTP password), longest first
        for secret in sorted({s for s in known_secrets if s and len(s) >= 8}, key=len):
            self.secret_patterns.insert(0, (re.compile(re.escape(secret)), "<REDACTED_SECRET>"))

    def redact(self, text: str) -> tuple[str, list[str]]:
        """Redact secrets from text. Returns (redacted_text, secrets_found)."""
        redacted = text
        secrets_found = []

        for pattern, replacement in self.secret_patterns:
            redacted, count = pattern.subn(replacement, redacted)
            if count:
                # Record what was found, never the secret itself
                secrets_found.append(f"{count} match(es) for {replacement}")

        return redacted, secrets_found
