"""
The built-in tool table.

build_default_registry() wires the six tools the model can call to their
handlers and freezes the registry. Handlers receive validated argument
dicts and return the text the model sees; expected failures are raised as
HandlerError, EditError or ExecutionError and converted by the dispatcher.
"""

import logging
from typing import Any

from aicli.config import AppConfig
from aicli.file_edit import FileEditor
from aicli.handlers import AlphaVantage, EmailSender, Scraper, WebSearch
from aicli.safety import RiskClassifier
from aicli.sandbox import CommandExecutor, SandboxPolicy
from aicli.tools import SchemaError, ToolRegistry
from aicli.types import EditMode, EditOperation, RiskTier

logger = logging.getLogger(__name__)


EXECUTE_COMMAND_SCHEMA = {
    "type": "object",
    "properties": {
        "command": {
            "type": "string",
            "minLength": 1,
            "description": "The shell command to run in the sandbox root",
        },
    },
    "required": ["command"],
    "additionalProperties": False,
}

FILE_EDITOR_SCHEMA = {
    "type": "object",
    "properties": {
        "mode": {
            "type": "string",
            "enum": [m.value for m in EditMode],
            "description": (
                "read: return content and its hash. search: regex search. "
                "replace_exact: replace old_text, which must occur exactly once, with new_text. "
                "apply_patch: apply a unified diff. overwrite: replace the whole file with content "
                "(existing files need expected_hash). search_and_replace: regex replace-all."
            ),
        },
        "path": {
            "type": "string",
            "minLength": 1,
            "description": "File path, relative to the sandbox root",
        },
        "old_text": {"type": "string", "description": "Exact text to replace (replace_exact)"},
        "new_text": {"type": "string", "description": "Replacement text (replace_exact)"},
        "diff": {"type": "string", "description": "Unified diff (apply_patch)"},
        "content": {"type": "string", "description": "New file content (overwrite)"},
        "pattern": {"type": "string", "description": "Regex (search, search_and_replace)"},
        "replacement": {"type": "string", "description": "Replacement for search_and_replace; supports \\1 groups"},
        "expected_hash": {
            "type": "string",
            "description": "Content hash from a previous read; the edit fails if the file changed since",
        },
    },
    "required": ["mode", "path"],
    "additionalProperties": False,
}

SEARCH_ONLINE_SCHEMA = {
    "type": "object",
    "properties": {
        "query": {"type": "string", "minLength": 1, "description": "The search query"},
    },
    "required": ["query"],
    "additionalProperties": False,
}

SCRAPE_URL_SCHEMA = {
    "type": "object",
    "properties": {
        "url": {"type": "string", "minLength": 1, "description": "The URL to scrape"},
        "mode": {
            "type": "string",
            "enum": ["summarized", "full"],
            "description": "summarized (default) condenses long pages to their key sentences",
        },
    },
    "required": ["url"],
    "additionalProperties": False,
}

SEND_EMAIL_SCHEMA = {
    "type": "object",
    "properties": {
        "subject": {"type": "string", "description": "Email subject line"},
        "body": {"type": "string", "description": "Email message body"},
    },
    "required": ["subject", "body"],
    "additionalProperties": False,
}

ALPHA_VANTAGE_SCHEMA = {
    "type": "object",
    "properties": {
        "function": {
            "type": "string",
            "minLength": 1,
            "description": "The Alpha Vantage function (e.g., TIME_SERIES_DAILY, GLOBAL_QUOTE)",
        },
        "symbol": {"type": "string", "minLength": 1, "description": "The stock symbol (e.g., IBM)"},
        "outputsize": {
            "type": "string",
            "enum": ["compact", "full"],
            "description": "'compact' returns the last 100 data points, 'full' all of them. Defaults to 'compact'.",
        },
    },
    "required": ["function", "symbol"],
    "additionalProperties": False,
}

# Which argument carries the payload for each mode
_MODE_PAYLOAD = {
    EditMode.SEARCH: "pattern",
    EditMode.REPLACE_EXACT: "old_text",
    EditMode.APPLY_PATCH: "diff",
    EditMode.OVERWRITE: "content",
    EditMode.SEARCH_AND_REPLACE: "pattern",
}
_MODE_REPLACEMENT = {
    EditMode.REPLACE_EXACT: "new_text",
    EditMode.SEARCH_AND_REPLACE: "replacement",
}


def edit_operation_from_arguments(arguments: dict[str, Any]) -> EditOperation:
    """Map file_editor tool arguments to an EditOperation. Raises SchemaError."""
    mode = EditMode(arguments["mode"])
    payload_key = _MODE_PAYLOAD.get(mode)
    if payload_key is not None and payload_key not in arguments:
        raise SchemaError(f"Mode {mode.value!r} requires parameter {payload_key!r}")
    replacement_key = _MODE_REPLACEMENT.get(mode)
    if replacement_key is not None and replacement_key not in arguments:
        raise SchemaError(f"Mode {mode.value!r} requires parameter {replacement_key!r}")
    return EditOperation(
        path=arguments["path"],
        mode=mode,
        payload=arguments.get(payload_key, "") if payload_key else "",
        replacement=arguments.get(replacement_key) if replacement_key else None,
        expected_prior_content_hash=arguments.get("expected_hash"),
    )


class FileEditorTool:
    """Adapts FileEditor to the tool-handler calling convention."""

    def __init__(self, editor: FileEditor) -> None:
        self.editor = editor

    def __call__(self, arguments: dict[str, Any]) -> str:
        op = edit_operation_from_arguments(arguments)
        result = self.editor.apply(op)
        if op.mode is EditMode.READ:
            return f"content_hash: {result.new_content_hash}\n{result.content}"
        if op.mode is EditMode.SEARCH:
            return result.message
        return f"{result.message}\ncontent_hash: {result.new_content_hash}"

    def preview(self, arguments: dict[str, Any]) -> str:
        """Diff of the change a mutating call would make; empty for read and search."""
        return self.editor.preview(edit_operation_from_arguments(arguments))


class ExecuteCommandTool:
    """Adapts CommandExecutor to the tool-handler calling convention."""

    def __init__(self, executor: CommandExecutor, policy: SandboxPolicy) -> None:
        self.executor = executor
        self.policy = policy

    def __call__(self, arguments: dict[str, Any]) -> str:
        outcome = self.executor.execute(arguments["command"], self.policy)
        return outcome.render()


def build_default_registry(
    config: AppConfig,
    classifier: RiskClassifier,
    executor: CommandExecutor | None = None,
    editor: FileEditor | None = None,
    search: WebSearch | None = None,
    scraper: Scraper | None = None,
    email: EmailSender | None = None,
    finance: AlphaVantage | None = None,
) -> ToolRegistry:
    """Build and freeze the registry of built-in tools."""
    policy = config.sandbox.to_policy()
    services = config.services
    executor = executor or CommandExecutor()
    editor = editor or FileEditor(policy.root)
    scraper = scraper or Scraper()
    search = search or WebSearch(
        services.google_search_api_key,
        services.google_search_engine_id,
        scraper=scraper,
    )
    email = email or EmailSender(services)
    finance = finance or AlphaVantage(services.alpha_vantage_api_key)

    file_editor = FileEditorTool(editor)

    registry = ToolRegistry()
    registry.register_function(
        name="execute_command",
        description=(
            "Execute a shell command in the sandbox root. Use this for any shell task. "
            "Returns stdout and stderr; a non-zero exit code is reported, not an error."
        ),
        parameters=EXECUTE_COMMAND_SCHEMA,
        handler=ExecuteCommandTool(executor, policy),
        risk_tier=RiskTier.SAFE,
        classifier=classifier.classify_command,
        bounded=True,
    )
    registry.register_function(
        name="file_editor",
        description=(
            "Read, search and edit files in the sandbox. Prefer replace_exact or apply_patch "
            "for changes; pass the content_hash from your last read as expected_hash."
        ),
        parameters=FILE_EDITOR_SCHEMA,
        handler=file_editor,
        risk_tier=RiskTier.SAFE,
        classifier=classifier.classify_file_edit,
        bounded=True,
        preview=file_editor.preview,
    )
    registry.register_function(
        name="search_online",
        description="Searches the web for a given query. Use it to retrieve up to date information.",
        parameters=SEARCH_ONLINE_SCHEMA,
        handler=lambda args: search.search_online(args["query"]),
    )
    registry.register_function(
        name="scrape_url",
        description="Scrapes the readable content of a single URL.",
        parameters=SCRAPE_URL_SCHEMA,
        handler=lambda args: scraper.scrape_url(args["url"], args.get("mode", "summarized")),
    )
    registry.register_function(
        name="send_email",
        description="Sends an email to the configured address using SMTP.",
        parameters=SEND_EMAIL_SCHEMA,
        handler=lambda args: email.send_email(args["subject"], args["body"]),
        risk_tier=RiskTier.AMBIGUOUS,
    )
    registry.register_function(
        name="alpha_vantage_query",
        description="Queries the Alpha Vantage API for stock and market data.",
        parameters=ALPHA_VANTAGE_SCHEMA,
        handler=lambda args: finance.query(args["function"], args["symbol"], args.get("outputsize")),
    )
    logger.debug(f"Built tool registry: {registry.tool_names}")
    return registry.freeze()
