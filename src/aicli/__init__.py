"""
aicli - A terminal assistant that lets a language model act in your shell.

The model works only through tools, and every tool call passes the same
gate:

1. Tool-mediated actions: commands, file edits, searches and e-mail are
   tools the model requests; it has no other way to affect anything
2. Risk before action: each call is classified, and anything not plainly
   safe is confirmed by the operator first
3. Confined execution: commands run in the sandbox root with a filtered
   environment, a timeout and an output budget
4. Conflict-checked edits: file changes are exact replacements or
   patches, written atomically and guarded by content hashes
5. Turn-based processing: one model round trip at a time, bounded by a
   turn limit, cancellable between steps
"""

__version__ = "0.1.0"

from aicli.config import AppConfig
from aicli.dispatcher import ToolDispatcher
from aicli.file_edit import EditError, FileEditor
from aicli.llm import LLMClient, TransportError
from aicli.orchestrator import (
    CancellationToken,
    Continuing,
    Failed,
    FinalAnswer,
    Orchestrator,
)
from aicli.safety import RiskClassifier, RiskPolicy
from aicli.sandbox import CommandExecutor, ExecutionError, SandboxPolicy
from aicli.session import Session
from aicli.tools import ToolRegistry, ToolSpec
from aicli.types import (
    EditMode,
    EditOperation,
    EditResult,
    Message,
    RiskTier,
    Role,
    ToolCall,
    ToolResult,
    ToolStatus,
)

__all__ = [
    "AppConfig",
    "CancellationToken",
    "CommandExecutor",
    "Continuing",
    "EditError",
    "EditMode",
    "EditOperation",
    "EditResult",
    "ExecutionError",
    "Failed",
    "FileEditor",
    "FinalAnswer",
    "LLMClient",
    "Message",
    "Orchestrator",
    "RiskClassifier",
    "RiskPolicy",
    "RiskTier",
    "Role",
    "SandboxPolicy",
    "Session",
    "ToolCall",
    "ToolDispatcher",
    "ToolRegistry",
    "ToolResult",
    "ToolSpec",
    "ToolStatus",
    "TransportError",
]
