"""
Sandboxed Command Executor - Runs one shell command under a policy.

The executor is the only place a model-requested command touches the
host. Each command runs:

1. Through the platform shell, resolved once per process
2. With its working directory pinned to the sandbox root
3. With an environment reduced to an allowlist
4. Under a watcher thread that kills the process group at the deadline
5. With stdout/stderr captured incrementally into a shared byte budget

Confinement is best-effort. Explicit ``cd``/``pushd`` targets that leave
the root are refused before spawning, but arbitrary shell semantics
(variables, scripts, absolute paths passed to programs) are not contained.
This is a guard rail for a cooperative model, not a security boundary.

A non-zero exit code is a normal outcome. Only timeouts, spawn failures,
output overflow and confinement refusals raise ExecutionError.
"""

import functools
import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO

logger = logging.getLogger(__name__)

DEFAULT_ENV_ALLOWLIST = frozenset({
    "PATH",
    "HOME",
    "LANG",
    "LC_ALL",
    "TERM",
    "TMPDIR",
    "USER",
    "SYSTEMROOT",
    "COMSPEC",
    "PATHEXT",
})

DEFAULT_COMMAND_TIMEOUT = 60.0
DEFAULT_MAX_OUTPUT_BYTES = 64 * 1024

# How long to wait for the pipe readers after the child exits. A background
# grandchild can hold the pipes open indefinitely.
READER_GRACE_SECONDS = 1.0

_READ_CHUNK = 4096
_CD_COMMANDS = frozenset({"cd", "pushd", "chdir"})
_SEGMENT_OPERATORS = frozenset({"&&", "||", ";", "|", "&", "(", ")", ";;", "\n"})


class ExecutionErrorKind(str, Enum):
    """Why a command did not produce a normal result."""
    TIMEOUT = "timeout"
    SPAWN_FAILURE = "spawn_failure"
    OUTPUT_OVERFLOW = "output_overflow"
    CONFINEMENT = "confinement"


class ExecutionError(Exception):
    """A command failed at the executor level.

    stdout/stderr hold whatever was captured before the failure, so a
    timeout or overflow still gives the model something to look at.
    """

    def __init__(
        self,
        kind: ExecutionErrorKind,
        message: str,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.stdout = stdout
        self.stderr = stderr

    @property
    def partial_output(self) -> str:
        return _join_streams(self.stdout, self.stderr)


@dataclass(frozen=True)
class SandboxPolicy:
    """Confinement settings for command execution. Not mutated during a run."""
    root: Path
    environment_allowlist: frozenset[str] = DEFAULT_ENV_ALLOWLIST
    timeout: float = DEFAULT_COMMAND_TIMEOUT
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES

    def __post_init__(self) -> None:
        object.__setattr__(self, "root", Path(self.root).expanduser().resolve())
        object.__setattr__(self, "environment_allowlist", frozenset(self.environment_allowlist))
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.max_output_bytes <= 0:
            raise ValueError("max_output_bytes must be positive")

    def build_environment(self, source: dict[str, str] | None = None) -> dict[str, str]:
        """Copy only allowlisted variables from source (default: os.environ)."""
        source = os.environ if source is None else source
        if os.name == "nt":
            allowed = {name.upper() for name in self.environment_allowlist}
            return {k: v for k, v in source.items() if k.upper() in allowed}
        return {k: v for k, v in source.items() if k in self.environment_allowlist}

    def contains(self, path: str | Path) -> bool:
        """Whether path, resolved against the root, stays inside the root."""
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = self.root / candidate
        return is_within(candidate.resolve(), self.root)


@dataclass(frozen=True)
class CommandOutcome:
    """Result of a command that ran to completion (any exit code)."""
    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return _join_streams(self.stdout, self.stderr)

    def render(self) -> str:
        """Text handed to the model for this command."""
        body = self.output if self.output.strip() else "Command executed (no output)"
        if self.exit_code != 0:
            return f"exit code {self.exit_code}\n{body}"
        return body


@dataclass(frozen=True)
class ShellInfo:
    """The shell used to run commands and a human-readable name for prompts."""
    executable: str
    flag: str
    display_name: str

    def argv(self, command: str) -> list[str]:
        return [self.executable, self.flag, command]

    @classmethod
    def detect(cls) -> "ShellInfo":
        if os.name == "nt":
            return cls(
                executable=os.environ.get("COMSPEC", "cmd.exe"),
                flag="/C",
                display_name=_describe_windows_shell(),
            )
        return cls(
            executable="/bin/sh",
            flag="-c",
            display_name=_describe_unix_shell(),
        )


@functools.cache
def default_shell() -> ShellInfo:
    """Resolve the platform shell once per process."""
    shell = ShellInfo.detect()
    logger.debug(f"Resolved shell: {shell.executable} ({shell.display_name})")
    return shell


def is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True


def find_confinement_escape(command: str, root: Path, home: str | None = None) -> str | None:
    """
    Return the first statically known ``cd`` target that leaves root.

    Targets are resolved cumulatively, so ``cd sub && cd ../..`` is caught.
    Targets that depend on runtime state (``$VAR``, command substitution,
    ``cd -``) are skipped. Unparseable commands are left to the shell.
    """
    lexer = shlex.shlex(command, posix=True, punctuation_chars=True)
    lexer.whitespace_split = True
    try:
        tokens = list(lexer)
    except ValueError:
        return None

    home = home if home is not None else os.path.expanduser("~")
    cwd = root
    at_segment_start = True
    index = 0
    while index < len(tokens):
        token = tokens[index]
        if token in _SEGMENT_OPERATORS:
            at_segment_start = True
            index += 1
            continue
        if at_segment_start and token in _CD_COMMANDS:
            target = None
            if index + 1 < len(tokens) and tokens[index + 1] not in _SEGMENT_OPERATORS:
                target = tokens[index + 1]
                index += 1
            if target is None:
                target = home
            elif target.startswith("-") or "$" in target or "`" in target:
                at_segment_start = False
                index += 1
                continue
            elif target.startswith("~"):
                target = home + target[1:]
            resolved = (cwd / target).resolve()
            if not is_within(resolved, root):
                return target
            cwd = resolved
        at_segment_start = False
        index += 1
    return None


class _OutputCapture:
    """Collects stdout/stderr chunks against one shared byte budget."""

    def __init__(self, max_bytes: int, on_overflow) -> None:
        self._max_bytes = max_bytes
        self._on_overflow = on_overflow
        self._lock = threading.Lock()
        self._used = 0
        self._chunks: dict[str, list[bytes]] = {"stdout": [], "stderr": []}
        self.overflowed = False

    def pump(self, stream: IO[bytes], name: str) -> None:
        try:
            while True:
                chunk = stream.read1(_READ_CHUNK) if hasattr(stream, "read1") else stream.read(_READ_CHUNK)
                if not chunk:
                    break
                self._add(name, chunk)
        except (OSError, ValueError):
            # Pipe closed underneath us after a kill.
            pass
        finally:
            try:
                stream.close()
            except OSError:
                pass

    def _add(self, name: str, chunk: bytes) -> None:
        trigger = False
        with self._lock:
            if self.overflowed:
                return
            remaining = self._max_bytes - self._used
            if len(chunk) > remaining:
                chunk = chunk[:remaining]
                self.overflowed = True
                trigger = True
            self._chunks[name].append(chunk)
            self._used += len(chunk)
        if trigger:
            self._on_overflow()

    def text(self, name: str) -> str:
        with self._lock:
            data = b"".join(self._chunks[name])
        return data.decode("utf-8", errors="replace")


class CommandExecutor:
    """
    Runs shell commands under a SandboxPolicy.

    One executor can serve any number of sequential commands. The shell is
    resolved once, at construction, unless one is supplied.
    """

    def __init__(self, shell: ShellInfo | None = None) -> None:
        self.shell = shell or default_shell()

    def execute(self, command: str, policy: SandboxPolicy) -> CommandOutcome:
        """
        Run command and wait for it to finish.

        Returns a CommandOutcome for any exit code. Raises ExecutionError on
        timeout, spawn failure, output overflow or a confinement refusal.
        A KeyboardInterrupt while waiting kills the command before it
        propagates.
        """
        if not command or not command.strip():
            raise ExecutionError(ExecutionErrorKind.SPAWN_FAILURE, "No command provided")

        escape = find_confinement_escape(command, policy.root)
        if escape is not None:
            logger.warning(f"Refusing command that leaves sandbox root: {command!r}")
            raise ExecutionError(
                ExecutionErrorKind.CONFINEMENT,
                f"cd target {escape!r} resolves outside the sandbox root {policy.root}",
            )

        if not policy.root.is_dir():
            raise ExecutionError(
                ExecutionErrorKind.SPAWN_FAILURE,
                f"Sandbox root does not exist: {policy.root}",
            )

        logger.info(f"Executing command in {policy.root}: {command}")
        start_time = time.monotonic()
        try:
            process = subprocess.Popen(
                self.shell.argv(command),
                cwd=policy.root,
                env=policy.build_environment(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                **_process_group_kwargs(),
            )
        except OSError as e:
            logger.error(f"Failed to spawn command {command!r}: {e}")
            raise ExecutionError(ExecutionErrorKind.SPAWN_FAILURE, f"Failed to run command: {e}") from e

        capture = _OutputCapture(policy.max_output_bytes, on_overflow=lambda: _kill_process_tree(process))
        readers = [
            threading.Thread(target=capture.pump, args=(process.stdout, "stdout"), daemon=True),
            threading.Thread(target=capture.pump, args=(process.stderr, "stderr"), daemon=True),
        ]
        for reader in readers:
            reader.start()

        timed_out = threading.Event()

        def on_deadline() -> None:
            timed_out.set()
            _kill_process_tree(process)

        watcher = threading.Timer(policy.timeout, on_deadline)
        watcher.daemon = True
        watcher.start()
        try:
            exit_code = process.wait()
        except KeyboardInterrupt:
            logger.info(f"Interrupted, killing command: {command}")
            _kill_process_tree(process)
            process.wait()
            raise
        finally:
            watcher.cancel()

        for reader in readers:
            reader.join(timeout=READER_GRACE_SECONDS)

        duration = time.monotonic() - start_time
        stdout = capture.text("stdout")
        stderr = capture.text("stderr")

        if timed_out.is_set():
            logger.warning(f"Command timed out after {policy.timeout}s: {command}")
            raise ExecutionError(
                ExecutionErrorKind.TIMEOUT,
                f"Command timed out after {policy.timeout:g} seconds",
                stdout=stdout,
                stderr=stderr,
            )
        if capture.overflowed:
            logger.warning(f"Command exceeded {policy.max_output_bytes} output bytes: {command}")
            raise ExecutionError(
                ExecutionErrorKind.OUTPUT_OVERFLOW,
                f"Output exceeded {policy.max_output_bytes} bytes; capture stopped and the command was terminated",
                stdout=stdout,
                stderr=stderr,
            )

        logger.debug(f"Command exited with {exit_code} after {duration:.2f}s")
        return CommandOutcome(
            command=command,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            duration=duration,
        )


def _process_group_kwargs() -> dict:
    if os.name == "nt":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def _kill_process_tree(process: subprocess.Popen) -> None:
    if process.poll() is not None:
        return
    try:
        if os.name == "nt":
            process.kill()
        else:
            os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass
    except OSError as e:
        logger.warning(f"Failed to kill process {process.pid}: {e}")


def _join_streams(stdout: str, stderr: str) -> str:
    if stdout and stderr:
        separator = "" if stdout.endswith("\n") else "\n"
        return stdout + separator + stderr
    return stdout or stderr


def _first_line(argv: list[str]) -> str | None:
    try:
        result = subprocess.run(argv, capture_output=True, text=True, timeout=5)
    except (OSError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        return None
    lines = result.stdout.strip().splitlines()
    return lines[0] if lines else None


def _describe_unix_shell() -> str:
    shell_path = os.environ.get("SHELL")
    if not shell_path:
        return "sh"
    name = Path(shell_path).name or "sh"
    if name in ("bash", "zsh", "fish", "tcsh", "csh", "ksh"):
        version = _first_line([name, "--version"])
        if version:
            return version
    return name


def _describe_windows_shell() -> str:
    msystem = os.environ.get("MSYSTEM")
    if msystem:
        system_name = {
            "MINGW64": "Git Bash (MINGW64)",
            "MINGW32": "Git Bash (MINGW32)",
            "MSYS": "MSYS",
        }.get(msystem, "MSYS/MINGW")
        version = _first_line(["bash", "--version"])
        return f"{system_name} - {version}" if version else system_name
    if os.environ.get("PSModulePath"):
        version = _first_line(["powershell", "-Command", "$PSVersionTable.PSVersion.ToString()"])
        return f"PowerShell {version.strip()}" if version else "PowerShell"
    return "Command Prompt (cmd.exe)"
