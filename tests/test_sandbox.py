"""
Tests for the sandboxed command executor.
"""

import os
import signal
import threading
import time
from pathlib import Path

import pytest

from aicli.sandbox import (
    CommandExecutor,
    CommandOutcome,
    ExecutionError,
    ExecutionErrorKind,
    SandboxPolicy,
    ShellInfo,
    find_confinement_escape,
)

posix_only = pytest.mark.skipif(os.name == "nt", reason="uses POSIX shell commands")


@pytest.fixture
def executor():
    return CommandExecutor()


@pytest.fixture
def policy(tmp_path):
    return SandboxPolicy(root=tmp_path, timeout=10.0)


class TestSandboxPolicy:
    """Tests for SandboxPolicy."""

    def test_root_is_resolved(self, tmp_path):
        policy = SandboxPolicy(root=tmp_path / "a" / "..")
        assert policy.root == tmp_path.resolve()

    def test_rejects_non_positive_timeout(self, tmp_path):
        with pytest.raises(ValueError):
            SandboxPolicy(root=tmp_path, timeout=0)

    def test_rejects_non_positive_output_budget(self, tmp_path):
        with pytest.raises(ValueError):
            SandboxPolicy(root=tmp_path, max_output_bytes=0)

    def test_build_environment_keeps_only_allowlist(self, tmp_path):
        policy = SandboxPolicy(root=tmp_path, environment_allowlist={"PATH"})
        env = policy.build_environment({"PATH": "/bin", "API_KEY": "secret"})
        assert env == {"PATH": "/bin"}

    def test_contains(self, tmp_path):
        policy = SandboxPolicy(root=tmp_path)
        assert policy.contains("notes.txt")
        assert policy.contains(tmp_path / "sub" / "file")
        assert not policy.contains("../outside")
        assert not policy.contains("/")


class TestConfinementCheck:
    """Tests for static cd-target detection."""

    def test_plain_command_has_no_escape(self, tmp_path):
        assert find_confinement_escape("ls -la", tmp_path) is None

    def test_cd_parent_escapes(self, tmp_path):
        assert find_confinement_escape("cd .. && ls", tmp_path) == ".."

    def test_cd_absolute_outside_escapes(self, tmp_path):
        assert find_confinement_escape("cd /", tmp_path) == "/"

    def test_cd_inside_root_allowed(self, tmp_path):
        (tmp_path / "sub").mkdir()
        assert find_confinement_escape("cd sub && ls", tmp_path) is None

    def test_targets_resolve_cumulatively(self, tmp_path):
        (tmp_path / "sub").mkdir()
        assert find_confinement_escape("cd sub; cd ../..", tmp_path) == "../.."

    def test_bare_cd_goes_home(self, tmp_path):
        home = str(tmp_path.parent)
        assert find_confinement_escape("cd", tmp_path, home=home) == home

    def test_tilde_expands_to_home(self, tmp_path):
        assert find_confinement_escape("cd ~", tmp_path, home="/elsewhere") == "/elsewhere"

    def test_runtime_targets_are_skipped(self, tmp_path):
        assert find_confinement_escape("cd $HOME", tmp_path) is None
        assert find_confinement_escape("cd -", tmp_path) is None

    def test_cd_as_argument_is_not_a_command(self, tmp_path):
        assert find_confinement_escape("echo cd ..", tmp_path) is None

    def test_unparseable_command_is_left_to_shell(self, tmp_path):
        assert find_confinement_escape("echo 'unterminated", tmp_path) is None


class TestCommandOutcome:
    """Tests for rendering command results."""

    def test_empty_output(self):
        outcome = CommandOutcome(command="true", exit_code=0, stdout="", stderr="")
        assert outcome.render() == "Command executed (no output)"

    def test_nonzero_exit_is_reported(self):
        outcome = CommandOutcome(command="false", exit_code=1, stdout="", stderr="nope\n")
        assert outcome.render() == "exit code 1\nnope\n"

    def test_streams_are_joined(self):
        outcome = CommandOutcome(command="x", exit_code=0, stdout="out\n", stderr="err\n")
        assert outcome.output == "out\nerr\n"


@posix_only
class TestCommandExecutor:
    """Tests for running real commands."""

    def test_runs_in_sandbox_root(self, executor, policy, tmp_path):
        (tmp_path / "hello.txt").write_text("hi")
        outcome = executor.execute("ls", policy)
        assert outcome.success
        assert "hello.txt" in outcome.stdout

    def test_nonzero_exit_is_an_outcome(self, executor, policy):
        outcome = executor.execute("echo failing >&2; exit 3", policy)
        assert outcome.exit_code == 3
        assert "failing" in outcome.stderr
        assert outcome.render().startswith("exit code 3")

    def test_captures_both_streams(self, executor, policy):
        outcome = executor.execute("echo out; echo err 1>&2", policy)
        assert "out" in outcome.output
        assert "err" in outcome.output

    def test_environment_is_filtered(self, executor, policy, monkeypatch):
        monkeypatch.setenv("AICLI_TEST_SECRET", "hunter2-value")
        outcome = executor.execute("env", policy)
        assert "hunter2-value" not in outcome.stdout
        assert "PATH=" in outcome.stdout

    def test_timeout_kills_command(self, executor, tmp_path):
        policy = SandboxPolicy(root=tmp_path, timeout=0.5)
        start = time.monotonic()
        with pytest.raises(ExecutionError) as exc_info:
            executor.execute("echo started; sleep 5", policy)
        assert exc_info.value.kind is ExecutionErrorKind.TIMEOUT
        assert time.monotonic() - start < 4
        assert "started" in exc_info.value.partial_output

    def test_interrupt_kills_command(self, executor, tmp_path):
        policy = SandboxPolicy(root=tmp_path, timeout=10.0)
        interrupt = threading.Timer(0.3, signal.pthread_kill, args=(threading.get_ident(), signal.SIGINT))
        interrupt.start()
        try:
            with pytest.raises(KeyboardInterrupt):
                executor.execute("sleep 1.5; touch late_marker", policy)
        finally:
            interrupt.cancel()
        time.sleep(2)
        assert not (tmp_path / "late_marker").exists()

    def test_output_overflow_stops_capture(self, executor, tmp_path):
        policy = SandboxPolicy(root=tmp_path, timeout=10.0, max_output_bytes=1000)
        with pytest.raises(ExecutionError) as exc_info:
            executor.execute("yes", policy)
        assert exc_info.value.kind is ExecutionErrorKind.OUTPUT_OVERFLOW
        assert len(exc_info.value.stdout.encode()) <= 1000

    def test_cd_outside_root_is_refused_before_spawn(self, executor, policy, tmp_path):
        marker = tmp_path.parent / f"escaped-{tmp_path.name}"
        with pytest.raises(ExecutionError) as exc_info:
            executor.execute(f"cd .. && touch {marker.name}", policy)
        assert exc_info.value.kind is ExecutionErrorKind.CONFINEMENT
        assert not marker.exists()

    def test_empty_command(self, executor, policy):
        with pytest.raises(ExecutionError) as exc_info:
            executor.execute("   ", policy)
        assert exc_info.value.kind is ExecutionErrorKind.SPAWN_FAILURE

    def test_missing_root(self, executor, tmp_path):
        policy = SandboxPolicy(root=tmp_path / "missing")
        with pytest.raises(ExecutionError) as exc_info:
            executor.execute("ls", policy)
        assert exc_info.value.kind is ExecutionErrorKind.SPAWN_FAILURE

    def test_missing_shell_is_spawn_failure(self, policy):
        executor = CommandExecutor(shell=ShellInfo(str(Path("/nonexistent/shell")), "-c", "none"))
        with pytest.raises(ExecutionError) as exc_info:
            executor.execute("ls", policy)
        assert exc_info.value.kind is ExecutionErrorKind.SPAWN_FAILURE
