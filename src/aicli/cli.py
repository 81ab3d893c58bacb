"""
Command-line interface: the interactive REPL and one-shot prompt mode.

REPL commands:
  exit         leave
  clear        start a new conversation
  !<command>   run a command in the sandbox yourself; the output goes to the model
  !            open a shell sub-loop; everything you run goes to the model on exit

Ctrl+C while the assistant is working cancels after the current step.
Ctrl+C twice at the prompt exits.

Output is plain text; no TUI libraries.
"""

import argparse
import itertools
import logging
import signal
import sys
import threading
from collections.abc import Callable
from pathlib import Path
from typing import TextIO

from aicli import __version__
from aicli.builtin_tools import build_default_registry
from aicli.config import AppConfig, ConfigError
from aicli.dispatcher import ConfirmationRequest, ToolDispatcher, describe_call
from aicli.events import EventLog
from aicli.llm import LLMClient
from aicli.orchestrator import CancellationToken, Failed, FinalAnswer, Orchestrator, TurnOutcome
from aicli.prompts import build_system_prompt
from aicli.safety import RiskClassifier, SecretsRedactor
from aicli.sandbox import CommandExecutor, ExecutionError, SandboxPolicy, default_shell
from aicli.session import Session
from aicli.tools import ToolRegistry
from aicli.types import Message, Role, RiskTier, ToolStatus

logger = logging.getLogger(__name__)

DEBUG_LOG = Path("debug.log")
DEBUG_EVENTS = Path("debug-events.jsonl")
EXIT_COMMANDS = ("exit", "quit")


def setup_logging(debug: bool, log_path: Path = DEBUG_LOG) -> None:
    """DEBUG to a fresh debug.log with --debug, otherwise WARNING+ to stderr."""
    if debug:
        logging.basicConfig(
            level=logging.DEBUG,
            filename=log_path,
            filemode="w",
            encoding="utf-8",
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            force=True,
        )
    else:
        logging.basicConfig(
            level=logging.WARNING,
            stream=sys.stderr,
            format="%(levelname)s: %(message)s",
            force=True,
        )
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)


class Spinner:
    """A one-line spinner on a terminal stream. Does nothing when not a TTY."""

    FRAMES = "|/-\\"

    def __init__(self, stream: TextIO = sys.stderr, interval: float = 0.1) -> None:
        self.stream = stream
        self.interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._width = 0

    @property
    def enabled(self) -> bool:
        return hasattr(self.stream, "isatty") and self.stream.isatty()

    def start(self, label: str) -> None:
        if not self.enabled or self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._spin, args=(label,), daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join()
        self._thread = None
        self.stream.write("\r" + " " * self._width + "\r")
        self.stream.flush()

    def _spin(self, label: str) -> None:
        for frame in itertools.cycle(self.FRAMES):
            text = f"{frame} {label}..."
            self._width = len(text)
            self.stream.write("\r" + text)
            self.stream.flush()
            if self._stop.wait(self.interval):
                break


class ConfirmationPrompt:
    """
    Asks the operator about risky tool calls: y(es), n(o) or a(lways).

    "always" approves the same tool for the rest of the session, except
    for destructive calls, which are asked about every time. With
    auto_approve, ambiguous calls are approved without asking.
    """

    def __init__(
        self,
        auto_approve: bool = False,
        input_fn: Callable[[str], str] = input,
        output: TextIO = sys.stdout,
    ) -> None:
        self.auto_approve = auto_approve
        self.input_fn = input_fn
        self.output = output
        self.always: set[str] = set()

    def __call__(self, request: ConfirmationRequest) -> bool:
        if request.tier is not RiskTier.DESTRUCTIVE:
            if self.auto_approve or request.tool_name in self.always:
                logger.info(f"Auto-approved {request.tool_name}")
                return True

        print(request.summary, file=self.output)
        choices = "[y/N]" if request.tier is RiskTier.DESTRUCTIVE else "[y/N/a]"
        while True:
            answer = self.input_fn(f"Allow this? {choices} ").strip().lower()
            if answer in ("y", "yes"):
                return True
            if answer in ("", "n", "no"):
                return False
            if answer in ("a", "always") and request.tier is not RiskTier.DESTRUCTIVE:
                self.always.add(request.tool_name)
                return True
            print("Please answer y or n" + (" or a" if "a" in choices else "") + ".", file=self.output)


class AssistantApp:
    """Wires the session, dispatcher and orchestrator together and talks to the user."""

    def __init__(
        self,
        config: AppConfig,
        model: LLMClient,
        registry: ToolRegistry,
        classifier: RiskClassifier,
        policy: SandboxPolicy,
        executor: CommandExecutor,
        confirmation: ConfirmationPrompt,
        system_prompt: str = "",
        event_log: EventLog | None = None,
        redactor: SecretsRedactor | None = None,
        output: TextIO = sys.stdout,
        input_fn: Callable[[str], str] = input,
        spinner: Spinner | None = None,
    ) -> None:
        self.config = config
        self.model = model
        self.policy = policy
        self.executor = executor
        self.confirmation = confirmation
        self.output = output
        self.input_fn = input_fn
        self.event_log = event_log if event_log is not None else EventLog()
        self.cancel_token = CancellationToken()
        self.session = Session(system_prompt=system_prompt)
        self.dispatcher = ToolDispatcher(
            registry=registry,
            classifier=classifier,
            confirm=self._confirm,
            max_output_bytes=config.loop.tool_output_bytes,
            handler_timeout=config.loop.handler_timeout,
            event_log=self.event_log,
            redactor=redactor,
        )
        self.orchestrator = Orchestrator(
            model=model,
            dispatcher=self.dispatcher,
            config=config.loop,
            cancel_token=self.cancel_token,
            progress=spinner or Spinner(),
            listener=self._show,
            event_log=self.event_log,
        )
        self._busy = False
        self._confirming = False

    @classmethod
    def from_config(cls, config: AppConfig, auto_approve: bool = False) -> "AssistantApp":
        policy = config.sandbox.to_policy()
        if not policy.root.is_dir():
            raise ConfigError(f"Sandbox root is not a directory: {policy.root}")
        shell = default_shell()
        executor = CommandExecutor(shell)
        classifier = RiskClassifier(policy.root)
        registry = build_default_registry(config, classifier, executor=executor)
        redactor = SecretsRedactor(known_secrets=[
            config.llm.api_key,
            config.services.smtp_password,
            config.services.google_search_api_key,
            config.services.alpha_vantage_api_key,
        ])
        return cls(
            config=config,
            model=LLMClient(config.llm, tools=registry.get_schemas()),
            registry=registry,
            classifier=classifier,
            policy=policy,
            executor=executor,
            confirmation=ConfirmationPrompt(auto_approve=auto_approve),
            system_prompt=build_system_prompt(shell.display_name, policy.root),
            redactor=redactor,
        )

    def close(self) -> None:
        self.model.close()

    def __enter__(self) -> "AssistantApp":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # =========================================================================
    # Conversation
    # =========================================================================

    def ask(self, text: str) -> TurnOutcome:
        """Send one user message and run until the model is done."""
        self.cancel_token.reset()
        self._busy = True
        try:
            outcome = self.orchestrator.run(self.session, text)
        finally:
            self._busy = False
        if isinstance(outcome, FinalAnswer):
            if outcome.text:
                print(f"\n{outcome.text}\n", file=self.output)
        elif isinstance(outcome, Failed):
            detail = f": {outcome.detail}" if outcome.detail else ""
            print(f"\n[{outcome.reason}]{detail}\n", file=self.output)
        return outcome

    def run_prompt(self, text: str) -> int:
        """One-shot mode. Exit status 0 on a final answer, 1 otherwise."""
        with self._sigint_handler():
            outcome = self.ask(text)
        return 0 if isinstance(outcome, FinalAnswer) else 1

    def repl(self) -> int:
        print(f"aicli {__version__} - type 'exit' to quit, '!cmd' to run a command yourself.", file=self.output)
        interrupted = False
        with self._sigint_handler():
            while True:
                try:
                    line = self.input_fn(f"[{self.session.content_length}] > ")
                except KeyboardInterrupt:
                    if interrupted:
                        print(file=self.output)
                        return 0
                    interrupted = True
                    print("\n(Press Ctrl+C again to exit)", file=self.output)
                    continue
                except EOFError:
                    print(file=self.output)
                    return 0
                interrupted = False
                if not self.handle_line(line):
                    return 0

    def handle_line(self, line: str) -> bool:
        """Handle one REPL input line. Returns False when the user wants to leave."""
        text = line.strip()
        if text.lower() in EXIT_COMMANDS:
            return False
        if not text:
            print("Please enter a message.", file=self.output)
            return True
        if text.lower() == "clear":
            self.session.clear()
            self.event_log.clear()
            print("Conversation cleared.", file=self.output)
            return True
        if text == "!":
            self.shell_loop()
            return True
        if text.startswith("!"):
            command = text[1:].strip()
            output = self.run_command(command)
            if output is not None:
                self.ask(f"I ran the command `{command}` myself. Output:\n{output}")
            return True
        self.ask(text)
        return True

    def run_command(self, command: str) -> str | None:
        """
        Run a command typed by the user in the sandbox and print its output.

        Returns None when Ctrl+C interrupted it; the command is killed.
        """
        try:
            rendered = self.executor.execute(command, self.policy).render()
        except KeyboardInterrupt:
            print("\n[interrupted]", file=self.output)
            return None
        except ExecutionError as e:
            rendered = f"[{e.kind.value}] {e.message}"
            if e.partial_output.strip():
                rendered += f"\n{e.partial_output}"
        print(rendered, file=self.output)
        return rendered

    def shell_loop(self) -> None:
        """Interactive shell sub-loop; accumulated output is sent to the model on exit."""
        print("Entering shell mode. Type 'exit' to return.", file=self.output)
        transcript: list[str] = []
        while True:
            try:
                command = self.input_fn("shell> ").strip()
            except (EOFError, KeyboardInterrupt):
                print(file=self.output)
                break
            if command.lower() in EXIT_COMMANDS:
                break
            if not command:
                continue
            rendered = self.run_command(command)
            if rendered is not None:
                transcript.append(f"$ {command}\n{rendered}")
        if transcript:
            self.ask("I ran these commands myself:\n\n" + "\n\n".join(transcript))

    # =========================================================================
    # Callbacks
    # =========================================================================

    def _confirm(self, request: ConfirmationRequest) -> bool:
        self._confirming = True
        try:
            return self.confirmation(request)
        finally:
            self._confirming = False

    def _show(self, message: Message) -> None:
        if message.role is Role.ASSISTANT and message.has_tool_calls:
            if message.content.strip():
                print(f"\n{message.content.strip()}", file=self.output)
            for call in message.tool_calls:
                first_line = describe_call(call, RiskTier.SAFE).split("\n")[0]
                print(f"-> {first_line.split('] ', 1)[-1]}", file=self.output)
        elif message.role is Role.TOOL and message.status is not ToolStatus.OK:
            header = message.content.split("\n", 1)[0]
            print(f"   {message.name}: {header}", file=self.output)

    def _sigint_handler(self) -> "_SigintScope":
        return _SigintScope(self)

    def _on_sigint(self, signum: int, frame: object) -> None:
        if self._busy:
            self.cancel_token.cancel()
            print("\nCancelling after the current step...", file=sys.stderr)
            if self._confirming:
                raise KeyboardInterrupt
            return
        raise KeyboardInterrupt


class _SigintScope:
    """Installs the app's SIGINT handler for the duration of a with block."""

    def __init__(self, app: AssistantApp) -> None:
        self.app = app
        self._previous = None

    def __enter__(self) -> None:
        if threading.current_thread() is threading.main_thread():
            self._previous = signal.signal(signal.SIGINT, self.app._on_sigint)

    def __exit__(self, *args: object) -> None:
        if self._previous is not None:
            signal.signal(signal.SIGINT, self._previous)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="aicli",
        description="A terminal assistant that runs commands, edits files and searches the web for you.",
    )
    parser.add_argument("-p", "--prompt", help="Send a single prompt, print the answer and exit")
    parser.add_argument("--debug", action="store_true", help=f"Write a debug log to {DEBUG_LOG}")
    parser.add_argument(
        "--auto-approve",
        action="store_true",
        help="Approve ambiguous tool calls without asking (destructive ones still ask)",
    )
    parser.add_argument("--config", help="Config file (default: ~/.aicli.conf)")
    parser.add_argument("--max-turns", type=int, help="Model round trips allowed per message")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.debug)

    try:
        config = AppConfig.load(args.config)
        if args.max_turns is not None:
            if args.max_turns < 1:
                raise ConfigError("--max-turns must be at least 1")
            config.loop.max_turns = args.max_turns
        app = AssistantApp.from_config(config, auto_approve=args.auto_approve)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    if args.debug:
        logger.debug("Configuration:\n" + config.summary())

    with app:
        try:
            if args.prompt:
                return app.run_prompt(args.prompt)
            return app.repl()
        finally:
            if args.debug:
                app.event_log.save(DEBUG_EVENTS)


if __name__ == "__main__":
    sys.exit(main())
