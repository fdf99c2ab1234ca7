"""
SLOPPY Tool Executor

The only way the model touches the repository. Every tool call is
confined to the worktree root: reads go through the FileBrowser (path
confinement + size cap), writes through the patch helpers, and shell
commands through a policy check and a per-command timeout. A running
command is polled so a stop or a session deadline kills it promptly.

Tool failures never escape as exceptions; `dispatch()` turns them into
error text for the model.
"""

from __future__ import annotations

import json
import os
import shlex
import signal
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from sloppy.cancellation import AttemptAbandoned, CancelToken
from sloppy.snapshot import BrowserError, FileBrowser
from sloppy.workspace.patch import PatchError, apply_blocks, apply_unified_diff, write_content


class ToolExecutionError(Exception):
    pass


class ToolViolationError(ToolExecutionError):
    pass


class CommandTimeoutError(ToolExecutionError):
    pass


FIXER_TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "read_file",
            "description": "Read a file from the repository. Optionally limit to a line range.",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {"type": "string"},
                    "start_line": {"type": "integer"},
                    "end_line": {"type": "integer"},
                },
                "required": ["path"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "list_directory",
            "description": "List files and folders under a repository path.",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {"type": "string"},
                    "depth": {"type": "integer"},
                },
                "required": [],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "write_patch",
            "description": (
                "Change one file. Provide `edits` (search/replace blocks, each search must match exactly once), "
                "or `content` (complete new file), or `diff` (unified diff)."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {"type": "string"},
                    "edits": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {"search": {"type": "string"}, "replace": {"type": "string"}},
                            "required": ["search", "replace"],
                        },
                    },
                    "content": {"type": "string"},
                    "diff": {"type": "string"},
                },
                "required": ["path"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "run_command",
            "description": "Run a shell command in the repository root (tests, linters, compilers).",
            "parameters": {
                "type": "object",
                "properties": {"command": {"type": "string"}},
                "required": ["command"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "finish",
            "description": "Your fix is written. Verification and commit happen next.",
            "parameters": {
                "type": "object",
                "properties": {
                    "summary": {"type": "string", "description": "What you changed and why"},
                    "commit_message": {"type": "string", "description": "One-line commit subject"},
                },
                "required": ["summary"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "skip_issue",
            "description": "The reported issue is a false positive or no longer applies. Nothing will be committed.",
            "parameters": {
                "type": "object",
                "properties": {"reason": {"type": "string"}},
                "required": ["reason"],
            },
        },
    },
]

TERMINAL_TOOLS = {"finish", "skip_issue"}


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

def clip(text: str, max_chars: int) -> str:
    """Keep the head and the tail of long output; errors tend to be at the end."""
    if len(text) <= max_chars:
        return text
    head = max_chars // 3
    tail = max_chars - head
    return f"{text[:head]}\n... [{len(text) - max_chars} chars omitted] ...\n{text[-tail:]}"


@dataclass
class CommandResult:
    command: str
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.returncode == 0

    def render(self, max_chars: int = 8000) -> str:
        return clip(
            f"Exit code: {self.returncode}\nSTDOUT:\n{self.stdout}\nSTDERR:\n{self.stderr}",
            max_chars,
        )


@dataclass
class ToolResult:
    name: str
    ok: bool
    content: str
    terminal: bool = False
    arguments: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Shell
# ---------------------------------------------------------------------------

def _kill(proc: subprocess.Popen) -> None:
    if os.name == "posix":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    else:
        proc.kill()
    proc.communicate()


def run_shell(
    command: str,
    cwd: Path,
    timeout: float,
    cancel: CancelToken | None = None,
    poll_interval: float = 0.2,
) -> CommandResult:
    """Run a shell command, killing it on timeout or cancellation."""
    start = time.monotonic()
    proc = subprocess.Popen(
        command,
        shell=True,
        cwd=cwd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        start_new_session=(os.name == "posix"),
    )
    while True:
        try:
            stdout, stderr = proc.communicate(timeout=poll_interval)
            break
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.cancelled:
                _kill(proc)
                raise AttemptAbandoned(cancel.reason)
            if time.monotonic() - start > timeout:
                _kill(proc)
                raise CommandTimeoutError(f"Command timed out after {timeout:g}s: {command}")

    return CommandResult(
        command=command,
        returncode=proc.returncode,
        stdout=stdout or "",
        stderr=stderr or "",
        duration_ms=int((time.monotonic() - start) * 1000),
    )


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class ToolExecutor:
    """Sandboxed tool surface bound to one worktree."""

    def __init__(
        self,
        browser: FileBrowser,
        command_timeout: float = 120.0,
        allowed_commands: list[str] | None = None,
        blocked_patterns: list[str] | None = None,
        max_output_chars: int = 8000,
        cancel: CancelToken | None = None,
    ):
        self.browser = browser
        self.command_timeout = command_timeout
        self.allowed_commands = list(allowed_commands or [])
        self.blocked_patterns = list(blocked_patterns or [])
        self.max_output_chars = max_output_chars
        self.cancel = cancel
        self.touched: set[str] = set()

    @property
    def working_dir(self) -> Path:
        return self.browser.root

    def check_command(self, command: str) -> None:
        if not command or not command.strip():
            raise ToolViolationError("Empty command")
        for pattern in self.blocked_patterns:
            if pattern in command:
                raise ToolViolationError(f"Command blocked by policy ({pattern!r}): {command}")
        if self.allowed_commands:
            try:
                program = shlex.split(command)[0]
            except ValueError as e:
                raise ToolViolationError(f"Cannot parse command: {e}") from e
            if Path(program).name not in self.allowed_commands:
                raise ToolViolationError(
                    f"'{program}' is not an allowed command. Allowed: {', '.join(self.allowed_commands)}"
                )

    def execute(self, command: str, timeout: float | None = None) -> CommandResult:
        """Run a policy-checked shell command in the worktree."""
        self.check_command(command)
        logger.debug(f"[TOOLS] $ {command}")
        return run_shell(command, self.working_dir, timeout or self.command_timeout, self.cancel)

    def dispatch(self, name: str, arguments: dict[str, Any] | str | None) -> ToolResult:
        """Run one tool call. Errors come back as text, never as exceptions."""
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError:
                return ToolResult(name, False, "Error: Invalid JSON in arguments.")
        arguments = arguments or {}
        if not isinstance(arguments, dict):
            return ToolResult(name, False, "Error: Arguments must be a JSON object.")

        if name in TERMINAL_TOOLS:
            return ToolResult(name, True, "Acknowledged.", terminal=True, arguments=arguments)

        handler = {
            "read_file": self._read_file,
            "list_directory": self._list_directory,
            "write_patch": self._write_patch,
            "run_command": self._run_command,
        }.get(name)
        if handler is None:
            return ToolResult(name, False, f"Error: Unknown tool '{name}'.", arguments=arguments)

        try:
            content = handler(arguments)
        except (ToolExecutionError, BrowserError, PatchError) as e:
            logger.info(f"[TOOLS] {name} rejected: {e}")
            return ToolResult(name, False, f"Error: {e}", arguments=arguments)
        except (FileNotFoundError, NotADirectoryError, IsADirectoryError, UnicodeDecodeError) as e:
            return ToolResult(name, False, f"Error: {e}", arguments=arguments)
        except (KeyError, TypeError, ValueError) as e:
            return ToolResult(name, False, f"Error: Bad arguments for {name}: {e}", arguments=arguments)
        return ToolResult(name, True, content, arguments=arguments)

    # -- handlers -----------------------------------------------------------

    def _read_file(self, args: dict[str, Any]) -> str:
        path = args["path"]
        content = self.browser.read(path)
        start = args.get("start_line")
        end = args.get("end_line")
        if start or end:
            lines = content.splitlines()
            lo = max(1, int(start or 1))
            hi = min(len(lines), int(end or len(lines)))
            numbered = [f"{n:>5}| {lines[n - 1]}" for n in range(lo, hi + 1)]
            return f"{path} lines {lo}-{hi}:\n" + "\n".join(numbered)
        return f"Read {len(content)} characters from {path}:\n\n{content}"

    def _list_directory(self, args: dict[str, Any]) -> str:
        tree = self.browser.list(args.get("path") or ".", int(args.get("depth") or 1))
        return tree.render()

    def _write_patch(self, args: dict[str, Any]) -> str:
        path = args["path"]
        target = self.browser.resolve(path)
        rel = self.browser.relative(target)

        edits = args.get("edits")
        content = args.get("content")
        diff = args.get("diff")

        if edits:
            count = apply_blocks(target, edits)
            self.touched.add(rel)
            return f"Applied {count} edit(s) to {rel}."
        if content is not None:
            is_new = write_content(target, content)
            self.touched.add(rel)
            return f"{'Created' if is_new else 'Rewrote'} {rel} ({len(content)} characters)."
        if diff:
            paths = apply_unified_diff(self.working_dir, diff)
            for p in paths:
                self.browser.resolve(p)
                self.touched.add(p)
            return f"Applied diff to {', '.join(paths) or rel}."
        raise ToolExecutionError("write_patch needs one of `edits`, `content` or `diff`")

    def _run_command(self, args: dict[str, Any]) -> str:
        result = self.execute(args["command"])
        return result.render(self.max_output_chars)
