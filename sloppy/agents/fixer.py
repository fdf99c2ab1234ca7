"""
SLOPPY Fixer: the tool-loop agent that remediates one issue.

Operates in a read-execute-observe loop. It pulls context on demand,
writes patches through the sandboxed tools, may run checks, and ends the
conversation with `finish` (patch ready) or `skip_issue` (not real).
Verification happens outside the agent; a failed verification comes back
as a corrective user message on the same conversation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from loguru import logger

from sloppy.agents import AgentContext, BaseAgent, recover_json
from sloppy.cancellation import CancelToken
from sloppy.compression import compress_to_tokens, estimate_tokens
from sloppy.router import LLMCapability, RouterResponse
from sloppy.snapshot import BrowserError, FileBrowser
from sloppy.workspace.tools import FIXER_TOOLS, ToolExecutor, ToolResult

FOCUS_RADIUS = 15
NUDGE = "Please use your tools to take action: call `finish` when the fix is written, or `skip_issue` if it is not a real problem."


class Phase(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOL = "executing_tool"
    VERIFYING = "verifying"
    DONE = "done"


FINISHED = "finish"
SKIPPED = "skip_issue"
EXHAUSTED = "exhausted"


@dataclass
class Conversation:
    """One attempt's chat history plus where the loop stands."""
    messages: list[dict[str, Any]]
    max_turns: int
    phase: Phase = Phase.AWAITING_MODEL
    turns: int = 0
    outcome: str | None = None
    summary: str = ""
    commit_message: str | None = None
    skip_reason: str | None = None
    tokens_used: int = 0
    tool_results: list[ToolResult] = field(default_factory=list)

    @property
    def turns_left(self) -> int:
        return max(0, self.max_turns - self.turns)


# ---------------------------------------------------------------------------
# Prompt context
# ---------------------------------------------------------------------------

def focus_window(content: str, line: int, end_line: int, radius: int = FOCUS_RADIUS) -> str:
    """Numbered lines around the issue location."""
    lines = content.splitlines()
    lo = max(1, line - radius)
    hi = min(len(lines), end_line + radius)
    return "\n".join(f"{n:>5}| {lines[n - 1]}" for n in range(lo, hi + 1))


def prepare_file_context(browser: FileBrowser, rel_path: str, line: int, end_line: int, token_budget: int) -> dict[str, str]:
    """The issue's neighbourhood verbatim, then the whole file compressed into what is left."""
    try:
        content = browser.read(rel_path)
    except BrowserError as e:
        return {rel_path: f"(could not read: {e})"}

    window = focus_window(content, line, end_line)
    context = {f"{rel_path} (lines around the issue)": window}
    remaining = token_budget - estimate_tokens(window)
    if remaining > 64 and len(content.splitlines()) > 2 * FOCUS_RADIUS:
        compressed = compress_to_tokens(content, Path(rel_path).suffix, remaining)
        label = f"{rel_path} (full file{', compressed' if compressed.compressed else ''})"
        context[label] = compressed.content
    return context


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------

class FixerAgent(BaseAgent):
    role = "fixer"

    system_prompt = """You are the SLOPPY fixer, a careful engineer cleaning up one reported code-quality issue.

You operate in a loop with tools that act on a git working copy of the repository.
1. Read before you write. If you need more context than you were given, use `read_file` or `list_directory`.
2. Change as little as possible with `write_patch`. Prefer `edits` (search/replace blocks whose search text matches exactly once).
3. You may run the project's checks with `run_command`.
4. When your fix is written, call `finish` with a short summary and a one-line commit subject.
5. If the issue is a false positive or no longer applies, call `skip_issue` with the reason.

Never touch files unrelated to the issue. Never stage, commit or push; that is done for you.
"""

    def __init__(self, llm: LLMCapability, max_turns: int = 12):
        super().__init__(llm)
        self.max_turns = max_turns

    def build_messages(self, context: AgentContext) -> list[dict[str, Any]]:
        issue = context.issue
        location = f"{issue.file_path}:{issue.line}"
        if issue.end_line and issue.end_line != issue.line:
            location += f"-{issue.end_line}"

        file_context = ""
        for fname, content in context.file_context.items():
            file_context += f"\n--- {fname} ---\n{content}\n"

        user_content = f"""Issue {issue.id[:8]}: [{issue.type.value}] severity={issue.severity.value}
Location: {location}
Detected by: {issue.source or 'unknown'}
Problem: {issue.message}
{file_context}
Use your tools to fix this issue. When finished, call `finish`."""

        return [self._system_msg(), self._user_msg(user_content)]

    def start(self, context: AgentContext) -> Conversation:
        return Conversation(messages=self.build_messages(context), max_turns=self.max_turns)

    def correct(self, conversation: Conversation, feedback: str) -> Conversation:
        """Reopen a finished conversation with check feedback and a fresh turn budget."""
        conversation.messages.append(self._user_msg(
            "Your change was rolled back because it did not pass the checks.\n\n"
            f"{feedback}\n\n"
            "The working copy is back to its state before your change. "
            "Fix the issue again without breaking the checks, then call `finish`."
        ))
        conversation.max_turns = conversation.turns + self.max_turns
        conversation.phase = Phase.AWAITING_MODEL
        conversation.outcome = None
        return conversation

    def run(self, conversation: Conversation, executor: ToolExecutor, cancel: CancelToken | None = None) -> Conversation:
        """Drive the model until a terminal tool call or the turn cap."""
        while conversation.turns < conversation.max_turns:
            if cancel is not None:
                cancel.check()

            conversation.phase = Phase.AWAITING_MODEL
            conversation.turns += 1
            logger.debug(f"[FIXER] Turn {conversation.turns}/{conversation.max_turns}")
            response = self.llm.complete(conversation.messages, tools=FIXER_TOOLS)
            conversation.tokens_used += response.tokens_used
            self._append_assistant(conversation, response)

            if not response.tool_calls:
                conversation.messages.append(self._user_msg(NUDGE))
                continue

            conversation.phase = Phase.EXECUTING_TOOL
            terminal: ToolResult | None = None
            for tool_call in response.tool_calls:
                if terminal is not None:
                    self._append_tool(conversation, tool_call.id, tool_call.name, "Ignored: the conversation already ended.")
                    continue
                if cancel is not None:
                    cancel.check()

                arguments = recover_json(tool_call.arguments)
                if arguments is None:
                    result = ToolResult(tool_call.name, False, "Error: Invalid JSON in arguments.")
                else:
                    result = executor.dispatch(tool_call.name, arguments)
                logger.info(f"[FIXER] Tool call: {tool_call.name} ({'ok' if result.ok else 'error'})")
                conversation.tool_results.append(result)
                self._append_tool(conversation, tool_call.id, tool_call.name, result.content)
                if result.terminal:
                    terminal = result

            if terminal is not None:
                return self._conclude(conversation, terminal)

        logger.warning(f"[FIXER] Turn budget of {conversation.max_turns} exhausted without `finish`")
        conversation.outcome = EXHAUSTED
        conversation.phase = Phase.DONE
        return conversation

    def _conclude(self, conversation: Conversation, result: ToolResult) -> Conversation:
        if result.name == SKIPPED:
            conversation.outcome = SKIPPED
            conversation.skip_reason = str(result.arguments.get("reason") or "Not actionable")
            conversation.phase = Phase.DONE
        else:
            conversation.outcome = FINISHED
            conversation.summary = str(result.arguments.get("summary") or "")
            conversation.commit_message = result.arguments.get("commit_message") or None
            conversation.phase = Phase.VERIFYING
        return conversation

    def _append_assistant(self, conversation: Conversation, response: RouterResponse) -> None:
        message: dict[str, Any] = {"role": "assistant", "content": response.content or None}
        if response.tool_calls:
            message["tool_calls"] = [tc.as_message() for tc in response.tool_calls]
        conversation.messages.append(message)

    def _append_tool(self, conversation: Conversation, call_id: str, name: str, content: str) -> None:
        conversation.messages.append({"role": "tool", "tool_call_id": call_id, "name": name, "content": content})
