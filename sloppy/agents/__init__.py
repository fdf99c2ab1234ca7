"""
SLOPPY Agents

An agent is:
  - A system prompt
  - A message template built from the issue at hand
  - A loop that turns model output into actions

Agents are stateless between issues. State lives in the store and the
cleaning branch.
"""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field

from sloppy.router import LLMCapability
from sloppy.state import Issue


class AgentContext(BaseModel):
    """What an agent gets to know about one remediation attempt."""
    session_id: str
    issue: Issue
    repo_path: str
    working_dir: str
    file_context: dict[str, str] = Field(default_factory=dict)  # filename -> prepared content
    extra: dict[str, Any] = Field(default_factory=dict)


class BaseAgent(ABC):
    """
    Subclasses define:
      - role: str, used in logs
      - system_prompt: str
      - build_messages(): the opening chat messages
      - run(): drive the model
    """

    role: str = "unknown"
    system_prompt: str = "You are a helpful assistant."

    def __init__(self, llm: LLMCapability):
        self.llm = llm

    @abstractmethod
    def build_messages(self, context: AgentContext) -> list[dict[str, Any]]:
        """Build the message list for the first LLM call."""
        ...

    @abstractmethod
    def run(self, *args: Any, **kwargs: Any) -> Any:
        ...

    def _system_msg(self) -> dict[str, str]:
        return {"role": "system", "content": self.system_prompt}

    def _user_msg(self, content: str) -> dict[str, str]:
        return {"role": "user", "content": content}


# ---------------------------------------------------------------------------
# JSON recovery for sloppy model output
# ---------------------------------------------------------------------------

def strip_markdown(content: str) -> str:
    """Remove ``` or ```json wrappers."""
    content = content.strip()
    if content.startswith("```"):
        content = re.sub(r"^```(?:json)?\s*|\s*```$", "", content)
    return content.strip()


def extract_outer_json(text: str) -> str | None:
    """First top-level JSON object, found by brace tracking."""
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    for i in range(start, len(text)):
        if text[i] == "{":
            depth += 1
        elif text[i] == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def balance_json(text: str) -> str | None:
    """Close an unterminated string, then every open bracket in nesting order."""
    stack: list[str] = []
    in_string = escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack and stack[-1] == ch:
            stack.pop()

    repaired = text + ('"' if in_string else "") + "".join(reversed(stack))
    return repaired if repaired != text else None


def recover_json(raw: str) -> dict[str, Any] | None:
    """Best-effort parse of a JSON object a model produced, possibly truncated."""
    text = strip_markdown(raw or "")
    if not text:
        return {}
    candidates = [text, extract_outer_json(text), balance_json(text)]
    for candidate in candidates:
        if not candidate:
            continue
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            if candidate is not text:
                logger.debug("[AGENT] Recovered malformed JSON arguments")
            return value
    return None
