"""
SLOPPY Router: Vendor-Agnostic Model Abstraction

Routes fixer calls through LiteLLM so the remediation loop never knows
which vendor is backing it. Handles the session budget, transport
retries, tool-call normalization and structured logging.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Protocol

import litellm
from loguru import logger
from pydantic import BaseModel, Field
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from sloppy.config_loader import SloppyConfig
from sloppy.state import SessionConfig


class BudgetExceededError(Exception):
    pass


TRANSIENT_ERRORS = (
    litellm.APIConnectionError,
    litellm.Timeout,
    litellm.RateLimitError,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
)


# ---------------------------------------------------------------------------
# Usage Tracking
# ---------------------------------------------------------------------------

@dataclass
class UsageRecord:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    call_count: int = 0


@dataclass
class BudgetTracker:
    """Tracks token + dollar spend per session."""
    max_tokens: int = 500_000
    max_dollars: float = 20.0
    usage: UsageRecord = field(default_factory=UsageRecord)

    @property
    def tokens_remaining(self) -> int:
        return max(0, self.max_tokens - self.usage.total_tokens)

    @property
    def dollars_remaining(self) -> float:
        return max(0.0, self.max_dollars - self.usage.estimated_cost)

    @property
    def budget_exceeded(self) -> bool:
        return self.usage.total_tokens >= self.max_tokens or self.usage.estimated_cost >= self.max_dollars

    def record(self, response: Any) -> None:
        """Record usage and estimated cost from a LiteLLM response."""
        usage = getattr(response, "usage", None)
        if usage:
            self.usage.prompt_tokens += getattr(usage, "prompt_tokens", 0) or 0
            self.usage.completion_tokens += getattr(usage, "completion_tokens", 0) or 0
            self.usage.total_tokens += getattr(usage, "total_tokens", 0) or 0

        try:
            self.usage.estimated_cost += litellm.completion_cost(completion_response=response)
        except Exception as e:  # litellm raises a bare Exception for unmapped models
            logger.debug(f"[ROUTER] No cost data for this model: {e}")

        self.usage.call_count += 1

    def summary(self) -> dict:
        return {
            "total_tokens": self.usage.total_tokens,
            "estimated_cost": round(self.usage.estimated_cost, 4),
            "call_count": self.usage.call_count,
            "tokens_remaining": self.tokens_remaining,
            "dollars_remaining": round(self.dollars_remaining, 4),
        }


# ---------------------------------------------------------------------------
# Model capability helpers
# ---------------------------------------------------------------------------

def _supports_temperature(model: str) -> bool:
    """GPT-5 and the o-series reasoning models reject a custom temperature."""
    normalized = model.lower().split("/")[-1]
    return not normalized.startswith(("gpt-5", "o1", "o3", "o4"))


def _build_kwargs(
    model: str,
    messages: list[dict[str, Any]],
    temperature: float,
    max_tokens: int,
    tools: list[dict] | None,
    timeout: float | None,
) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
    }
    if _supports_temperature(model):
        kwargs["temperature"] = temperature
    if tools:
        kwargs["tools"] = tools
        kwargs["tool_choice"] = "auto"
    if timeout:
        kwargs["timeout"] = timeout
    return kwargs


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class ToolCall(BaseModel):
    id: str
    name: str
    arguments: str = "{}"

    def as_message(self) -> dict[str, Any]:
        """OpenAI-style entry for an assistant message's `tool_calls`."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


class RouterResponse(BaseModel):
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    model: str = ""
    tokens_used: int = 0
    cost: float = 0.0
    latency_ms: int = 0


def _normalize_tool_calls(raw: Any) -> list[ToolCall]:
    calls = []
    for n, tc in enumerate(raw or []):
        function = getattr(tc, "function", None)
        if function is None and isinstance(tc, dict):
            function = tc.get("function", {})
            calls.append(ToolCall(
                id=tc.get("id") or f"call_{n}",
                name=function.get("name", ""),
                arguments=function.get("arguments") or "{}",
            ))
            continue
        calls.append(ToolCall(
            id=getattr(tc, "id", None) or f"call_{n}",
            name=getattr(function, "name", "") or "",
            arguments=getattr(function, "arguments", None) or "{}",
        ))
    return calls


class LLMCapability(Protocol):
    """What the remediation loop needs from a model."""

    def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict] | None = None,
        **options: Any,
    ) -> RouterResponse:
        ...


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class Router:
    """
    LiteLLM-backed implementation of LLMCapability.

    The budget is checked before every call; a session that has spent it
    cannot make further calls.
    """

    def __init__(
        self,
        model: str,
        temperature: float = 0.2,
        max_tokens: int = 4096,
        request_timeout: float | None = 120.0,
        max_session_tokens: int = 500_000,
        max_session_dollars: float = 20.0,
    ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.request_timeout = request_timeout
        self.budget = BudgetTracker(max_tokens=max_session_tokens, max_dollars=max_session_dollars)

        litellm.suppress_debug_info = True

    @classmethod
    def from_config(cls, config: SloppyConfig, session_config: SessionConfig) -> "Router":
        return cls(
            model=session_config.litellm_model,
            temperature=config.routing.temperature,
            max_tokens=config.routing.max_tokens,
            request_timeout=config.routing.request_timeout_seconds,
            max_session_tokens=config.limits.max_tokens_per_session,
            max_session_dollars=config.limits.max_dollars_per_session,
        )

    @retry(
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        reraise=True,
    )
    def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict] | None = None,
        **options: Any,
    ) -> RouterResponse:
        """Send a completion request through LiteLLM.

        Raises:
            BudgetExceededError: the session has spent its token or dollar budget.
        """
        if self.budget.budget_exceeded:
            raise BudgetExceededError(f"Budget exceeded: {self.budget.summary()}")

        start = time.monotonic()
        logger.debug(f"[ROUTER] fixer -> {self.model} ({len(messages)} messages)")

        kwargs = _build_kwargs(
            self.model,
            messages,
            options.get("temperature", self.temperature),
            options.get("max_tokens", self.max_tokens),
            tools,
            options.get("timeout", self.request_timeout),
        )
        response = litellm.completion(**kwargs)
        elapsed_ms = int((time.monotonic() - start) * 1000)

        self.budget.record(response)
        message = response.choices[0].message

        logger.debug(
            f"[ROUTER] complete: "
            f"{self.budget.usage.total_tokens} tokens, "
            f"${self.budget.usage.estimated_cost:.4f}, "
            f"{elapsed_ms}ms"
        )

        return RouterResponse(
            content=message.content or "",
            tool_calls=_normalize_tool_calls(getattr(message, "tool_calls", None)),
            model=self.model,
            tokens_used=getattr(response.usage, "total_tokens", 0) or 0,
            cost=self.budget.usage.estimated_cost,
            latency_ms=elapsed_ms,
        )
