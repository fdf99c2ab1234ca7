from types import SimpleNamespace

import litellm
import pytest
from tenacity import wait_none

from sloppy.config_loader import load_config
from sloppy.router import BudgetExceededError, Router, _build_kwargs, _normalize_tool_calls


def fake_response(content="", tool_calls=None, total_tokens=50):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message)],
        usage=SimpleNamespace(prompt_tokens=total_tokens - 10, completion_tokens=10, total_tokens=total_tokens),
    )


@pytest.fixture
def no_wait(monkeypatch):
    monkeypatch.setattr(Router.complete.retry, "wait", wait_none())


def test_complete_normalizes_tool_calls(monkeypatch):
    seen = {}
    call = SimpleNamespace(id="abc", function=SimpleNamespace(name="read_file", arguments='{"path": "a.py"}'))

    def completion(**kwargs):
        seen.update(kwargs)
        return fake_response(tool_calls=[call])

    monkeypatch.setattr(litellm, "completion", completion)
    router = Router("anthropic/claude-sonnet-4-20250514")
    response = router.complete([{"role": "user", "content": "hi"}], tools=[{"type": "function"}])

    assert response.tool_calls[0].name == "read_file"
    assert response.tool_calls[0].id == "abc"
    assert response.tokens_used == 50
    assert seen["tool_choice"] == "auto"
    assert router.budget.usage.call_count == 1


def test_budget_is_checked_before_calling(monkeypatch):
    monkeypatch.setattr(litellm, "completion", lambda **kw: fake_response(total_tokens=100))
    router = Router("openai/gpt-4o", max_session_tokens=100)
    router.complete([{"role": "user", "content": "one"}])
    with pytest.raises(BudgetExceededError):
        router.complete([{"role": "user", "content": "two"}])


def test_transient_errors_are_retried(monkeypatch, no_wait):
    attempts = []

    def flaky(**kwargs):
        attempts.append(1)
        if len(attempts) < 3:
            raise litellm.RateLimitError(message="slow down", llm_provider="openai", model="gpt-4o")
        return fake_response(content="ok")

    monkeypatch.setattr(litellm, "completion", flaky)
    assert Router("openai/gpt-4o").complete([{"role": "user", "content": "x"}]).content == "ok"
    assert len(attempts) == 3


def test_permanent_errors_are_not_retried(monkeypatch, no_wait):
    attempts = []

    def denied(**kwargs):
        attempts.append(1)
        raise litellm.AuthenticationError(message="bad key", llm_provider="openai", model="gpt-4o")

    monkeypatch.setattr(litellm, "completion", denied)
    with pytest.raises(litellm.AuthenticationError):
        Router("openai/gpt-4o").complete([{"role": "user", "content": "x"}])
    assert len(attempts) == 1


def test_reasoning_models_get_no_temperature():
    assert "temperature" not in _build_kwargs("openai/o3-mini", [], 0.2, 100, None, None)
    kwargs = _build_kwargs("openai/gpt-4o", [], 0.2, 100, None, 30)
    assert kwargs["temperature"] == 0.2
    assert kwargs["timeout"] == 30
    assert "tools" not in kwargs


def test_dict_tool_calls_are_normalized():
    calls = _normalize_tool_calls([{"function": {"name": "finish", "arguments": None}}])
    assert calls[0].id == "call_0"
    assert calls[0].arguments == "{}"


def test_from_config_uses_provider_prefixed_model():
    config = load_config(overrides={"routing": {"provider": "openai", "fixer": "gpt-4o"}})
    router = Router.from_config(config, config.session_config())
    assert router.model == "openai/gpt-4o"
    assert router.budget.max_tokens == config.limits.max_tokens_per_session
