from __future__ import annotations

from typing import Any
from urllib import error

import pytest

from workflow_orchestrator.app.errors import LLMError
from workflow_orchestrator.app.llm import (
    OpenAIChatCompletionsClient,
    build_completion_client,
    find_json_object,
    strip_code_fence,
)
from workflow_orchestrator.app.settings import Settings


def test_strip_code_fence_returns_block_body() -> None:
    assert strip_code_fence('prefix\n```json\n{"a": 1}\n```\nsuffix') == '{"a": 1}'
    assert strip_code_fence("  plain  ") == "plain"


def test_find_json_object_skips_braces_in_strings() -> None:
    text = 'Result: {"note": "a } inside", "nested": {"x": 1}} trailing {'

    assert find_json_object(text) == '{"note": "a } inside", "nested": {"x": 1}}'


def test_find_json_object_retries_after_unbalanced_brace() -> None:
    assert find_json_object('{ broken {"ok": true}') == '{"ok": true}'
    assert find_json_object("no object here") is None


def test_client_requires_api_key() -> None:
    with pytest.raises(ValueError, match="api_key is required"):
        OpenAIChatCompletionsClient(api_key="")


def test_complete_extracts_text_content(monkeypatch: pytest.MonkeyPatch) -> None:
    client = OpenAIChatCompletionsClient(api_key="test-key")
    captured: dict[str, Any] = {}

    def fake_request(payload: dict[str, Any]) -> dict[str, Any]:
        captured.update(payload)
        return {"choices": [{"message": {"content": [{"text": "hel"}, {"text": "lo"}]}}]}

    monkeypatch.setattr(client, "_request", fake_request)

    assert client.complete(system_prompt="sys", user_prompt="hi") == "hello"
    assert captured["messages"] == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "hi"},
    ]


def test_complete_retries_then_raises_llm_error(monkeypatch: pytest.MonkeyPatch) -> None:
    client = OpenAIChatCompletionsClient(api_key="test-key", max_retries=2, backoff_s=0.0)
    attempts: list[int] = []

    def failing_request(_payload: dict[str, Any]) -> dict[str, Any]:
        attempts.append(1)
        raise error.URLError("connection refused")

    monkeypatch.setattr(client, "_request", failing_request)

    with pytest.raises(LLMError, match="connection refused"):
        client.complete(system_prompt="sys", user_prompt="hi")
    assert len(attempts) == 3


def test_missing_choices_raise_llm_error(monkeypatch: pytest.MonkeyPatch) -> None:
    client = OpenAIChatCompletionsClient(api_key="test-key")
    monkeypatch.setattr(client, "_request", lambda _payload: {"choices": []})

    with pytest.raises(LLMError, match="did not contain choices"):
        client.complete(system_prompt="sys", user_prompt="hi")


def test_build_completion_client_needs_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    assert build_completion_client(Settings(openai_api_key="")) is None
    assert build_completion_client(Settings(llm_provider="anthropic", openai_api_key="k")) is None

    client = build_completion_client(Settings(openai_api_key="k", llm_model="gpt-test"))
    assert isinstance(client, OpenAIChatCompletionsClient)
    assert client.model == "gpt-test"
