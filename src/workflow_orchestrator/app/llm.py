from __future__ import annotations

import json
import logging
import os
import re
import time
from typing import TYPE_CHECKING, Any, Protocol
from urllib import error, request

from .errors import LLMError

if TYPE_CHECKING:
    from .settings import Settings

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


class CompletionClient(Protocol):
    """Interface for plain text completions used by planner, grader, and workers."""

    def complete(self, *, system_prompt: str, user_prompt: str) -> str: ...


class OpenAIChatCompletionsClient:
    """Small OpenAI client using the chat completions REST API."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout_s: float = 30.0,
        max_retries: int = 1,
        backoff_s: float = 0.2,
        temperature: float = 0.3,
    ) -> None:
        if not api_key:
            raise ValueError("api_key is required")
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)
        self.temperature = temperature

    def complete(self, *, system_prompt: str, user_prompt: str) -> str:
        payload = {
            "model": self.model,
            "temperature": self.temperature,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        response_json = self._request_with_retry(payload)
        return self._extract_content(response_json)

    def _request_with_retry(self, payload: dict[str, Any]) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._request(payload)
            except (TimeoutError, ValueError, error.URLError) as exc:
                last_error = exc
                logger.warning(
                    "OpenAI request failed attempt=%d/%d model=%s reason=%s",
                    attempt + 1,
                    self.max_retries + 1,
                    self.model,
                    exc,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s)
        raise LLMError(f"LLM request failed: {last_error}") from last_error

    def _request(self, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}/chat/completions"
        if _trace_enabled():
            logger.warning(
                "LLM trace request provider=openai model=%s url=%s timeout_s=%s",
                self.model,
                url,
                self.timeout_s,
            )
        req = request.Request(
            url=url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")
            # HTTPError is a URLError subclass, so the retry loop still sees it.
            raise error.URLError(
                f"OpenAI API request failed with status {exc.code}: {raw_error[:400]}"
            ) from exc
        if _trace_enabled():
            logger.warning("LLM trace response provider=openai model=%s status=ok", self.model)
        return json.loads(body)

    @staticmethod
    def _extract_content(response_json: dict[str, Any]) -> str:
        choices = response_json.get("choices", [])
        if not choices:
            raise LLMError("OpenAI response did not contain choices")

        message = choices[0].get("message", {})
        content = message.get("content", "")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            text_segments: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        text_segments.append(text)
            return "".join(text_segments)
        raise LLMError("OpenAI response content could not be parsed as text")


def build_completion_client(settings: Settings) -> CompletionClient | None:
    """Return a configured client, or None when no provider/key is available."""
    if settings.llm_provider.lower().strip() != "openai":
        logger.warning("Unsupported LLM provider=%s; no completion client", settings.llm_provider)
        return None

    api_key = settings.resolved_openai_api_key()
    if not api_key:
        return None

    return OpenAIChatCompletionsClient(
        api_key=api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        timeout_s=settings.llm_timeout_s,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
    )


def strip_code_fence(text: str) -> str:
    """Return the body of the first ``` fenced block, or the stripped text."""
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def find_json_object(text: str) -> str | None:
    """Return the first balanced {...} literal in text, skipping braces inside strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
        # Unbalanced from this brace; try the next opening brace.
        start = text.find("{", start + 1)
    return None


def _trace_enabled() -> bool:
    return os.getenv("ORCHESTRATOR_LLM_TRACE", "0").strip() == "1"
