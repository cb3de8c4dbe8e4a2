"""OpenAI REST adapter with retryable/terminal error classification."""

from __future__ import annotations

import json
import logging
import re
import socket
import time
from dataclasses import dataclass
from typing import Any, Protocol
from urllib import error, request

from agent_planner.config.settings import Settings
from agent_planner.errors import (
    AIServiceError,
    ExtractionFailedError,
    InvalidInputError,
    PlannerError,
    UpstreamUnavailableError,
)

logger = logging.getLogger(__name__)

RETRYABLE_HTTP_STATUSES = {408, 409, 425, 429}
_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)


class LLMAdapter(Protocol):
    """Interface for JSON-object completions."""

    def generate_json(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        timeout_s: float,
        temperature: float = 0.2,
    ) -> dict[str, Any]: ...


class OpenAIChatCompletionsAdapter:
    """Small OpenAI adapter using the chat completions REST API."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        max_retries: int = 1,
        backoff_s: float = 0.2,
        trace: bool = False,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)
        self.trace = trace

    def generate_json(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        timeout_s: float,
        temperature: float = 0.2,
    ) -> dict[str, Any]:
        payload = {
            "model": self.model,
            "temperature": temperature,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "response_format": {"type": "json_object"},
        }
        response_json = self._request_with_retry(payload, timeout_s=timeout_s)
        return extract_json_object(_extract_content(response_json))

    def _request_with_retry(self, payload: dict[str, Any], timeout_s: float) -> dict[str, Any]:
        last_error: PlannerError | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return post_openai_json(
                    f"{self.base_url}/chat/completions",
                    payload,
                    api_key=self.api_key,
                    timeout_s=timeout_s,
                    trace=self.trace,
                )
            except UpstreamUnavailableError as exc:
                last_error = exc
                logger.warning(
                    "OpenAI request failed attempt=%d/%d model=%s reason=%s",
                    attempt + 1,
                    self.max_retries + 1,
                    self.model,
                    exc,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s * (2**attempt))
        if last_error is None:
            raise AIServiceError("LLM request failed with unknown error")
        raise last_error


def post_openai_json(
    url: str,
    payload: dict[str, Any],
    *,
    api_key: str,
    timeout_s: float,
    trace: bool = False,
) -> dict[str, Any]:
    """POST a JSON body and classify failures as retryable or terminal."""
    if trace:
        logger.warning("LLM trace request provider=openai url=%s timeout_s=%s", url, timeout_s)
    req = request.Request(
        url=url,
        data=json.dumps(payload).encode("utf-8"),
        method="POST",
        headers={
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        },
    )
    try:
        with request.urlopen(req, timeout=timeout_s) as response:
            body = response.read().decode("utf-8")
    except error.HTTPError as exc:
        raw_error = exc.read().decode("utf-8", errors="replace")
        details = {"status": exc.code, "body": raw_error[:500]}
        if exc.code in RETRYABLE_HTTP_STATUSES or exc.code >= 500:
            raise UpstreamUnavailableError(
                f"OpenAI API unavailable (HTTP {exc.code})", details=details
            ) from exc
        if exc.code in {400, 413, 422}:
            raise InvalidInputError(f"OpenAI API rejected the request (HTTP {exc.code})", details=details) from exc
        raise AIServiceError(f"OpenAI API request failed (HTTP {exc.code})", details=details) from exc
    except (TimeoutError, socket.timeout) as exc:
        raise UpstreamUnavailableError(f"OpenAI API timed out after {timeout_s:.1f}s") from exc
    except (error.URLError, ConnectionError) as exc:
        raise UpstreamUnavailableError(f"OpenAI API unreachable: {exc}") from exc

    if trace:
        logger.warning("LLM trace response provider=openai url=%s status=ok", url)
    try:
        return json.loads(body)
    except json.JSONDecodeError as exc:
        raise AIServiceError("OpenAI API returned a non-JSON body") from exc


def extract_json_object(text: str) -> dict[str, Any]:
    """Parse a JSON object from plain JSON, a fenced block or the outermost braces."""
    candidates = [text.strip()]
    fenced = _FENCED_JSON.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    raise ExtractionFailedError("Model output did not contain a JSON object", details={"preview": text[:200]})


def _extract_content(response_json: dict[str, Any]) -> str:
    choices = response_json.get("choices", [])
    if not choices:
        raise ExtractionFailedError("OpenAI response did not contain choices")

    message = choices[0].get("message", {})
    content = message.get("content", "")
    if isinstance(content, str) and content.strip():
        return content
    if isinstance(content, list):
        merged = "".join(
            item["text"] for item in content if isinstance(item, dict) and isinstance(item.get("text"), str)
        ).strip()
        if merged:
            return merged
    raise ExtractionFailedError("OpenAI response content could not be parsed as text")


@dataclass(frozen=True)
class LLMResolution:
    adapter: LLMAdapter | None
    requested_mode: str
    effective_mode: str
    fallback_reason: str | None = None

    def telemetry(self) -> dict[str, Any]:
        return {
            "requested_mode": self.requested_mode,
            "effective_mode": self.effective_mode,
            "fallback_used": self.effective_mode != self.requested_mode,
            "fallback_reason": self.fallback_reason,
        }


def resolve_llm_adapter(settings: Settings, *, requested_mode: str) -> LLMResolution:
    normalized_mode = requested_mode.lower().strip()
    if normalized_mode != "llm":
        return LLMResolution(None, normalized_mode, "deterministic")

    if settings.llm_provider.lower().strip() != "openai":
        return LLMResolution(
            None,
            normalized_mode,
            "deterministic",
            fallback_reason=f"unsupported llm provider: {settings.llm_provider}",
        )

    api_key = settings.resolved_openai_api_key()
    if not api_key:
        return LLMResolution(
            None,
            normalized_mode,
            "deterministic",
            fallback_reason="OPENAI_API_KEY is missing for llm mode",
        )

    adapter = OpenAIChatCompletionsAdapter(
        api_key=api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
        trace=settings.llm_trace,
    )
    return LLMResolution(adapter, normalized_mode, "llm")
