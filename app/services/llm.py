import json
import logging
import os
import time
from typing import Any, Optional, Protocol

import httpx

logger = logging.getLogger("uvicorn.error")

LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))
LLM_CONNECT_TIMEOUT_SECONDS = float(os.getenv("LLM_CONNECT_TIMEOUT_SECONDS", "10"))
LLM_WRITE_TIMEOUT_SECONDS = float(os.getenv("LLM_WRITE_TIMEOUT_SECONDS", "30"))
LLM_POOL_TIMEOUT_SECONDS = float(os.getenv("LLM_POOL_TIMEOUT_SECONDS", "30"))
LLM_RETRY_COUNT = int(os.getenv("LLM_RETRY_COUNT", "2"))
LLM_RETRY_BACKOFF_SECONDS = float(os.getenv("LLM_RETRY_BACKOFF_SECONDS", "0.75"))

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"
OPENAI_RESPONSES_URL = "https://api.openai.com/v1/responses"
GEMINI_URL_TEMPLATE = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

RETRYABLE_STATUS_CODES = {408, 409, 425, 429, 500, 502, 503, 504}


def _http_timeout() -> httpx.Timeout:
    return httpx.Timeout(
        connect=LLM_CONNECT_TIMEOUT_SECONDS,
        read=LLM_TIMEOUT_SECONDS,
        write=LLM_WRITE_TIMEOUT_SECONDS,
        pool=LLM_POOL_TIMEOUT_SECONDS,
    )


class LLMRequestError(RuntimeError):
    def __init__(
        self,
        provider: str,
        model: str,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.provider = provider
        self.model = model
        self.status_code = status_code
        self.retryable = retryable


def find_json_object(raw_text: str) -> Optional[dict[str, Any]]:
    """Return the first brace-balanced JSON object embedded in ``raw_text``.

    Model output often wraps the object in prose or markdown fences. Each
    ``{`` is tried as a start position; braces inside string literals do not
    count towards the balance. Candidates that are balanced but not valid JSON
    are skipped.
    """
    text = raw_text or ""
    start = text.find("{")
    while start != -1:
        end = _balanced_end(text, start)
        parsed = None
        if end is not None:
            try:
                parsed = json.loads(text[start : end + 1])
            except json.JSONDecodeError:
                parsed = None
        if isinstance(parsed, dict):
            return parsed
        start = text.find("{", start + 1)
    return None


def _balanced_end(text: str, start: int) -> Optional[int]:
    depth = 0
    in_string = False
    escaped = False
    for idx in range(start, len(text)):
        char = text[idx]
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
                return idx
    return None


UTILITY_TASK_TYPES = {
    "utility",
    "summarization",
    "routing",
    "classification",
    "extraction",
}


def select_model_for_task(reasoning_model: str, utility_model: str, task_type: str) -> str:
    normalized_task = (task_type or "").strip().lower()
    if normalized_task in UTILITY_TASK_TYPES:
        return utility_model
    return reasoning_model


def _resolve_model_config() -> tuple[str, str, str, str]:
    provider = os.getenv("DEFAULT_AI_PROVIDER", "openai").strip().lower()
    reasoning_model = os.getenv("DEFAULT_REASONING_MODEL", "").strip() or os.getenv(
        "DEFAULT_AI_MODEL", "gpt-4o-mini"
    ).strip()
    utility_model = os.getenv("DEFAULT_UTILITY_MODEL", "").strip() or reasoning_model
    if provider == "openai":
        key = os.getenv("OPENAI_API_KEY", "")
    elif provider == "gemini":
        key = os.getenv("GEMINI_API_KEY", "")
    else:
        key = ""

    if provider and reasoning_model and utility_model and key:
        return provider, reasoning_model, utility_model, key
    raise ValueError("AI config missing")


def _status_error(provider: str, model: str, exc: httpx.HTTPStatusError) -> LLMRequestError:
    status = exc.response.status_code if exc.response is not None else None
    detail = ""
    if exc.response is not None:
        detail = (exc.response.text or "").strip()[:220]
    return LLMRequestError(
        provider=provider,
        model=model,
        status_code=status,
        message=f"{provider} request failed (status={status}): {detail or 'no response body'}",
        retryable=status in RETRYABLE_STATUS_CODES,
    )


def _openai_request_v1_chat(
    model: str, api_key: str, system_prompt: str, user_prompt: str, max_tokens: int, temperature: float
) -> str:
    payload: dict[str, Any] = {
        "model": model,
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
        "max_completion_tokens": max_tokens,
    }
    # GPT-5 family only accepts the default temperature and may spend the budget on reasoning.
    if model.startswith("gpt-5"):
        payload["reasoning_effort"] = "low"
    else:
        payload["temperature"] = temperature
    response = httpx.post(
        OPENAI_CHAT_URL,
        headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
        json=payload,
        timeout=_http_timeout(),
    )
    response.raise_for_status()
    data = response.json()
    choices = data.get("choices") or [{}]
    message = choices[0].get("message") or {}
    return str(message.get("content") or "").strip()


def _openai_request_v1_responses(
    model: str, api_key: str, system_prompt: str, user_prompt: str, max_tokens: int
) -> str:
    payload: dict[str, Any] = {
        "model": model,
        "instructions": system_prompt,
        "input": [{"role": "user", "content": [{"type": "input_text", "text": user_prompt}]}],
        "max_output_tokens": max_tokens,
    }
    if model.startswith("gpt-5"):
        payload["reasoning"] = {"effort": "low"}
        payload["text"] = {"verbosity": "low"}
    response = httpx.post(
        OPENAI_RESPONSES_URL,
        headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
        json=payload,
        timeout=_http_timeout(),
    )
    response.raise_for_status()
    data = response.json()
    if isinstance(data.get("output_text"), str) and data.get("output_text"):
        return data["output_text"].strip()
    for item in data.get("output", []):
        for content in item.get("content", []) or []:
            if content.get("type") in {"output_text", "text"}:
                text_out = str(content.get("text", "")).strip()
                if text_out:
                    return text_out
    return ""


def _openai_complete(
    model: str, api_key: str, system_prompt: str, user_prompt: str, max_tokens: int, temperature: float
) -> str:
    try:
        return _openai_request_v1_chat(model, api_key, system_prompt, user_prompt, max_tokens, temperature)
    except httpx.HTTPStatusError as exc:
        status = exc.response.status_code if exc.response is not None else None
        # Some newer model families only serve the /v1/responses endpoint.
        if status in {400, 404}:
            try:
                return _openai_request_v1_responses(model, api_key, system_prompt, user_prompt, max_tokens)
            except httpx.HTTPStatusError as fallback_exc:
                raise _status_error("openai", model, fallback_exc) from fallback_exc
        raise _status_error("openai", model, exc) from exc


def _gemini_complete(
    model: str, api_key: str, system_prompt: str, user_prompt: str, max_tokens: int, temperature: float
) -> str:
    response = httpx.post(
        GEMINI_URL_TEMPLATE.format(model=model),
        params={"key": api_key},
        headers={"Content-Type": "application/json"},
        json={
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "generationConfig": {"temperature": temperature, "maxOutputTokens": max_tokens},
            "contents": [{"role": "user", "parts": [{"text": user_prompt}]}],
        },
        timeout=_http_timeout(),
    )
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise _status_error("gemini", model, exc) from exc
    data = response.json()
    candidates = data.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(str(part.get("text", "")) for part in parts).strip()


class TextGenerationProvider(Protocol):
    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float,
        task_type: str = "reasoning",
    ) -> str:
        ...


class HttpTextGenerationProvider:
    """Blocking text completion against the configured provider.

    Transient failures (timeouts, transport errors, 429 and 5xx responses)
    are retried with linear backoff; anything else raises immediately.
    """

    def __init__(self, retry_count: Optional[int] = None, backoff_seconds: Optional[float] = None) -> None:
        self.retry_count = LLM_RETRY_COUNT if retry_count is None else retry_count
        self.backoff_seconds = LLM_RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float,
        task_type: str = "reasoning",
    ) -> str:
        try:
            provider, reasoning_model, utility_model, api_key = _resolve_model_config()
        except ValueError as exc:
            raise LLMRequestError(provider="unknown", model="unknown", message=str(exc)) from exc
        model = select_model_for_task(reasoning_model, utility_model, task_type)
        if provider == "openai":
            request = _openai_complete
        elif provider == "gemini":
            request = _gemini_complete
        else:
            raise LLMRequestError(provider=provider, model=model, message="Unsupported AI provider")

        attempts = max(1, self.retry_count + 1)
        for idx in range(attempts):
            try:
                return request(model, api_key, system_prompt, user_prompt, max_tokens, temperature)
            except LLMRequestError as exc:
                if not exc.retryable or idx == attempts - 1:
                    raise
                logger.warning("%s request failed (status=%s), retrying", provider, exc.status_code)
            except httpx.TimeoutException as exc:
                if idx == attempts - 1:
                    raise LLMRequestError(
                        provider=provider,
                        model=model,
                        message=f"{provider} request timed out while waiting for response.",
                        retryable=True,
                    ) from exc
                logger.warning("%s request timed out, retrying", provider)
            except httpx.TransportError as exc:
                if idx == attempts - 1:
                    raise LLMRequestError(
                        provider=provider,
                        model=model,
                        message=f"{provider} request failed: {str(exc)[:220]}",
                        retryable=True,
                    ) from exc
                logger.warning("%s transport error, retrying: %s", provider, exc)
            except (KeyError, TypeError, ValueError) as exc:
                # Malformed provider payloads are not transient.
                raise LLMRequestError(
                    provider=provider,
                    model=model,
                    message=f"{provider} returned an unexpected payload: {str(exc)[:220]}",
                ) from exc
            time.sleep(self.backoff_seconds * (idx + 1))
        raise LLMRequestError(provider=provider, model=model, message=f"{provider} request failed")


def get_text_generator() -> TextGenerationProvider:
    return HttpTextGenerationProvider()
