from __future__ import annotations

import http.client
import json
import logging
import socket
from typing import Any, Protocol, TypeVar
from urllib import error, request

from pydantic import BaseModel, ValidationError

from .errors import (
    QuotaExhaustedError,
    RateLimitedError,
    ReasoningServiceError,
    ServiceUnavailableError,
    StructuredOutputError,
)
from .settings import Settings

TModel = TypeVar("TModel", bound=BaseModel)
Message = dict[str, str]
logger = logging.getLogger(__name__)


class ReasoningService(Protocol):
    """Interface for chat completions.

    With `response_model` the call returns a validated instance of that model,
    otherwise the free-text completion.
    """

    def complete(
        self,
        messages: list[Message],
        *,
        response_model: type[TModel] | None = None,
        timeout_s: float,
        max_tokens: int | None = None,
    ) -> Any: ...


class OpenAIChatCompletionsAdapter:
    """Small OpenAI-compatible adapter using the chat completions REST API.

    Performs exactly one request per call. Retrying is left to the task runner.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        trace: bool = False,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.trace = trace

    def complete(
        self,
        messages: list[Message],
        *,
        response_model: type[TModel] | None = None,
        timeout_s: float,
        max_tokens: int | None = None,
    ) -> Any:
        if not self.api_key:
            raise ServiceUnavailableError("Reasoning service API key is not configured")

        payload: dict[str, Any] = {"model": self.model, "messages": messages}
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if response_model is not None:
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": response_model.__name__.lower(),
                    # Strict mode requires `additionalProperties: false` on every
                    # object schema, which the opaque result fields do not declare.
                    "strict": False,
                    "schema": response_model.model_json_schema(),
                },
            }

        response_json = self._request(payload, timeout_s=timeout_s)
        content = self._extract_content(response_json)
        if response_model is None:
            return content
        return parse_structured(content, response_model)

    def _request(self, payload: dict[str, Any], timeout_s: float) -> dict[str, Any]:
        url = f"{self.base_url}/chat/completions"
        if self.trace:
            logger.warning(
                "LLM trace request model=%s url=%s timeout_s=%s structured=%s",
                self.model,
                url,
                timeout_s,
                "response_format" in payload,
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
            with request.urlopen(req, timeout=timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")
            raise _classify_http_error(exc.code, raw_error) from exc
        except error.URLError as exc:
            if isinstance(exc.reason, (TimeoutError, socket.timeout)):
                raise ReasoningServiceError(
                    f"Reasoning service timed out after {timeout_s:.1f}s"
                ) from exc
            raise ReasoningServiceError(f"Reasoning service unreachable: {exc.reason}") from exc
        except TimeoutError as exc:
            raise ReasoningServiceError(
                f"Reasoning service timed out after {timeout_s:.1f}s"
            ) from exc
        except (OSError, http.client.HTTPException) as exc:
            # Dropped connections surface from getresponse() without URLError wrapping.
            raise ReasoningServiceError(f"Reasoning service connection failed: {exc!r}") from exc
        except UnicodeDecodeError as exc:
            raise ReasoningServiceError("Reasoning service returned a non UTF-8 response") from exc

        if self.trace:
            logger.warning("LLM trace response model=%s status=ok", self.model)
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError as exc:
            raise ReasoningServiceError("Reasoning service returned non-JSON response") from exc
        if not isinstance(parsed, dict):
            raise ReasoningServiceError("Reasoning service response was not a JSON object")
        return parsed

    @staticmethod
    def _extract_content(response_json: dict[str, Any]) -> str:
        choices = response_json.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ReasoningServiceError("Reasoning service response did not contain choices")

        choice = choices[0]
        message = choice.get("message") if isinstance(choice, dict) else None
        if not isinstance(message, dict):
            raise ReasoningServiceError("Reasoning service choice did not contain a message")
        content = message.get("content") or ""
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            text_segments: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        text_segments.append(text)
            return "".join(text_segments).strip()
        raise ReasoningServiceError("Reasoning service content could not be parsed as text")


class EchoReasoningService:
    """Deterministic offline backend.

    Text completions echo the last user message. Structured requests are never
    honoured, so planning uses the default plan and revisions are unavailable.
    """

    def complete(
        self,
        messages: list[Message],
        *,
        response_model: type[TModel] | None = None,
        timeout_s: float,
        max_tokens: int | None = None,
    ) -> Any:
        _ = (timeout_s, max_tokens)
        if response_model is not None:
            raise StructuredOutputError(
                f"Echo backend cannot produce structured {response_model.__name__} output"
            )
        user_messages = [item["content"] for item in messages if item.get("role") == "user"]
        last = user_messages[-1] if user_messages else ""
        return f"[echo] {last}"


def parse_structured(content: str, response_model: type[TModel]) -> TModel:
    """Validate a JSON completion against `response_model`."""
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as exc:
        raise StructuredOutputError("Reasoning service returned invalid JSON") from exc
    try:
        return response_model.model_validate(parsed)
    except ValidationError as exc:
        raise StructuredOutputError(
            f"Reasoning service response did not match {response_model.__name__}: "
            f"{exc.error_count()} validation error(s)"
        ) from exc


def build_reasoning_service(settings: Settings) -> ReasoningService:
    if settings.llm_provider == "echo":
        return EchoReasoningService()

    api_key = settings.resolved_openai_api_key()
    if not api_key:
        raise RuntimeError(
            "LLM provider 'openai' requires an API key. "
            "Set TASK_ENGINE_OPENAI_API_KEY or OPENAI_API_KEY, "
            "or use TASK_ENGINE_LLM_PROVIDER=echo."
        )
    return OpenAIChatCompletionsAdapter(
        api_key=api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        trace=settings.llm_trace,
    )


def _classify_http_error(status: int, body: str) -> ReasoningServiceError:
    detail = body[:400]
    if status in {401, 403}:
        return ServiceUnavailableError(
            f"Reasoning service rejected credentials (status {status}): {detail}"
        )
    if status == 429:
        return RateLimitedError("Rate limited. Please try again later.")
    if status == 402:
        return QuotaExhaustedError("AI credits exhausted. Please add funds.")
    return ReasoningServiceError(f"Reasoning service request failed with status {status}: {detail}")
