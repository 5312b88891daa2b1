from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import pytest
from fastapi.testclient import TestClient

from task_engine.app.errors import StructuredOutputError
from task_engine.app.llm import parse_structured
from task_engine.app.settings import Settings
from task_engine.app.storage import InMemoryTaskStore
from task_engine.main import build_task_service, create_app


class ScriptedReasoningService:
    """Test-only reasoning service that replays queued responses.

    Structured requests pop from `plans` (PlanDraft) or `revisions`
    (PlanRevision); an empty queue behaves like a model ignoring the schema.
    Text requests pop from `texts`, falling back to echoing the user message.
    Exception instances in any queue are raised instead of returned.
    """

    def __init__(self) -> None:
        self.plans: list[Any] = []
        self.revisions: list[Any] = []
        self.texts: list[Any] = []
        self.calls: list[dict[str, Any]] = []
        self.before_text: Callable[[list[dict[str, str]]], None] | None = None

    def complete(
        self,
        messages: list[dict[str, str]],
        *,
        response_model: Any = None,
        timeout_s: float,
        max_tokens: int | None = None,
    ) -> Any:
        self.calls.append(
            {
                "messages": messages,
                "response_model": response_model,
                "timeout_s": timeout_s,
                "max_tokens": max_tokens,
            }
        )
        if response_model is not None:
            queue = self.plans if response_model.__name__ == "PlanDraft" else self.revisions
            if not queue:
                raise StructuredOutputError("No structured response scripted")
            item = queue.pop(0)
            if isinstance(item, Exception):
                raise item
            return parse_structured(json.dumps(item), response_model)

        if self.before_text is not None:
            self.before_text(messages)
        if not self.texts:
            return f"done: {messages[-1]['content']}"
        item = self.texts.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def text_calls(self) -> list[dict[str, Any]]:
        return [call for call in self.calls if call["response_model"] is None]


def plan_payload(*names: str, title: str = "Scripted plan") -> dict[str, Any]:
    return {
        "title": title,
        "capability": "research",
        "phases": [
            {
                "name": name,
                "capability": "research",
                "description": f"{name} step",
                "actions": ["web_search", "summarize"],
            }
            for name in names
        ],
    }


@pytest.fixture
def make_plan() -> Callable[..., dict[str, Any]]:
    return plan_payload


@pytest.fixture
def settings() -> Settings:
    return Settings(
        storage_backend="memory",
        llm_provider="echo",
        max_retries=3,
        context_window=3,
        list_page_size=50,
    )


@pytest.fixture
def reasoning() -> ScriptedReasoningService:
    return ScriptedReasoningService()


@pytest.fixture
def store() -> InMemoryTaskStore:
    return InMemoryTaskStore()


@pytest.fixture
def service(settings: Settings, store: InMemoryTaskStore, reasoning: ScriptedReasoningService):
    return build_task_service(settings=settings, store=store, reasoning=reasoning)


@pytest.fixture
def client(
    settings: Settings,
    store: InMemoryTaskStore,
    reasoning: ScriptedReasoningService,
) -> TestClient:
    app = create_app(store=store, reasoning=reasoning, settings_override=settings)
    with TestClient(app) as test_client:
        yield test_client
