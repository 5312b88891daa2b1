from __future__ import annotations

from task_engine.app.errors import ReasoningServiceError
from task_engine.app.models import Phase, PlanRevision
from task_engine.app.reviser import Reviser


def _remaining() -> list[Phase]:
    return [
        Phase(index=2, name="Scrape", actions=["browse_url"]),
        Phase(index=3, name="Report", actions=["summarize"]),
    ]


def test_revision_is_indexed_from_failed_phase(reasoning) -> None:
    reasoning.revisions.append(
        {
            "phases": [
                {"name": "Search instead", "actions": ["web_search", "hack"]},
                {"name": "Report", "actions": []},
                {"name": "Double check", "actions": ["summarize"]},
            ]
        }
    )
    reviser = Reviser(reasoning=reasoning)

    revised = reviser.revise(_remaining(), 2, "403 from site", "Compare prices")

    assert [phase.index for phase in revised] == [2, 3, 4]
    assert [phase.actions for phase in revised] == [
        ["web_search"],
        ["text_generation"],
        ["summarize"],
    ]
    assert all(phase.status == "pending" for phase in revised)
    call = reasoning.calls[0]
    assert call["response_model"] is PlanRevision
    assert call["max_tokens"] == 1000
    assert "Error: 403 from site" in call["messages"][0]["content"]
    assert "Failed phase: Scrape" in call["messages"][0]["content"]


def test_unusable_revision_returns_none(reasoning) -> None:
    assert Reviser(reasoning=reasoning).revise(_remaining(), 2, "err", "goal") is None


def test_service_error_returns_none(reasoning) -> None:
    reasoning.revisions.append(ReasoningServiceError("down"))

    assert Reviser(reasoning=reasoning).revise(_remaining(), 2, "err", "goal") is None


def test_empty_revision_returns_none(reasoning) -> None:
    reasoning.revisions.append({"phases": []})

    assert Reviser(reasoning=reasoning).revise(_remaining(), 2, "err", "goal") is None
