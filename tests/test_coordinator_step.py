from __future__ import annotations

import asyncio
import json

import allure
import pytest
from fakes import FakeAgent, make_context, make_pending

from autopilot.errors import AgentRunError
from autopilot.models import SpanStatus
from autopilot.provenance import SpanWriter
from autopilot.steps.coordinator import CoordinatorStep, normalize_decision

pytestmark = [
    allure.epic("Autopilot"),
    allure.feature("Coordinator"),
]

EVENT_META = {"event_id": "evt-1", "type": "issue", "title": "Parser crashes on empty input"}


def _event_pending(store):
    root = SpanWriter(store, step="event", parent=None, meta=EVENT_META)
    root.complete("event: issue: Parser crashes on empty input")
    return make_pending(
        action="coordinate",
        span_id=root.id,
        meta=EVENT_META,
        summary="issue: Parser crashes on empty input",
    )


def _run(store, make_deps, pending, agent):
    return asyncio.run(CoordinatorStep().process(pending, make_context(store, make_deps(agent))))


@pytest.mark.parametrize(
    ("payload", "expected_action", "expected_meta"),
    [
        ({"action": "plan", "meta": {"goal": "fix"}}, "plan", {"goal": "fix"}),
        ({"action": "noop", "meta": "not a dict"}, "noop", {}),
        ({"action": "coordinate"}, "noop", {}),
        ({"action": "clarify"}, "noop", {"original_action": "clarify"}),
    ],
)
def test_normalize_decision(payload, expected_action, expected_meta) -> None:
    action, _, meta = normalize_decision(payload)

    assert action == expected_action
    assert meta == expected_meta


def test_plan_decision_is_written_and_queued(store, make_deps) -> None:
    pending = _event_pending(store)
    agent = FakeAgent(
        json.dumps(
            {
                "action": "plan",
                "reasoning": "Code change required",
                "confidence": 0.9,
                "meta": {"goal": "Handle empty input in the parser"},
            },
        ),
    )

    result = _run(store, make_deps, pending, agent)

    assert result.reasoning == "plan (0.9)"
    assert result.terminal is False
    (plan,) = store.get_pending("plan")
    assert [item.action_id for item in result.enqueued_actions] == [plan.action_id]
    assert plan.meta == {"goal": "Handle empty input in the parser"}
    assert plan.summary == "plan: issue: Parser crashes on empty input"
    action = store.read_action(plan.action_id)
    assert action is not None
    assert action.reasoning == "Code change required"

    span = store.read_span(result.span_id)
    assert span is not None
    assert span.status == SpanStatus.COMPLETED
    assert span.parent == pending.span_id
    assert span.meta["event_id"] == "evt-1"
    assert span.meta["goal"] == "Handle empty input in the parser"

    message, options = agent.calls[0]
    assert "Parser crashes on empty input" in message
    assert "NOT available" in message
    assert options is not None
    assert options.json is True


def test_unknown_action_is_closed_with_noop(store, make_deps) -> None:
    pending = _event_pending(store)
    agent = FakeAgent(json.dumps({"action": "clarify", "reasoning": "Need details"}))

    result = _run(store, make_deps, pending, agent)

    assert result.reasoning == "noop (?)"
    (noop,) = store.get_pending("noop")
    assert noop.meta["original_action"] == "clarify"


def test_agent_failure_fails_span_and_propagates(store, make_deps) -> None:
    pending = _event_pending(store)
    agent = FakeAgent(AgentRunError("agent exited with code 1", transient=False))

    with pytest.raises(AgentRunError):
        _run(store, make_deps, pending, agent)

    (span,) = store.find_child_spans(pending.span_id, step="coordinate")
    assert span.status == SpanStatus.FAILED
    assert span.meta["error"] == "agent exited with code 1"
    assert store.get_pending() == []
