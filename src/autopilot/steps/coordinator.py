"""Coordinator step: triage an incoming event into the next action."""

from __future__ import annotations

import logging
from typing import Any

from autopilot.agent.base import InvokeOptions
from autopilot.json_response import parse_json_response
from autopilot.models import PendingAction
from autopilot.provenance import ActionWriter, SpanWriter, enqueue_action
from autopilot.steps.helpers import json_block
from autopilot.steps.prompts import COORDINATE_PROMPT
from autopilot.steps.types import EnqueuedAction, Step, StepConfig, StepContext, StepResult

logger = logging.getLogger(__name__)

FOLLOW_UP_ACTIONS = frozenset({"plan", "noop"})


def build_coordinate_message(event_meta: dict[str, Any]) -> str:
    return "\n".join(
        [
            "## Event",
            "",
            json_block(event_meta),
            "",
            "## Constraint",
            "",
            "The `coordinate` action is NOT available for this decision.",
        ],
    )


def normalize_decision(payload: dict[str, Any]) -> tuple[str, str, dict[str, Any]]:
    """Map the agent's choice onto a registered follow-up; the coordinator never ends a trace."""

    action = str(payload.get("action", ""))
    reasoning = str(payload.get("reasoning", ""))
    raw_meta = payload.get("meta")
    meta: dict[str, Any] = dict(raw_meta) if isinstance(raw_meta, dict) else {}
    if action == "coordinate":
        return "noop", "Forced to noop: coordinate is not available as a sub-action.", meta
    if action not in FOLLOW_UP_ACTIONS:
        meta["original_action"] = action
        return "noop", reasoning, meta
    return action, reasoning, meta


class CoordinatorStep(Step):
    config = StepConfig(action_type="coordinate", max_parallel=3)

    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        span = SpanWriter(
            ctx.store,
            step="coordinate",
            parent=pending.span_id,
            summary=f"coordinate: {pending.summary}",
            meta=pending.meta,
        )
        try:
            response = await ctx.agent.invoke(
                build_coordinate_message(pending.meta),
                InvokeOptions(json=True, system_prompt=COORDINATE_PROMPT),
            )
            payload = parse_json_response(response)
        except Exception as error:
            span.fail(f"coordinate: {error}", {"error": str(error)})
            raise

        action_type, reasoning, meta = normalize_decision(payload)
        confidence = payload.get("confidence", "?")
        action = ActionWriter(ctx.store, span.id).write(
            action_type,
            reasoning=reasoning,
            meta=meta,
        )
        span.complete(f"coordinate: {action_type}: {pending.summary}", meta)

        enqueue_action(
            ctx.store,
            trace_id=pending.trace_id,
            action=action,
            summary=f"{action_type}: {pending.summary}",
            step="coordinate",
        )
        logger.info("Coordinated %s into %s (%s)", pending.action_id, action_type, confidence)
        return StepResult(
            span_id=span.id,
            enqueued_actions=[
                EnqueuedAction(action_id=action.id, action_type=action_type, summary=reasoning),
            ],
            reasoning=f"{action_type} ({confidence})",
        )
