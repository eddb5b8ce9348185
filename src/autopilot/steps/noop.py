"""Terminal step: summarize the chain that led here and close the trace."""

from __future__ import annotations

import logging

from autopilot.agent.base import InvokeOptions, ReasoningAgent
from autopilot.json_response import parse_json_response
from autopilot.models import ActionTrace, PendingAction, Span
from autopilot.provenance import SpanWriter
from autopilot.steps.helpers import json_block
from autopilot.steps.prompts import SUMMARY_PROMPT
from autopilot.steps.types import Step, StepConfig, StepContext, StepResult

logger = logging.getLogger(__name__)


async def summarize_chain(agent: ReasoningAgent, spans: list[Span], trace: ActionTrace) -> str:
    """Agent summary of the chain, or the span summaries joined when the agent fails."""

    payload = {
        "spans": [
            {
                "step": span.step,
                "status": span.status.value,
                "summary": span.summary,
                "meta": span.meta,
            }
            for span in spans
        ],
        "steps": [
            {"action": step.action, "status": step.status.value, "reasoning": step.reasoning}
            for step in trace.steps
        ],
    }
    try:
        response = await agent.invoke(
            json_block(payload),
            InvokeOptions(json=True, system_prompt=SUMMARY_PROMPT),
        )
        summary = str(parse_json_response(response).get("summary") or "").strip()
    except Exception as error:  # noqa: BLE001
        logger.warning("Chain summary failed, falling back to span summaries: %s", error)
        summary = ""
    if summary:
        return summary
    return " -> ".join(span.summary for span in spans if span.summary)


class NoopStep(Step):
    config = StepConfig(action_type="noop", max_parallel=5)

    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        spans = ctx.store.get_span_trace(pending.span_id)
        summary = await summarize_chain(ctx.agent, spans, ctx.trace)
        span = SpanWriter(
            ctx.store,
            step="noop",
            parent=pending.span_id,
            meta={"summary": summary},
        )
        span.complete(f"noop: {summary}")
        return StepResult(span_id=span.id, terminal=True, reasoning=f"noop: {summary}")
