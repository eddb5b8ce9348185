"""Reasoning agent capability used by steps."""

from autopilot.agent.base import InvokeOptions, ReasoningAgent
from autopilot.agent.cli_agent import CliReasoningAgent

__all__ = ["CliReasoningAgent", "InvokeOptions", "ReasoningAgent"]
