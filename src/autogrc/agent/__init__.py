"""Agent package for the AutoGRC assistant.

This package exposes the turn orchestrator and its tool dispatcher while
keeping implementation details (tool schemas, analysis, chart building,
completion client) organized in separate modules.
"""

from .completion import Completion, CompletionService, FinishReason, OpenAICompletionService
from .orchestrator import MAX_ATTEMPTS, MAX_TOOL_LOOPS, Orchestrator, build_orchestrator
from .tools import ToolDispatcher, ToolName, get_tool_schemas

__all__ = [
    "Completion",
    "CompletionService",
    "FinishReason",
    "MAX_ATTEMPTS",
    "MAX_TOOL_LOOPS",
    "OpenAICompletionService",
    "Orchestrator",
    "ToolDispatcher",
    "ToolName",
    "build_orchestrator",
    "get_tool_schemas",
]
