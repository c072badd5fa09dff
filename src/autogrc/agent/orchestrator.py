import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..models import (
    ChartSpec,
    Message,
    ToolCallRequest,
    ToolSuccess,
    TurnResult,
    assistant_message,
    assistant_tool_call_message,
    envelope_json,
    system_message,
    tool_message,
    user_message,
)
from ..services.database import Database
from ..services.queries import DataQueryService
from ..services.session_store import SessionStore
from ..settings import Settings
from .cache import RequestCache
from .completion import Completion, CompletionService, FinishReason, OpenAICompletionService
from .tools import ToolDispatcher, get_tool_schemas

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
MAX_TOOL_LOOPS = 10

RETRY_HINT = (
    "Note: a previous tool attempt failed ({reason}). "
    "Please try a different approach or use different parameters."
)
FINALIZE_INSTRUCTION = (
    "Based on all the data you have gathered above, please write your final analysis. "
    "Be concise and use markdown formatting. Do not call any more tools."
)
EMPTY_SUMMARY_TEXT = (
    "Analysis complete. Data was retrieved successfully but I was unable to "
    "generate a summary. Please try again."
)
ATTEMPTS_EXHAUSTED_TEXT = (
    "I encountered an error after {attempts} attempts.\n\n"
    "**Error details:** {reason}\n\n"
    "Please check the server logs for more detail."
)
FALLTHROUGH_TEXT = "I was unable to complete your request. Please try again."


def with_page_context(message: str, page_context: Optional[str] = None) -> str:
    if page_context:
        return f"[Current page: {page_context}]\n\n{message}"
    return message


def parse_arguments(name: str, raw: str) -> Dict[str, Any]:
    """Decode tool-call arguments; anything that is not a JSON object becomes {}."""
    if not raw:
        return {}
    try:
        args = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.error("Invalid tool arguments for %s: %s", name, e)
        return {}
    if not isinstance(args, dict):
        logger.error("Tool arguments for %s are not an object: %r", name, raw[:200])
        return {}
    return args


@dataclass
class TurnState:
    """State that lives for one turn and survives failed attempts within it."""

    cache: RequestCache = field(default_factory=RequestCache)
    chart_spec: Optional[ChartSpec] = None
    tool_calls_count: int = 0


class Orchestrator:
    """Runs one user turn: completions interleaved with tool calls, bounded retries,
    forced finalization, and history persistence."""

    def __init__(
        self,
        completion: CompletionService,
        dispatcher: ToolDispatcher,
        sessions: SessionStore,
        system_prompt: str,
        max_completion_tokens: int = 16000,
        final_max_completion_tokens: int = 8000,
        max_attempts: int = MAX_ATTEMPTS,
        max_tool_loops: int = MAX_TOOL_LOOPS,
    ) -> None:
        self._completion = completion
        self._dispatcher = dispatcher
        self._sessions = sessions
        self._system_prompt = system_prompt
        self._max_tokens = max_completion_tokens
        self._final_max_tokens = final_max_completion_tokens
        self._max_attempts = max_attempts
        self._max_tool_loops = max_tool_loops

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    async def run_turn(
        self, session_id: str, user_text: str, page_context: Optional[str] = None
    ) -> TurnResult:
        """Answer one user message within a session.

        Turns for the same session run one at a time. History is persisted only
        when an attempt completes; a failed or cancelled turn leaves it untouched.

        Args:
            session_id: Conversation identifier.
            user_text: The user's message.
            page_context: Optional name of the page the user is looking at.

        Returns:
            TurnResult: final text, optional chart spec, and tool-call count.
        """
        async with self._sessions.lock(session_id):
            return await self._run_turn(session_id, user_text, page_context)

    async def _run_turn(
        self, session_id: str, user_text: str, page_context: Optional[str]
    ) -> TurnResult:
        logger.info("Turn start session_id=%s", session_id)
        history = await self._sessions.hydrate(session_id)
        logger.debug("Session %s history length: %d", session_id, len(history))
        user = user_message(with_page_context(user_text, page_context))
        state = TurnState()
        last_error = ""

        for attempt in range(1, self._max_attempts + 1):
            logger.info("Attempt %d/%d session_id=%s", attempt, self._max_attempts, session_id)
            try:
                text, transcript = await self._attempt(history, user, last_error, state)
            except Exception as e:
                logger.exception("Attempt %d failed: %s", attempt, e)
                last_error = str(e) or type(e).__name__
                continue

            self._sessions.persist(session_id, history + transcript)
            logger.info(
                "Turn done session_id=%s attempts=%d tool_calls=%d chars=%d",
                session_id,
                attempt,
                state.tool_calls_count,
                len(text),
            )
            return TurnResult(
                text=text,
                session_id=session_id,
                chart_spec=state.chart_spec,
                tool_calls_count=state.tool_calls_count,
                attempts=attempt,
            )

        if last_error:
            logger.error("All %d attempts exhausted for session %s", self._max_attempts, session_id)
            text = ATTEMPTS_EXHAUSTED_TEXT.format(attempts=self._max_attempts, reason=last_error)
        else:
            logger.warning("Retry loop fell through for session %s", session_id)
            text = FALLTHROUGH_TEXT
        return TurnResult(
            text=text,
            session_id=session_id,
            tool_calls_count=state.tool_calls_count,
            attempts=self._max_attempts,
        )

    async def _complete(
        self,
        messages: List[Message],
        tool_choice: str = "auto",
        max_tokens: Optional[int] = None,
    ) -> Completion:
        logger.debug(
            "Calling completion service (messages=%d, tool_choice=%s)", len(messages), tool_choice
        )
        return await self._completion.complete(
            messages,
            get_tool_schemas(),
            tool_choice,
            max_tokens=max_tokens or self._max_tokens,
        )

    async def _attempt(
        self,
        history: List[Message],
        user: Message,
        last_error: str,
        state: TurnState,
    ) -> Tuple[str, List[Message]]:
        """One pass of the tool loop. Returns the final text and the messages to persist."""
        messages: List[Message] = [system_message(self._system_prompt), *history, user]
        if last_error:
            logger.info("Appending retry context: %s", last_error)
            messages.append(user_message(RETRY_HINT.format(reason=last_error)))
        transcript: List[Message] = [user]

        completion = await self._complete(messages)
        loops = 0
        while completion.finish_reason is FinishReason.TOOL_CALLS and loops < self._max_tool_loops:
            calls = [c for c in completion.tool_calls if c.type == "function"]
            for skipped in completion.tool_calls:
                if skipped.type != "function":
                    logger.info("Skipping non-function tool call: %s", skipped.type)
            if not calls:
                logger.warning("Completion requested tools but none are executable")
                break

            loops += 1
            logger.info("Tool loop %d: %d tool call(s)", loops, len(calls))
            request = assistant_tool_call_message(completion.content, calls)
            messages.append(request)
            transcript.append(request)
            for call in calls:
                result = tool_message(call.id, await self._execute(call, state))
                messages.append(result)
                transcript.append(result)

            completion = await self._complete(messages)

        pending_tools = completion.finish_reason is FinishReason.TOOL_CALLS
        if pending_tools and loops >= self._max_tool_loops:
            logger.warning("Hit tool loop limit (%d), forcing stop", self._max_tool_loops)

        if pending_tools or not completion.text or completion.finish_reason is FinishReason.LENGTH:
            text = await self._finalize(messages, completion)
        else:
            text = completion.content or ""

        transcript.append(assistant_message(text))
        return text, transcript

    async def _execute(self, call: ToolCallRequest, state: TurnState) -> str:
        args = parse_arguments(call.name, call.arguments)
        logger.info("Tool %s args=%s", call.name, call.arguments[:200])
        result = await self._dispatcher.dispatch(call.name, args, state.cache)
        state.tool_calls_count += 1

        if isinstance(result, ToolSuccess):
            logger.info("Tool %s status=success", call.name)
            if result.chart_spec is not None:
                state.chart_spec = result.chart_spec
                logger.info("Chart spec captured: %s", result.chart_spec.chart_type.value)
        else:
            logger.info(
                "Tool %s status=error kind=%s message=%s",
                call.name,
                result.error_kind.value,
                result.message,
            )
        return envelope_json(result)

    async def _finalize(self, messages: List[Message], last: Completion) -> str:
        """Ask for a prose answer with tools disabled."""
        logger.info(
            "Forcing final response (finish_reason=%s, content_length=%d)",
            last.finish_reason.value,
            len(last.text),
        )
        forced = list(messages)
        if last.text and not last.tool_calls:
            forced.append(assistant_message(last.content or ""))
        forced.append(user_message(FINALIZE_INSTRUCTION))

        completion = await self._complete(forced, "none", max_tokens=self._final_max_tokens)
        text = completion.text or EMPTY_SUMMARY_TEXT
        logger.info("Forced final response (%d chars)", len(text))
        return text


def build_orchestrator(
    settings: Settings,
    database: Database,
    sessions: SessionStore,
    completion: Optional[CompletionService] = None,
) -> Orchestrator:
    """Wire the orchestrator from settings; ``completion`` overrides the OpenAI client."""
    dispatcher = ToolDispatcher(DataQueryService(database))
    return Orchestrator(
        completion=completion or OpenAICompletionService(settings),
        dispatcher=dispatcher,
        sessions=sessions,
        system_prompt=settings.agent_system_prompt,
        max_completion_tokens=settings.max_completion_tokens,
        final_max_completion_tokens=settings.final_max_completion_tokens,
    )
