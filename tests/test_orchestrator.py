import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import pytest

from autogrc.agent.completion import Completion, FinishReason
from autogrc.agent.orchestrator import (
    EMPTY_SUMMARY_TEXT,
    FINALIZE_INSTRUCTION,
    MAX_ATTEMPTS,
    MAX_TOOL_LOOPS,
    Orchestrator,
    parse_arguments,
    with_page_context,
)
from autogrc.agent.tools import ToolDispatcher
from autogrc.models import Message, ToolCallRequest
from autogrc.services.queries import DataQueryService
from autogrc.services.session_store import HISTORY_LIMIT, SessionStore

SYSTEM_PROMPT = "You are a test assistant."


class ScriptedCompletion:
    """Completion service whose answers come from a function of the call index."""

    def __init__(self, respond: Callable[[int, str, List[Message]], Completion]) -> None:
        self._respond = respond
        self.calls: List[Dict[str, Any]] = []

    async def complete(
        self,
        messages: List[Message],
        tools: List[Dict[str, Any]],
        tool_choice: str,
        max_tokens: Optional[int] = None,
    ) -> Completion:
        await asyncio.sleep(0)
        self.calls.append(
            {
                "messages": [dict(m) for m in messages],
                "tools": tools,
                "tool_choice": tool_choice,
                "max_tokens": max_tokens,
            }
        )
        return self._respond(len(self.calls) - 1, tool_choice, messages)


def scripted(*answers: Any) -> ScriptedCompletion:
    """Return answers in order; exceptions are raised."""

    def respond(index: int, tool_choice: str, messages: List[Message]) -> Completion:
        answer = answers[min(index, len(answers) - 1)]
        if isinstance(answer, BaseException):
            raise answer
        return answer

    return ScriptedCompletion(respond)


def text(content: Optional[str], reason: FinishReason = FinishReason.STOP) -> Completion:
    return Completion(finish_reason=reason, content=content)


def calls(*requests: ToolCallRequest, content: Optional[str] = None) -> Completion:
    return Completion(finish_reason=FinishReason.TOOL_CALLS, content=content, tool_calls=list(requests))


def call(call_id: str, name: str, args: Any) -> ToolCallRequest:
    raw = args if isinstance(args, str) else json.dumps(args)
    return ToolCallRequest(id=call_id, name=name, arguments=raw)


def make_orchestrator(completion: ScriptedCompletion, queries: DataQueryService) -> Orchestrator:
    return Orchestrator(
        completion=completion,
        dispatcher=ToolDispatcher(queries),
        sessions=SessionStore(),
        system_prompt=SYSTEM_PROMPT,
    )


def assert_tool_messages_follow_requests(messages: List[Message]) -> None:
    """Every assistant tool request is followed by one tool message per call id."""
    for i, message in enumerate(messages):
        if message["role"] == "assistant" and message.get("tool_calls"):
            ids = [tc["id"] for tc in message["tool_calls"]]
            following = messages[i + 1 : i + 1 + len(ids)]
            assert [m["role"] for m in following] == ["tool"] * len(ids)
            assert [m["tool_call_id"] for m in following] == ids


def test_with_page_context() -> None:
    """Page context is prefixed to the user message."""
    assert with_page_context("hi", "Overview") == "[Current page: Overview]\n\nhi"
    assert with_page_context("hi") == "hi"


def test_parse_arguments_tolerates_bad_input() -> None:
    """Invalid JSON and non-object JSON both become {}."""
    assert parse_arguments("queryDatabase", '{"queryType": "overview_kpis"}') == {"queryType": "overview_kpis"}
    assert parse_arguments("queryDatabase", "{not json") == {}
    assert parse_arguments("queryDatabase", "[1, 2]") == {}
    assert parse_arguments("queryDatabase", "") == {}


@pytest.mark.asyncio
async def test_end_to_end_average_score(queries: DataQueryService) -> None:
    """One tool call, then a final answer; four messages persisted."""
    completion = scripted(
        calls(call("call-1", "queryDatabase", {"queryType": "overview_kpis"})),
        text("The average compliance score is **65%**."),
    )
    orchestrator = make_orchestrator(completion, queries)

    result = await orchestrator.run_turn("s1", "what is the average compliance score?")

    assert result.text == "The average compliance score is **65%**."
    assert result.tool_calls_count == 1
    assert result.attempts == 1
    assert len(completion.calls) == 2
    assert completion.calls[0]["tool_choice"] == "auto"
    assert completion.calls[0]["messages"][0] == {"role": "system", "content": SYSTEM_PROMPT}

    tool_msg = completion.calls[1]["messages"][-1]
    assert tool_msg["role"] == "tool"
    assert tool_msg["tool_call_id"] == "call-1"
    envelope = json.loads(tool_msg["content"])
    assert envelope["status"] == "success"
    assert envelope["data"]["averageComplianceScore"] == 65

    history = await orchestrator.sessions.hydrate("s1")
    assert [m["role"] for m in history] == ["user", "assistant", "tool", "assistant"]
    assert history[1]["tool_calls"][0]["function"]["name"] == "queryDatabase"
    assert history[-1]["content"] == result.text


@pytest.mark.asyncio
async def test_follow_up_sees_history(queries: DataQueryService) -> None:
    """The second turn's request carries the first turn's transcript."""
    completion = scripted(text("First answer."))
    orchestrator = make_orchestrator(completion, queries)

    await orchestrator.run_turn("s1", "first")
    await orchestrator.run_turn("s1", "second", page_context="Applications")

    sent = completion.calls[1]["messages"]
    assert [m["role"] for m in sent] == ["system", "user", "assistant", "user"]
    assert sent[-1]["content"] == "[Current page: Applications]\n\nsecond"


@pytest.mark.asyncio
async def test_bounded_retry(queries: DataQueryService) -> None:
    """A persistently failing completion service is called MAX_ATTEMPTS times."""
    completion = scripted(RuntimeError("upstream unavailable"))
    orchestrator = make_orchestrator(completion, queries)

    result = await orchestrator.run_turn("s1", "hello")

    assert len(completion.calls) == MAX_ATTEMPTS
    assert result.text == (
        f"I encountered an error after {MAX_ATTEMPTS} attempts.\n\n"
        "**Error details:** upstream unavailable\n\n"
        "Please check the server logs for more detail."
    )
    assert result.chart_spec is None
    assert await orchestrator.sessions.hydrate("s1") == []


@pytest.mark.asyncio
async def test_retry_hint_not_persisted(queries: DataQueryService) -> None:
    """The retry hint is sent on the next attempt but never stored."""
    completion = scripted(ValueError("bad gateway"), text("Recovered."))
    orchestrator = make_orchestrator(completion, queries)

    result = await orchestrator.run_turn("s1", "hello")

    assert result.text == "Recovered."
    assert result.attempts == 2
    hint = completion.calls[1]["messages"][-1]
    assert hint["role"] == "user"
    assert hint["content"].startswith("Note: a previous tool attempt failed (bad gateway).")
    history = await orchestrator.sessions.hydrate("s1")
    assert [m["content"] for m in history] == ["hello", "Recovered."]


@pytest.mark.asyncio
async def test_bounded_tool_loop(queries: DataQueryService) -> None:
    """A model that always asks for tools is cut off and forced to answer."""

    def respond(index: int, tool_choice: str, messages: List[Message]) -> Completion:
        if tool_choice == "none":
            return text("Here is what I found.")
        return calls(call(f"call-{index}", "queryDatabase", {"queryType": "security_domains"}))

    completion = ScriptedCompletion(respond)
    orchestrator = make_orchestrator(completion, queries)

    result = await orchestrator.run_turn("s1", "loop forever")

    assert len(completion.calls) == MAX_TOOL_LOOPS + 2
    forced = completion.calls[-1]
    assert forced["tool_choice"] == "none"
    assert forced["max_tokens"] == 8000
    assert forced["messages"][-1] == {"role": "user", "content": FINALIZE_INSTRUCTION}
    assert result.text == "Here is what I found."
    assert result.tool_calls_count == MAX_TOOL_LOOPS
    for sent in completion.calls:
        assert_tool_messages_follow_requests(sent["messages"])
        assert sent["messages"][-1]["role"] != "assistant" or not sent["messages"][-1].get("tool_calls")


@pytest.mark.asyncio
async def test_empty_answer_forces_finalization(queries: DataQueryService) -> None:
    """Empty content triggers a forced call; empty forced output uses the fallback text."""
    completion = scripted(text("   "), text(""))
    orchestrator = make_orchestrator(completion, queries)

    result = await orchestrator.run_turn("s1", "hello")

    assert len(completion.calls) == 2
    assert completion.calls[1]["tool_choice"] == "none"
    assert result.text == EMPTY_SUMMARY_TEXT


@pytest.mark.asyncio
async def test_truncated_answer_is_kept_for_finalization(queries: DataQueryService) -> None:
    """A length-truncated answer is resent before the finalization instruction."""
    completion = scripted(text("Partial analy", FinishReason.LENGTH), text("Full analysis."))
    orchestrator = make_orchestrator(completion, queries)

    result = await orchestrator.run_turn("s1", "hello")

    forced = completion.calls[1]["messages"]
    assert forced[-2] == {"role": "assistant", "content": "Partial analy"}
    assert forced[-1]["content"] == FINALIZE_INSTRUCTION
    assert result.text == "Full analysis."
    history = await orchestrator.sessions.hydrate("s1")
    assert [m["content"] for m in history] == ["hello", "Full analysis."]


@pytest.mark.asyncio
async def test_invalid_arguments_reach_tool_as_empty(queries: DataQueryService) -> None:
    """Unparseable arguments become {} and the tool reports missing_params."""
    completion = scripted(calls(call("call-1", "queryDatabase", "{oops")), text("Sorry."))
    orchestrator = make_orchestrator(completion, queries)

    await orchestrator.run_turn("s1", "hello")

    envelope = json.loads(completion.calls[1]["messages"][-1]["content"])
    assert envelope["status"] == "error"
    assert envelope["errorKind"] == "missing_params"


@pytest.mark.asyncio
async def test_non_function_calls_are_skipped(queries: DataQueryService) -> None:
    """Only function calls are executed and echoed back."""
    custom = ToolCallRequest(id="x-1", name="browser", arguments="{}", type="custom")
    completion = scripted(
        calls(custom, call("call-1", "queryDatabase", {"queryType": "security_domains"})),
        text("Done."),
    )
    orchestrator = make_orchestrator(completion, queries)

    result = await orchestrator.run_turn("s1", "hello")

    sent = completion.calls[1]["messages"]
    assert [tc["id"] for tc in sent[-2]["tool_calls"]] == ["call-1"]
    assert result.tool_calls_count == 1


@pytest.mark.asyncio
async def test_only_non_function_calls_finalizes(queries: DataQueryService) -> None:
    """A tool request with nothing executable goes straight to finalization."""
    custom = ToolCallRequest(id="x-1", name="browser", arguments="{}", type="custom")
    completion = scripted(calls(custom, content="Let me browse."), text("Answer without tools."))
    orchestrator = make_orchestrator(completion, queries)

    result = await orchestrator.run_turn("s1", "hello")

    assert completion.calls[1]["tool_choice"] == "none"
    assert all(m["role"] != "tool" for m in completion.calls[1]["messages"])
    assert result.text == "Answer without tools."


@pytest.mark.asyncio
async def test_chart_spec_returned(queries: DataQueryService) -> None:
    """The last generated chart is returned with the answer."""
    completion = scripted(
        calls(call("call-1", "queryDatabase", {"queryType": "security_domains"})),
        calls(
            call(
                "call-2",
                "generateChartSpec",
                {"chartType": "BarChart", "dataRef": "security_domains", "xKey": "domain", "yKeys": ["avgCompliance"]},
            )
        ),
        text("Identify leads at 87.5%."),
    )
    orchestrator = make_orchestrator(completion, queries)

    result = await orchestrator.run_turn("s1", "chart the domains")

    response = result.to_response()
    assert response["chartSpec"]["chartType"] == "BarChart"
    assert [d["domain"] for d in response["chartSpec"]["data"]] == ["Identify", "Detect", "Protect"]
    assert response["sessionId"] == "s1"


@pytest.mark.asyncio
async def test_history_is_trimmed(queries: DataQueryService) -> None:
    """Persisted history never exceeds the limit nor starts with a tool message."""

    def respond(index: int, tool_choice: str, messages: List[Message]) -> Completion:
        if messages[-1]["role"] == "user":
            return calls(call(f"call-{index}", "queryDatabase", {"queryType": "overview_kpis"}))
        return text(f"answer {index}")

    completion = ScriptedCompletion(respond)
    orchestrator = make_orchestrator(completion, queries)

    for turn in range(8):
        await orchestrator.run_turn("s1", f"question {turn}")
        history = await orchestrator.sessions.hydrate("s1")
        assert len(history) <= HISTORY_LIMIT
        assert history[0]["role"] != "tool"
        assert_tool_messages_follow_requests(history)


@pytest.mark.asyncio
async def test_cancelled_turn_persists_nothing(queries: DataQueryService) -> None:
    """Cancellation propagates and leaves the session untouched."""
    completion = scripted(asyncio.CancelledError())
    orchestrator = make_orchestrator(completion, queries)

    with pytest.raises(asyncio.CancelledError):
        await orchestrator.run_turn("s1", "hello")

    assert len(completion.calls) == 1
    assert await orchestrator.sessions.hydrate("s1") == []


@pytest.mark.asyncio
async def test_same_session_turns_are_serialized(queries: DataQueryService) -> None:
    """Concurrent turns on one session both land in the history."""
    completion = scripted(text("ok"))
    orchestrator = make_orchestrator(completion, queries)

    await asyncio.gather(
        orchestrator.run_turn("s1", "one"),
        orchestrator.run_turn("s1", "two"),
    )

    history = await orchestrator.sessions.hydrate("s1")
    assert [m["content"] for m in history] == ["one", "ok", "two", "ok"]
