import json
import sqlite3
from unittest.mock import MagicMock

import pytest

from autogrc.agent.cache import RequestCache
from autogrc.agent.tools import ToolDispatcher, ToolName, get_tool_schemas
from autogrc.errors import ErrorKind, QueryError
from autogrc.models import ToolError, ToolSuccess, envelope_json
from autogrc.services.queries import DataQueryService

DOMAINS = [
    {"domain": "Identify", "controls": 1, "avgCompliance": 87.5},
    {"domain": "Detect", "controls": 1, "avgCompliance": 69.0},
    {"domain": "Protect", "controls": 2, "avgCompliance": 58.8},
]


@pytest.fixture
def mock_queries() -> MagicMock:
    """Query service mock returning the security domains for every query."""
    m = MagicMock(spec=DataQueryService)
    m.run = MagicMock(return_value=DOMAINS)
    return m


@pytest.fixture
def dispatcher(mock_queries: MagicMock) -> ToolDispatcher:
    return ToolDispatcher(mock_queries)


def test_tool_schemas() -> None:
    """Four function tools are advertised, built once."""
    schemas = get_tool_schemas()
    assert [s["function"]["name"] for s in schemas] == [t.value for t in ToolName]
    assert get_tool_schemas() is schemas
    query_enum = schemas[0]["function"]["parameters"]["properties"]["queryType"]["enum"]
    assert "control_integration_recommendations" in query_enum


@pytest.mark.asyncio
async def test_query_database_populates_cache(dispatcher: ToolDispatcher, mock_queries: MagicMock) -> None:
    """A successful list result is cached under its queryType."""
    cache = RequestCache()
    result = await dispatcher.dispatch("queryDatabase", {"queryType": "security_domains"}, cache)
    assert isinstance(result, ToolSuccess)
    assert result.data == DOMAINS
    assert cache.get("security_domains") == DOMAINS
    mock_queries.run.assert_called_once_with("security_domains", None)


@pytest.mark.asyncio
async def test_analyze_reuses_cached_rows(dispatcher: ToolDispatcher, mock_queries: MagicMock) -> None:
    """analyzeDataset with a cached dataRef does not query again."""
    cache = RequestCache()
    await dispatcher.dispatch("queryDatabase", {"queryType": "security_domains"}, cache)
    result = await dispatcher.dispatch(
        "analyzeDataset",
        {"dataRef": "security_domains", "analysisType": "ranking", "valueField": "avgCompliance"},
        cache,
    )
    assert isinstance(result, ToolSuccess)
    assert [r["domain"] for r in result.data] == ["Identify", "Detect", "Protect"]
    mock_queries.run.assert_called_once()


@pytest.mark.asyncio
async def test_analyze_fetches_missing_ref(dispatcher: ToolDispatcher, mock_queries: MagicMock) -> None:
    """An uncached dataRef is fetched and then cached."""
    cache = RequestCache()
    result = await dispatcher.dispatch(
        "analyzeDataset", {"dataRef": "security_domains", "analysisType": "aggregation"}, cache
    )
    assert isinstance(result, ToolSuccess)
    assert result.stats["field"] == "controls"
    assert "security_domains" in cache
    mock_queries.run.assert_called_once_with("security_domains", None)


@pytest.mark.asyncio
async def test_analyze_without_data(dispatcher: ToolDispatcher) -> None:
    """No inline data and no dataRef reports no_data."""
    result = await dispatcher.dispatch("analyzeDataset", {"analysisType": "ranking"}, RequestCache())
    assert isinstance(result, ToolError)
    assert result.error_kind is ErrorKind.NO_DATA


@pytest.mark.asyncio
async def test_analyze_single_object_result(dispatcher: ToolDispatcher, mock_queries: MagicMock) -> None:
    """A single-object query result is analyzed as one row."""
    mock_queries.run.return_value = {"masterFramework": "NIST CSF", "averageComplianceScore": 65}
    result = await dispatcher.dispatch(
        "analyzeDataset", {"dataRef": "overview_kpis", "analysisType": "aggregation"}, RequestCache()
    )
    assert isinstance(result, ToolSuccess)
    assert result.stats["avg"] == 65.0


@pytest.mark.asyncio
async def test_unknown_tool(dispatcher: ToolDispatcher) -> None:
    """An unknown tool name is an error envelope, not an exception."""
    result = await dispatcher.dispatch("dropTables", {}, RequestCache())
    assert isinstance(result, ToolError)
    assert result.error_kind is ErrorKind.UNKNOWN_TOOL
    envelope = json.loads(envelope_json(result))
    assert envelope == {"status": "error", "errorKind": "unknown_tool", "message": 'Unknown tool: "dropTables"'}


@pytest.mark.asyncio
async def test_query_error_kind_is_kept(dispatcher: ToolDispatcher, mock_queries: MagicMock) -> None:
    """QueryError kinds pass through to the envelope."""
    mock_queries.run.side_effect = QueryError(ErrorKind.UNKNOWN_QUERY, 'Unknown queryType: "x"')
    result = await dispatcher.dispatch("queryDatabase", {"queryType": "x"}, RequestCache())
    assert isinstance(result, ToolError)
    assert result.error_kind is ErrorKind.UNKNOWN_QUERY


@pytest.mark.asyncio
async def test_database_error(dispatcher: ToolDispatcher, mock_queries: MagicMock) -> None:
    """sqlite3 errors become database_error."""
    mock_queries.run.side_effect = sqlite3.OperationalError("database is locked")
    result = await dispatcher.dispatch("queryDatabase", {"queryType": "overview_kpis"}, RequestCache())
    assert isinstance(result, ToolError)
    assert result.error_kind is ErrorKind.DATABASE_ERROR
    assert result.message == "database is locked"


@pytest.mark.asyncio
async def test_unexpected_exception(dispatcher: ToolDispatcher, mock_queries: MagicMock) -> None:
    """Any other exception becomes execution_exception."""
    mock_queries.run.side_effect = RuntimeError("boom")
    result = await dispatcher.dispatch("queryDatabase", {"queryType": "overview_kpis"}, RequestCache())
    assert isinstance(result, ToolError)
    assert result.error_kind is ErrorKind.EXECUTION_EXCEPTION
    assert result.message == "boom"


@pytest.mark.asyncio
async def test_chart_fetches_uncached_ref(dispatcher: ToolDispatcher, mock_queries: MagicMock) -> None:
    """generateChartSpec with an uncached dataRef uses that query's rows."""
    cache = RequestCache()
    cache.put("other", [{"domain": "X", "avgCompliance": 1}])
    result = await dispatcher.dispatch(
        "generateChartSpec",
        {"chartType": "BarChart", "dataRef": "security_domains", "xKey": "domain", "yKeys": ["avgCompliance"]},
        cache,
    )
    assert isinstance(result, ToolSuccess)
    assert result.chart_spec.data == DOMAINS
    assert json.loads(envelope_json(result))["chartSpec"]["chartType"] == "BarChart"


@pytest.mark.asyncio
async def test_chart_autodetects_cached_rows(dispatcher: ToolDispatcher, mock_queries: MagicMock) -> None:
    """Without data or dataRef a cached dataset with matching fields is used."""
    cache = RequestCache()
    await dispatcher.dispatch("queryDatabase", {"queryType": "security_domains"}, cache)
    result = await dispatcher.dispatch(
        "generateChartSpec",
        {"chartType": "Pie", "xKey": "domain", "yKeys": "avgCompliance"},
        cache,
    )
    assert isinstance(result, ToolSuccess)
    assert result.chart_spec.y_keys == ["avgCompliance"]
    mock_queries.run.assert_called_once()


@pytest.mark.asyncio
async def test_chart_without_rows(dispatcher: ToolDispatcher) -> None:
    """No resolvable rows reports no_data."""
    result = await dispatcher.dispatch(
        "generateChartSpec", {"chartType": "LineChart", "xKey": "month", "yKeys": ["score"]}, RequestCache()
    )
    assert isinstance(result, ToolError)
    assert result.error_kind is ErrorKind.NO_DATA


@pytest.mark.asyncio
async def test_manage_integration_status_is_idempotent(queries: DataQueryService) -> None:
    """A real change invalidates the cached catalog; a repeat is a no-op."""
    dispatcher = ToolDispatcher(queries)
    cache = RequestCache()
    await dispatcher.dispatch("queryDatabase", {"queryType": "integrations_catalog"}, cache)
    assert "integrations_catalog" in cache

    first = await dispatcher.dispatch(
        "manageIntegrationStatus", {"action": "activate", "integrationName": "CrowdStrike"}, cache
    )
    assert isinstance(first, ToolSuccess)
    assert first.data["changed"] is True
    assert "integrations_catalog" not in cache

    second = await dispatcher.dispatch(
        "manageIntegrationStatus", {"action": "activate", "integrationId": "int-2"}, cache
    )
    assert second.data["changed"] is False


@pytest.mark.asyncio
async def test_manage_integration_status_missing_action(queries: DataQueryService) -> None:
    """Missing action is missing_params."""
    result = await ToolDispatcher(queries).dispatch(
        "manageIntegrationStatus", {"integrationId": "int-2"}, RequestCache()
    )
    assert isinstance(result, ToolError)
    assert result.error_kind is ErrorKind.MISSING_PARAMS


@pytest.mark.asyncio
async def test_chart_reuses_cached_ref(dispatcher: ToolDispatcher, mock_queries: MagicMock) -> None:
    """generateChartSpec with a dataRef fetched earlier in the turn does not query again."""
    cache = RequestCache()
    await dispatcher.dispatch("queryDatabase", {"queryType": "security_domains"}, cache)
    result = await dispatcher.dispatch(
        "generateChartSpec",
        {"chartType": "BarChart", "dataRef": "security_domains", "xKey": "domain", "yKeys": ["avgCompliance"]},
        cache,
    )
    assert isinstance(result, ToolSuccess)
    assert result.chart_spec.data == DOMAINS
    mock_queries.run.assert_called_once_with("security_domains", None)


@pytest.mark.asyncio
async def test_analyze_infinite_limit_is_clamped(dispatcher: ToolDispatcher) -> None:
    """An infinite limit falls back to the default instead of failing."""
    result = await dispatcher.dispatch(
        "analyzeDataset",
        {"dataRef": "security_domains", "analysisType": "ranking", "limit": float("inf")},
        RequestCache(),
    )
    assert isinstance(result, ToolSuccess)
    assert len(result.data) == len(DOMAINS)


@pytest.mark.asyncio
async def test_query_infinite_limit(queries: DataQueryService) -> None:
    """queryDatabase with limit Infinity returns rows, not an execution error."""
    result = await ToolDispatcher(queries).dispatch(
        "queryDatabase",
        {"queryType": "least_compliant_controls", "params": {"limit": float("inf")}},
        RequestCache(),
    )
    assert isinstance(result, ToolSuccess)
