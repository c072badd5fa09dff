import asyncio
import logging
import sqlite3
from enum import Enum
from functools import lru_cache
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from ..errors import ErrorKind, QueryError, ToolFailure
from ..models import ChartType, Row, ToolError, ToolResult, ToolSuccess
from ..services.queries import DataQueryService, QueryType
from .analysis import AnalysisType, analyze
from .cache import RequestCache
from .charts import DEFAULT_COLORS, build_chart_spec, resolve_chart_rows

logger = logging.getLogger(__name__)


class ToolName(str, Enum):
    QUERY_DATABASE = "queryDatabase"
    ANALYZE_DATASET = "analyzeDataset"
    GENERATE_CHART_SPEC = "generateChartSpec"
    MANAGE_INTEGRATION_STATUS = "manageIntegrationStatus"


# dataRef may point at any query that can run without parameters or with the
# same optional params; recommendations are an object and never chartable.
_DATA_REF_QUERIES = [q.value for q in QueryType if q is not QueryType.CONTROL_INTEGRATION_RECOMMENDATIONS]


@lru_cache(maxsize=1)
def get_tool_schemas() -> List[Dict[str, Any]]:
    """Return the OpenAI function-tool schemas for the four tools (cached).

    Returns:
        List[Dict[str, Any]]: Tool schemas in OpenAI function format.
    """
    return [
        {
            "type": "function",
            "function": {
                "name": ToolName.QUERY_DATABASE.value,
                "description": (
                    "Query the AutoGRC live compliance database for real data. "
                    "Call this FIRST before answering any question about compliance scores, "
                    "application status, framework mappings, control failures, security "
                    "domains, or integration status. Never guess numbers."
                ),
                "parameters": {
                    "type": "object",
                    "properties": {
                        "queryType": {
                            "type": "string",
                            "enum": [q.value for q in QueryType],
                            "description": (
                                "overview_kpis: global KPIs. "
                                "applications_overview: all apps with scores and status. "
                                "frameworks_overview: frameworks with mapping %. "
                                "security_domains: domain-level compliance breakdown. "
                                "compliance_trends: 6-month score trend. "
                                "controls_by_domain: controls in one domain (requires params.domain). "
                                "failing_controls: top 10 worst-performing controls (portfolio-wide). "
                                "least_compliant_controls: lowest-scoring controls, portfolio-wide or for "
                                "one app via params.applicationName/applicationId. "
                                "app_controls: all controls and scores for ONE application (requires "
                                "params.applicationName or params.applicationId). "
                                "app_details: metadata and compliance summary for ONE application. "
                                "integrations_catalog: all integrations with current status. "
                                "control_integration_recommendations: inactive integrations worth "
                                "activating for a target control."
                            ),
                        },
                        "params": {
                            "type": "object",
                            "description": "Optional filters; which apply depends on queryType.",
                            "properties": {
                                "domain": {"type": "string", "description": "Security domain name (e.g. 'Protect', 'Identify')"},
                                "applicationName": {"type": "string", "description": "Application name (partial match supported)"},
                                "applicationId": {"type": "string", "description": "Exact application id"},
                                "controlCode": {"type": "string", "description": "Control code (e.g. 'PR.AA-5')"},
                                "controlId": {"type": "string", "description": "Exact control id"},
                                "limit": {"type": "number", "description": "Result size limit (defaults vary by queryType)"},
                            },
                        },
                    },
                    "required": ["queryType"],
                },
            },
        },
        {
            "type": "function",
            "function": {
                "name": ToolName.ANALYZE_DATASET.value,
                "description": (
                    "Perform statistical analysis on compliance data: aggregations, rankings, "
                    "trend direction, or comparison against the mean. Supply either 'data' "
                    "(the array from a queryDatabase result) or 'dataRef' (a queryType; the "
                    "tool reuses or fetches the rows itself)."
                ),
                "parameters": {
                    "type": "object",
                    "properties": {
                        "data": {
                            "type": "array",
                            "items": {"type": "object"},
                            "description": "Rows to analyze. Omit when using 'dataRef'.",
                        },
                        "dataRef": {
                            "type": "string",
                            "enum": _DATA_REF_QUERIES,
                            "description": "queryType whose rows should be analyzed.",
                        },
                        "analysisType": {
                            "type": "string",
                            "enum": [a.value for a in AnalysisType],
                            "description": (
                                "aggregation: sum/avg/min/max/median, optionally grouped. "
                                "ranking: sort by a field. "
                                "trends: direction and delta over a time-ordered sequence. "
                                "comparison: each item vs the mean."
                            ),
                        },
                        "groupBy": {"type": "string", "description": "Field to group by (aggregation)"},
                        "valueField": {"type": "string", "description": "Numeric field to operate on"},
                        "sortDirection": {"type": "string", "enum": ["asc", "desc"]},
                        "limit": {"type": "number", "description": "Max items returned for ranking (default 10)"},
                    },
                    "required": ["analysisType"],
                },
            },
        },
        {
            "type": "function",
            "function": {
                "name": ToolName.GENERATE_CHART_SPEC.value,
                "description": (
                    "Generate a chart for display in the UI when the user asks for a chart, "
                    "graph, or visual. If you already called queryDatabase, set 'dataRef' to "
                    "the same queryType and the server injects the rows. With neither 'data' "
                    "nor 'dataRef', the server picks a cached dataset containing xKey and yKeys."
                ),
                "parameters": {
                    "type": "object",
                    "properties": {
                        "chartType": {"type": "string", "enum": [c.value for c in ChartType]},
                        "dataRef": {
                            "type": "string",
                            "enum": _DATA_REF_QUERIES,
                            "description": "queryType previously fetched in this conversation.",
                        },
                        "data": {
                            "type": "array",
                            "items": {"type": "object"},
                            "description": "Raw rows. Prefer 'dataRef'.",
                        },
                        "xKey": {"type": "string", "description": "Field for X-axis labels or pie slice names (e.g. 'domain', 'name', 'month')"},
                        "yKeys": {
                            "type": "array",
                            "items": {"type": "string"},
                            "description": "Numeric field(s) to plot (e.g. ['avgCompliance'])",
                        },
                        "title": {"type": "string", "description": "Chart title"},
                        "colors": {
                            "type": "array",
                            "items": {"type": "string"},
                            "description": "Hex colors. Defaults: " + ", ".join(DEFAULT_COLORS),
                        },
                    },
                    "required": ["chartType", "xKey", "yKeys"],
                },
            },
        },
        {
            "type": "function",
            "function": {
                "name": ToolName.MANAGE_INTEGRATION_STATUS.value,
                "description": (
                    "Activate or deactivate an integration. Use ONLY after explicit user "
                    "confirmation (e.g. 'yes, activate X'). Never call it for "
                    "recommendation-only questions."
                ),
                "parameters": {
                    "type": "object",
                    "properties": {
                        "action": {
                            "type": "string",
                            "enum": ["activate", "deactivate"],
                            "description": "activate sets status to Active; deactivate sets it to Disabled.",
                        },
                        "integrationId": {"type": "string", "description": "Exact integration id (preferred)."},
                        "integrationName": {"type": "string", "description": "Integration display name (partial match)."},
                    },
                    "required": ["action"],
                },
            },
        },
    ]


def _rows(data: Any) -> Optional[List[Row]]:
    """View a query result as rows; single objects become one-row datasets."""
    if isinstance(data, list):
        return [r for r in data if isinstance(r, dict)]
    if isinstance(data, dict):
        return [data]
    return None


def _int(value: Any, default: int) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default


class ToolDispatcher:
    """Routes tool calls to their handlers and wraps every outcome in a ToolResult."""

    def __init__(self, queries: DataQueryService) -> None:
        self._queries = queries
        self._handlers: Dict[ToolName, Callable[[Mapping[str, Any], RequestCache], Awaitable[ToolResult]]] = {
            ToolName.QUERY_DATABASE: self._query_database,
            ToolName.ANALYZE_DATASET: self._analyze_dataset,
            ToolName.GENERATE_CHART_SPEC: self._generate_chart_spec,
            ToolName.MANAGE_INTEGRATION_STATUS: self._manage_integration_status,
        }

    async def dispatch(
        self, name: str, args: Mapping[str, Any], cache: RequestCache
    ) -> ToolResult:
        """Execute one tool call. Never raises.

        Args:
            name: Tool name requested by the model.
            args: Parsed arguments (empty when the model sent invalid JSON).
            cache: The turn's request cache.

        Returns:
            ToolResult: ToolSuccess, or ToolError with the matching error kind.
        """
        try:
            tool = ToolName(name)
        except ValueError:
            logger.warning("Unknown tool requested: %s", name)
            return ToolError(ErrorKind.UNKNOWN_TOOL, f'Unknown tool: "{name}"')

        try:
            return await self._handlers[tool](args, cache)
        except ToolFailure as e:
            return ToolError(e.kind, e.message)
        except sqlite3.Error as e:
            logger.error("Database error in tool %s: %s", tool.value, e)
            return ToolError(ErrorKind.DATABASE_ERROR, str(e) or "Database query failed")
        except Exception as e:
            logger.exception("Tool %s raised: %s", tool.value, e)
            return ToolError(ErrorKind.EXECUTION_EXCEPTION, str(e) or type(e).__name__)

    async def _fetch(self, query_type: Any, params: Any = None) -> Any:
        return await asyncio.to_thread(self._queries.run, query_type, params)

    async def _rows_for_ref(self, data_ref: str, cache: RequestCache) -> Optional[List[Row]]:
        """Rows for a queryType reference, from the cache when already fetched this turn."""
        cached = cache.get(data_ref)
        if cached is not None:
            logger.debug("Cache hit for %s", data_ref)
            return cached
        rows = _rows(await self._fetch(data_ref))
        if rows:
            cache.put(data_ref, rows)
        return rows

    async def _query_database(self, args: Mapping[str, Any], cache: RequestCache) -> ToolResult:
        query_type = args.get("queryType")
        data = await self._fetch(query_type, args.get("params"))
        if isinstance(data, list) and data:
            cache.put(str(query_type), data)
        return ToolSuccess(data=data)

    async def _analyze_dataset(self, args: Mapping[str, Any], cache: RequestCache) -> ToolResult:
        rows = _rows(args.get("data"))
        data_ref = args.get("dataRef")
        if not rows and data_ref:
            rows = await self._rows_for_ref(str(data_ref), cache)
        if not rows:
            raise QueryError(
                ErrorKind.NO_DATA,
                "No data to analyze. Either pass 'data' directly (the array from a "
                "queryDatabase result) or set 'dataRef' to a queryType such as "
                "'applications_overview' to fetch it automatically.",
            )

        outcome = analyze(
            rows,
            args.get("analysisType"),
            value_field=args.get("valueField") or None,
            group_by=args.get("groupBy") or None,
            sort_direction=str(args.get("sortDirection") or "desc"),
            limit=_int(args.get("limit"), 10),
        )
        return ToolSuccess(data=outcome.data, stats=outcome.stats)

    async def _generate_chart_spec(self, args: Mapping[str, Any], cache: RequestCache) -> ToolResult:
        x_key = args.get("xKey")
        y_keys = args.get("yKeys") or []
        if isinstance(y_keys, str):
            y_keys = [y_keys]
        inline = _rows(args.get("data"))
        data_ref = str(args.get("dataRef") or "") or None

        if not inline and data_ref and data_ref not in cache:
            await self._rows_for_ref(data_ref, cache)
        rows = resolve_chart_rows(inline, data_ref, cache, x_key or "", y_keys)

        spec = build_chart_spec(
            args.get("chartType"),
            rows,
            x_key,
            y_keys,
            title=args.get("title"),
            colors=args.get("colors"),
        )
        return ToolSuccess(chart_spec=spec)

    async def _manage_integration_status(self, args: Mapping[str, Any], cache: RequestCache) -> ToolResult:
        change = await asyncio.to_thread(
            self._queries.set_integration_status,
            args.get("action"),
            args.get("integrationId"),
            args.get("integrationName"),
        )
        if change["changed"]:
            cache.discard(QueryType.INTEGRATIONS_CATALOG.value)
        return ToolSuccess(data=change)
