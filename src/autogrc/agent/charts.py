from typing import Any, List, Optional, Sequence

from ..errors import ChartError, ErrorKind
from ..models import ChartSpec, ChartType, Row
from .cache import RequestCache

DEFAULT_COLORS = ["#FFE600", "#2E2E38", "#4CAF50", "#FF5252", "#2196F3", "#FF9800"]


def default_colors(count: int) -> List[str]:
    """Palette for ``count`` series, cycling when there are more series than colors."""
    return [DEFAULT_COLORS[i % len(DEFAULT_COLORS)] for i in range(count)]


def resolve_chart_rows(
    inline: Optional[Sequence[Row]],
    data_ref: Optional[str],
    cache: RequestCache,
    x_key: str,
    y_keys: Sequence[str],
) -> Optional[List[Row]]:
    """Pick the chart's rows: inline data, then the named cache entry, then any
    cached dataset whose fields cover the requested axes."""
    if inline:
        return list(inline)
    if data_ref and data_ref in cache:
        return cache.get(data_ref)
    return cache.find_with_fields([x_key, *y_keys])


def build_chart_spec(
    chart_type: Any,
    rows: Optional[Sequence[Row]],
    x_key: Optional[str],
    y_keys: Optional[Sequence[str]],
    title: Optional[str] = None,
    colors: Optional[Sequence[str]] = None,
) -> ChartSpec:
    kind = ChartType.parse(chart_type)
    if kind is None:
        raise ChartError(
            ErrorKind.MISSING_PARAMS,
            "Provide chartType: one of " + ", ".join(t.value for t in ChartType),
        )
    if not x_key or not y_keys:
        raise ChartError(ErrorKind.MISSING_PARAMS, "Provide xKey and at least one yKeys entry.")
    if not rows:
        raise ChartError(
            ErrorKind.NO_DATA,
            "No data for chart. Set 'dataRef' to a queryType (e.g. 'security_domains') "
            "or pass 'data' directly. Make sure xKey and yKeys match the fetched field names.",
        )

    y_keys = [str(k) for k in y_keys]
    return ChartSpec(
        chart_type=kind,
        data=[dict(r) for r in rows],
        x_key=str(x_key),
        y_keys=y_keys,
        title=title or None,
        colors=list(colors) if colors else default_colors(len(y_keys)),
    )
