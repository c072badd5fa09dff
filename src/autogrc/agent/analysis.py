"""Statistical helpers over row sets returned by the query catalog.

Everything here is synchronous and side-effect free: rows arrive already
resolved and results are plain dicts ready to be put in a tool envelope.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from ..errors import AnalysisError, ErrorKind
from ..models import Row
from ..services.queries import round_half_up


class AnalysisType(str, Enum):
    AGGREGATION = "aggregation"
    RANKING = "ranking"
    TRENDS = "trends"
    COMPARISON = "comparison"


@dataclass
class AnalysisOutcome:
    data: Optional[List[Row]]
    stats: Dict[str, Any]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_number(value: Any) -> Optional[float]:
    """Coerce a cell to a number; missing counts as 0, junk as None."""
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


def _value(row: Row, field: str) -> float:
    number = _to_number(row.get(field))
    return 0.0 if number is None else number


def _tidy(number: float) -> Any:
    """Present whole floats as ints (4.0 -> 4)."""
    return int(number) if float(number).is_integer() else number


def detect_value_field(rows: Sequence[Row]) -> Optional[str]:
    """Return the first numeric field of the first row, if any."""
    if not rows:
        return None
    for key, value in rows[0].items():
        if _is_number(value):
            return key
    return None


def aggregate(rows: Sequence[Row], field: str, group_by: Optional[str] = None) -> Dict[str, Any]:
    values = [v for v in (_to_number(r.get(field)) for r in rows) if v is not None]
    if not values:
        raise AnalysisError(
            ErrorKind.MISSING_PARAMS, f'Field "{field}" has no numeric values to aggregate'
        )

    total = sum(values)
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2 == 0:
        median = (ordered[mid - 1] + ordered[mid]) / 2
    else:
        median = ordered[mid]

    stats: Dict[str, Any] = {
        "field": field,
        "count": len(values),
        "sum": round_half_up(total, 1),
        "avg": round_half_up(total / len(values), 1),
        "min": _tidy(ordered[0]),
        "max": _tidy(ordered[-1]),
        "median": round_half_up(median, 1),
    }

    if group_by:
        groups: Dict[str, Dict[str, Any]] = {}
        for row in rows:
            key = row.get(group_by)
            key = "Unknown" if key is None else str(key)
            bucket = groups.setdefault(key, {"count": 0, "sum": 0.0, "avg": 0.0})
            bucket["count"] += 1
            bucket["sum"] += _value(row, field)
        for bucket in groups.values():
            bucket["avg"] = round_half_up(bucket["sum"] / bucket["count"], 1)
            bucket["sum"] = round_half_up(bucket["sum"], 1)
        stats["grouped"] = groups

    return stats


def rank(
    rows: Sequence[Row], field: str, direction: str = "desc", limit: int = 10
) -> AnalysisOutcome:
    # sorted() is stable in both directions, so ties keep their input order.
    ranked = sorted(rows, key=lambda r: _value(r, field), reverse=direction == "desc")
    return AnalysisOutcome(
        data=[dict(r) for r in ranked[:limit]],
        stats={"totalItems": len(rows), "field": field, "direction": direction},
    )


def trends(rows: Sequence[Row], field: str) -> AnalysisOutcome:
    values = [_value(r, field) for r in rows]
    first, last = values[0], values[-1]
    change = last - first
    percent = round_half_up(change / first * 100, 1) if first != 0 else 0
    if change > 0:
        direction = "improving"
    elif change < 0:
        direction = "declining"
    else:
        direction = "stable"
    return AnalysisOutcome(
        data=[dict(r) for r in rows],
        stats={
            "startValue": _tidy(first),
            "endValue": _tidy(last),
            "absoluteChange": round_half_up(change, 1),
            "percentageChange": percent,
            "direction": direction,
            "dataPoints": len(values),
        },
    )


def compare(rows: Sequence[Row], field: str) -> AnalysisOutcome:
    values = [_value(r, field) for r in rows]
    mean = sum(values) / len(values)
    annotated = [
        {
            **row,
            "vsAverage": round_half_up(value - mean, 1),
            "aboveAverage": value >= mean,
        }
        for row, value in zip(rows, values)
    ]
    return AnalysisOutcome(
        data=annotated,
        stats={"average": round_half_up(mean, 1), "field": field},
    )


def analyze(
    rows: Sequence[Row],
    analysis_type: Any,
    value_field: Optional[str] = None,
    group_by: Optional[str] = None,
    sort_direction: str = "desc",
    limit: int = 10,
) -> AnalysisOutcome:
    """Run one analysis over ``rows``.

    Args:
        rows: Resolved dataset (non-empty list of dicts).
        analysis_type: aggregation, ranking, trends or comparison.
        value_field: Numeric field to operate on; auto-detected when omitted.
        group_by: Optional grouping key (aggregation only).
        sort_direction: "asc" or "desc" (ranking only).
        limit: Maximum ranked rows returned.

    Raises:
        AnalysisError: no rows, no numeric field, or unknown analysis type.
    """
    if not rows:
        raise AnalysisError(ErrorKind.NO_DATA, "No data to analyze.")

    try:
        kind = AnalysisType(analysis_type)
    except ValueError:
        raise AnalysisError(
            ErrorKind.UNKNOWN_ANALYSIS, f'Unknown analysisType: "{analysis_type}"'
        ) from None

    field = value_field or detect_value_field(rows)
    if not field:
        raise AnalysisError(
            ErrorKind.MISSING_PARAMS, f"No numeric field found for {kind.value}"
        )

    if kind is AnalysisType.AGGREGATION:
        return AnalysisOutcome(data=None, stats=aggregate(rows, field, group_by))
    if kind is AnalysisType.RANKING:
        direction = "asc" if str(sort_direction).lower() == "asc" else "desc"
        return rank(rows, field, direction, max(1, limit))
    if kind is AnalysisType.TRENDS:
        return trends(rows, field)
    return compare(rows, field)
