from enum import Enum


class ErrorKind(str, Enum):
    """Error categories reported back to the model in tool envelopes."""

    NO_DATA = "no_data"
    MISSING_PARAMS = "missing_params"
    UNKNOWN_QUERY = "unknown_query"
    UNKNOWN_ANALYSIS = "unknown_analysis"
    UNKNOWN_TOOL = "unknown_tool"
    EXECUTION_EXCEPTION = "execution_exception"
    DATABASE_ERROR = "database_error"


class ToolFailure(Exception):
    """A tool handler could not produce a result.

    Raised inside handlers and converted into an error envelope by the
    dispatcher, so the model sees the failure and can retry with other
    arguments.
    """

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


class QueryError(ToolFailure):
    """Raised by the named-query catalog."""


class AnalysisError(ToolFailure):
    """Raised by the analysis engine."""


class ChartError(ToolFailure):
    """Raised while building a chart description."""
