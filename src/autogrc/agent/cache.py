from typing import Dict, Iterable, List, Optional

from ..models import Row


class RequestCache:
    """Turn-scoped map from queryType to the rows it returned.

    Created fresh for every turn and never shared across sessions, so it needs
    no locking.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, List[Row]] = {}

    def __contains__(self, query_type: object) -> bool:
        return query_type in self._entries

    def get(self, query_type: str) -> Optional[List[Row]]:
        return self._entries.get(query_type)

    def put(self, query_type: str, rows: List[Row]) -> None:
        self._entries[query_type] = rows

    def discard(self, query_type: str) -> None:
        self._entries.pop(query_type, None)

    def find_with_fields(self, fields: Iterable[str]) -> Optional[List[Row]]:
        """Return the first cached dataset whose first row has every field."""
        wanted = [f for f in fields if f]
        for rows in self._entries.values():
            if rows and all(f in rows[0] for f in wanted):
                return rows
        return None
