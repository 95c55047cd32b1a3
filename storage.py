"""Search history storage."""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone
from typing import List, Protocol

from models import SearchHistory, SearchParams

DEFAULT_POPULAR_LIMIT = 5


class SearchHistoryStore(Protocol):
    """Where completed searches are recorded."""

    async def create_search_history(
        self, params: SearchParams, result_count: int
    ) -> SearchHistory: ...

    async def get_search_history(self) -> List[SearchHistory]: ...

    async def get_popular_searches(self, limit: int = DEFAULT_POPULAR_LIMIT) -> List[str]: ...


class MemStorage:
    """Append-only in-process history; lives as long as the application."""

    def __init__(self) -> None:
        self._searches: List[SearchHistory] = []
        self._current_id = 1

    async def create_search_history(
        self, params: SearchParams, result_count: int
    ) -> SearchHistory:
        """Record a search; ids start at 1 and increase by one per record."""

        record = SearchHistory(
            id=self._current_id,
            search_params=params,
            result_count=result_count,
            timestamp=datetime.now(timezone.utc),
        )
        self._current_id += 1
        self._searches.append(record)
        return record

    async def get_search_history(self) -> List[SearchHistory]:
        """Return a copy of the history, oldest first."""
        return list(self._searches)

    async def get_popular_searches(self, limit: int = DEFAULT_POPULAR_LIMIT) -> List[str]:
        """Return up to ``limit`` search terms, most searched first.

        Terms are compared exactly. Ties keep the order in which the terms
        were first searched.
        """
        counts = Counter(record.search_params.search_terms for record in self._searches)
        return [terms for terms, _ in counts.most_common(limit)]
