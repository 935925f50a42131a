"""Work queue for the street query enumeration.

The autocomplete silently caps its results, so the search space is
covered adaptively: start from every two-letter prefix and, whenever a
prefix comes back truncated or failed, replace it with every one-letter
extension on either side. A longer prefix never matches more names than
a shorter one, so the splitting bottoms out once every pending prefix is
specific enough to be answered in full.
"""

import logging
import random
from collections import deque
from collections.abc import Callable

from ekat.core.errors import CacheIOError

logger = logging.getLogger(__name__)


def baseline_queries(alphabet: str, rng: random.Random | None = None) -> list[str]:
    """Every ordered pair of symbols, shuffled.

    Shuffling spreads the load instead of hitting alphabetically adjacent
    prefixes back to back.
    """
    queries = [a + b for a in alphabet for b in alphabet]
    (rng or random.Random()).shuffle(queries)
    return queries


def split_query(query: str, alphabet: str) -> list[str]:
    """Children of a query: each symbol prepended, then each symbol appended.

    Duplicates (``"A" + "AA" == "AA" + "A"``) are dropped, order is kept.
    """
    children = [s + query for s in alphabet] + [query + s for s in alphabet]
    return list(dict.fromkeys(children))


class QueryPlanner:
    """Pending queries plus everything already resolved or failed in this run.

    ``is_cached`` reports whether a query was resolved by an earlier run
    (its cache file exists); such queries are never queued. A query that
    fails is remembered and never queued again within the same run.

    When ``is_cached`` itself raises ``CacheIOError`` the query is skipped
    (left unresolved) and the error goes to ``on_error``.
    """

    def __init__(
        self,
        alphabet: str,
        is_cached: Callable[[str], bool],
        rng: random.Random | None = None,
        max_length: int = 0,
        on_error: Callable[[str], None] | None = None,
    ) -> None:
        if not alphabet:
            raise ValueError("alphabet must not be empty")
        self.alphabet = alphabet
        self.max_length = max_length
        self._is_cached = is_cached
        self._on_error = on_error
        self._rng = rng
        self._pending: deque[str] = deque()
        self._queued: set[str] = set()
        self._resolved: set[str] = set()
        self._failed: set[str] = set()
        self.dropped: list[str] = []

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def failed(self) -> frozenset[str]:
        return frozenset(self._failed)

    @property
    def resolved(self) -> frozenset[str]:
        return frozenset(self._resolved)

    def seed(self) -> int:
        """Queue the uncached baseline queries. Returns how many were queued."""
        return sum(self.offer(q) for q in baseline_queries(self.alphabet, self._rng))

    def offer(self, query: str) -> bool:
        """Queue ``query`` unless it is known, cached, or too long."""
        if query in self._queued or query in self._resolved or query in self._failed:
            return False
        if self.max_length and len(query) > self.max_length:
            self.dropped.append(query)
            logger.warning("Not splitting beyond %d letters, dropping %r", self.max_length, query)
            return False
        try:
            if self._is_cached(query):
                return False
        except CacheIOError as e:
            self._cache_error(query, e)
            return False
        self._pending.append(query)
        self._queued.add(query)
        return True

    def _cache_error(self, query: str, error: CacheIOError) -> None:
        message = f"query {query!r} skipped: {error}"
        if self._on_error is not None:
            self._on_error(message)
        else:
            logger.warning(message)

    def pop(self) -> str | None:
        """Next query to issue, or None once the search space is exhausted."""
        if not self._pending:
            return None
        query = self._pending.popleft()
        self._queued.discard(query)
        return query

    def resolve(self, query: str) -> None:
        self._resolved.add(query)

    def fail(self, query: str) -> list[str]:
        """Record a truncated/failed query and queue its children."""
        self._failed.add(query)
        return [c for c in split_query(query, self.alphabet) if self.offer(c)]
