"""Street enumeration against the eKatastar address autocomplete.

The autocomplete answers a prefix with at most a hidden number of rows
and gives no indication of which query a response belongs to. The
scraper therefore keeps exactly one query in flight: the query is parked
in a single-slot buffer when the request is issued and taken back out
when its response is handled, so a response can never be attributed to
the wrong prefix.

Resolved queries are yielded one at a time; the caller persists each one
before asking for the next (see ``ekat.pipeline.streets``).
"""

import asyncio
import json
import logging
import random
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from ekat.core.errors import DecodeError
from ekat.core.text import AZBUKA, cleanup
from ekat.core.types import SearchOutcome, SearchResult, Street
from ekat.ingestion.queries import QueryPlanner
from ekat.ingestion.transport import SearchTransport
from ekat.storage.cache import StreetCache

logger = logging.getLogger(__name__)

NO_RESULTS = "NEMA REZULTATA PRETRAGE"
NO_RESULTS_ID = -1


@dataclass
class StreetRunStats:
    """Counters for one enumeration run."""

    requests: int = 0
    resolved: int = 0
    truncated: int = 0
    failed: int = 0
    children_queued: int = 0
    skipped_rows: int = 0
    errors: list[str] = field(default_factory=list)

    def as_metrics(self) -> dict[str, int]:
        return {
            "requests": self.requests,
            "queries_resolved": self.resolved,
            "queries_truncated": self.truncated,
            "queries_failed": self.failed,
            "children_queued": self.children_queued,
            "rows_skipped": self.skipped_rows,
            "errors": len(self.errors),
        }


def parse_row(raw: str) -> Street | None:
    """Decode one ``{"First": name, "Second": id}`` row.

    Returns None for the "no results" sentinel row. Raises DecodeError for
    anything malformed.
    """
    try:
        row = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise DecodeError(f"failed to unmarshal row {raw!r}: {e}") from e
    if not isinstance(row, dict) or "First" not in row or "Second" not in row:
        raise DecodeError(f"unexpected row shape {raw!r}")

    try:
        street_id = int(str(row["Second"]).strip())
    except ValueError as e:
        raise DecodeError(f"failed to parse {row['Second']!r} as integer") from e

    name = cleanup(str(row["First"]))
    if street_id == NO_RESULTS_ID or name == NO_RESULTS:
        return None
    return Street(id=street_id, full_name=name)


class StreetScraper:
    """Query enumeration engine for a single municipality."""

    def __init__(
        self,
        transport: SearchTransport,
        cache: StreetCache,
        alphabet: str = AZBUKA,
        rng: random.Random | None = None,
        max_query_length: int = 0,
        shutdown: asyncio.Event | None = None,
    ) -> None:
        self.transport = transport
        self.cache = cache
        self.municipality_id = cache.municipality_id
        self.planner = QueryPlanner(
            alphabet, cache.is_resolved, rng=rng, max_length=max_query_length, on_error=self._report,
        )
        self.shutdown = shutdown or asyncio.Event()
        self.stats = StreetRunStats()
        # Holds the query whose response is outstanding; capacity one.
        self._in_flight: asyncio.Queue[str] = asyncio.Queue(maxsize=1)

    def _report(self, message: str) -> None:
        self.stats.errors.append(message)
        logger.warning(message, extra={"municipality": self.municipality_id})

    async def _issue(self, query: str):
        try:
            self._in_flight.put_nowait(query)
        except asyncio.QueueFull:
            raise RuntimeError(
                f"query {query!r} issued while another query is still in flight"
            ) from None
        self.stats.requests += 1
        response = await self.transport.search(query, self.municipality_id)
        return self._in_flight.get_nowait(), response

    def _decode(self, query: str, rows: list) -> SearchResult:
        result = SearchResult(query=query)
        for raw in rows:
            try:
                street = parse_row(raw)
            except DecodeError as e:
                self.stats.skipped_rows += 1
                self._report(f"query {query!r}: {e}")
                continue
            if street is not None:
                result.results.append(street)
        return result

    async def scrape(self) -> AsyncIterator[SearchResult]:
        """Yield a SearchResult for every query resolved in this run.

        Stops when no query is pending or when ``shutdown`` is set; the
        request in flight at that moment is always completed first.
        """
        seeded = self.planner.seed()
        logger.info(
            "Municipality %s: %d baseline queries pending", self.municipality_id, seeded,
            extra={"municipality": self.municipality_id},
        )

        while not self.shutdown.is_set():
            query = self.planner.pop()
            if query is None:
                break

            query, response = await self._issue(query)

            if response.outcome is SearchOutcome.OK:
                result = self._decode(query, response.rows)
                self.planner.resolve(query)
                self.stats.resolved += 1
                yield result
                continue

            if response.outcome is SearchOutcome.TRUNCATED:
                self.stats.truncated += 1
            else:
                self.stats.failed += 1
                self._report(f"query {query!r} failed: {response.error}")

            children = self.planner.fail(query)
            self.stats.children_queued += len(children)
            logger.debug(
                "Split %r (%s) into %d queries, %d pending",
                query, response.outcome.value, len(children), len(self.planner),
                extra={"query": query, "outcome": response.outcome.value},
            )

        if self.shutdown.is_set():
            logger.info(
                "Shutdown requested, %d queries left pending", len(self.planner),
                extra={"municipality": self.municipality_id},
            )
        logger.info(
            "Municipality %s: %d requests, %d resolved, %d truncated, %d failed",
            self.municipality_id, self.stats.requests, self.stats.resolved,
            self.stats.truncated, self.stats.failed,
            extra={"municipality": self.municipality_id},
        )
