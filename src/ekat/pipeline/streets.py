"""Street pipeline: enumerate → cache → merge → save.

Each resolved query is written to the cache before the next query is
issued. The merge only runs once the enumeration finished cleanly: an
interrupted or partially failed run leaves its progress in the cache and
the next run picks up where it stopped.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from ekat.config import settings
from ekat.core.errors import CacheIOError
from ekat.core.text import AZBUKA
from ekat.ingestion.streets import StreetRunStats, StreetScraper
from ekat.ingestion.transport import SearchTransport
from ekat.observability.logging import log_context
from ekat.observability.tracing import log_metrics
from ekat.pipeline.merge import merge_streets
from ekat.storage.cache import StreetCache, save_settlements

logger = logging.getLogger(__name__)


@dataclass
class StreetRunReport:
    municipality_id: int | str
    stats: StreetRunStats = field(default_factory=StreetRunStats)
    saved: int = 0
    interrupted: bool = False
    output: Path | None = None
    settlements: int = 0
    streets: int = 0

    @property
    def ok(self) -> bool:
        return not self.interrupted and not self.stats.errors


async def enumerate_streets(
    municipality_id: int | str,
    transport: SearchTransport,
    cache: StreetCache,
    alphabet: str = AZBUKA,
    shutdown: asyncio.Event | None = None,
    rng: random.Random | None = None,
    max_query_length: int | None = None,
) -> StreetRunReport:
    """Resolve every reachable query for a municipality into the cache."""
    scraper = StreetScraper(
        transport,
        cache,
        alphabet=alphabet,
        rng=rng,
        max_query_length=settings.max_query_length if max_query_length is None else max_query_length,
        shutdown=shutdown,
    )
    report = StreetRunReport(municipality_id=municipality_id, stats=scraper.stats)

    async for result in scraper.scrape():
        try:
            cache.save(result)
        except CacheIOError as e:
            # The query stays unresolved and is retried on the next run.
            report.stats.errors.append(str(e))
            logger.error("Error saving results to cache: %s", e)
            continue
        report.saved += 1

    report.interrupted = scraper.shutdown.is_set() and len(scraper.planner) > 0
    log_metrics(report.stats.as_metrics())
    return report


def merge_and_save(
    municipality_id: int | str, cache_dir: Path, output_dir: Path, report: StreetRunReport | None = None,
) -> StreetRunReport:
    """Merge the cache for a municipality and write settlements+streets.json.

    ConsistencyError and DecodeError propagate; nothing is written then.
    """
    report = report or StreetRunReport(municipality_id=municipality_id)
    settlements = merge_streets(cache_dir, municipality_id)
    report.output = save_settlements(settlements, output_dir, municipality_id)
    report.settlements = len(settlements)
    report.streets = sum(len(s.streets) for s in settlements)
    log_metrics({"settlements": report.settlements, "streets": report.streets})
    logger.info("Saved %d settlements to %s", report.settlements, report.output)
    return report


async def fetch_streets(
    municipality_id: int | str,
    cache_dir: Path | None = None,
    output_dir: Path | None = None,
    alphabet: str = AZBUKA,
    shutdown: asyncio.Event | None = None,
    transport: SearchTransport | None = None,
) -> StreetRunReport:
    """Full street pipeline for one municipality."""
    cache_dir = Path(cache_dir or settings.cache_dir)
    output_dir = Path(output_dir or settings.output_dir)
    with log_context(municipality=municipality_id):
        return await _fetch_streets(municipality_id, cache_dir, output_dir, alphabet, shutdown, transport)


async def _fetch_streets(municipality_id, cache_dir, output_dir, alphabet, shutdown, transport):
    cache = StreetCache(cache_dir, municipality_id)
    start = time.monotonic()

    if transport is None:
        async with httpx.AsyncClient() as client:
            report = await enumerate_streets(
                municipality_id, SearchTransport(client), cache, alphabet=alphabet, shutdown=shutdown,
            )
    else:
        report = await enumerate_streets(
            municipality_id, transport, cache, alphabet=alphabet, shutdown=shutdown,
        )

    logger.info(
        "Enumeration finished in %.1fs: %d queries saved",
        time.monotonic() - start, report.saved,
        extra={"duration_ms": int((time.monotonic() - start) * 1000)},
    )

    if not report.ok:
        logger.warning(
            "Skipping merge for municipality %s (%s)", municipality_id,
            "interrupted" if report.interrupted else f"{len(report.stats.errors)} errors",
        )
        return report

    return merge_and_save(municipality_id, cache_dir, output_dir, report)
