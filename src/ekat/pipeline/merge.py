"""Merge cached street search results into settlements.

Each cached query holds rows like ``(42, "NOVI SAD, BULEVAR OSLOBODJENJA")``.
The same street shows up under many overlapping prefixes; merging folds
them into one sorted list of settlements, each with its sorted streets.

Two conditions abort the merge instead of being patched over:

* a full name without the ``", "`` separator (DecodeError), since the
  settlement it belongs to cannot be known;
* one full name carrying two different ids (ConsistencyError), which
  means either the upstream or the cache is inconsistent.
"""

import logging
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

from ekat.core.errors import ConsistencyError, DecodeError
from ekat.core.types import MergedStreet, SearchResult, Settlement
from ekat.storage.cache import StreetCache

logger = logging.getLogger(__name__)

SEPARATOR = ", "


def split_full_name(full_name: str) -> tuple[str, str]:
    """``"SETTLEMENT, STREET"`` → ``("SETTLEMENT", "STREET")``, split on the first separator."""
    settlement, sep, street = full_name.partition(SEPARATOR)
    if not sep:
        raise DecodeError(f"failed to parse settlement from street full_name {full_name!r}")
    return settlement, street


def merge_results(results: Iterable[SearchResult]) -> list[Settlement]:
    """Fold search results into settlements sorted by name, streets sorted by name.

    The output depends only on the set of results, never on their order.
    """
    ids: dict[str, int] = {}
    settlement_ts: dict[str, datetime] = {}
    street_ts: dict[str, dict[str, datetime]] = {}

    for result in results:
        ts = result.updated_at
        for street in result.results:
            settlement, name = split_full_name(street.full_name)

            known = ids.setdefault(street.full_name, street.id)
            if known != street.id:
                raise ConsistencyError(street.full_name, known, street.id)

            if settlement not in settlement_ts or settlement_ts[settlement] < ts:
                settlement_ts[settlement] = ts
            streets = street_ts.setdefault(settlement, {})
            if name not in streets or streets[name] < ts:
                streets[name] = ts

    settlements = []
    for settlement in sorted(settlement_ts):
        streets = street_ts[settlement]
        settlements.append(
            Settlement(
                name=settlement,
                updated_at=settlement_ts[settlement],
                streets=[
                    MergedStreet(
                        id=ids[f"{settlement}{SEPARATOR}{name}"],
                        name=name,
                        updated_at=streets[name],
                    )
                    for name in sorted(streets)
                ],
            )
        )
    return settlements


def merge_streets(cache_dir: Path, municipality_id: int | str) -> list[Settlement]:
    """Merge every cached search result for one municipality."""
    cache = StreetCache(cache_dir, municipality_id)
    files = cache.files()
    logger.info(
        "Merging %d cached queries for municipality %s", len(files), municipality_id,
        extra={"municipality": municipality_id},
    )
    settlements = merge_results(cache.load(path) for path in files)
    logger.info(
        "Merged %d settlements, %d streets",
        len(settlements), sum(len(s.streets) for s in settlements),
        extra={"municipality": municipality_id},
    )
    return settlements
