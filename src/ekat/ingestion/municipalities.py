"""Municipality and cadastral municipality listing.

The Public Access start page lists every municipality in a ``<select>``.
Its cadastral municipalities are only rendered in a table after the
municipality is picked, which the page remembers in a cookie; sending
that cookie directly is enough to get the table for any municipality.
"""

import asyncio
import logging
import re

import httpx
from bs4 import BeautifulSoup

from ekat.config import settings
from ekat.core.errors import DecodeError, TransportFailure
from ekat.core.text import cleanup
from ekat.core.types import CadastralMunicipality, Municipality
from ekat.ingestion.transport import RateLimiter, retry_async

logger = logging.getLogger(__name__)

PUBLIC_ACCESS_PATH = "PublicAccess.aspx"
MUNICIPALITY_OPTION_SELECTOR = "select#ContentPlaceHolder1_getOpstinaKO_dropOpstina > option"
CADASTRAL_ROW_SELECTOR = "table#ContentPlaceHolder1_getOpstinaKO_GridView tr:not(.header)"
MUNICIPALITY_COOKIE = "KnWebPublicGetOpstinaKO"

_STATUS_RE = re.compile(r"kn_status_(\d+)\.gif")
_OWNER_RE = re.compile(r"OpstinaID=(\d+)")


def _parse_int(value: str, what: str) -> int:
    try:
        return int(value.strip())
    except (AttributeError, ValueError):
        raise DecodeError(f"error parsing {what} from {value!r}") from None


def parse_municipalities(html: str) -> list[Municipality]:
    """Municipalities from the start page's drop-down, in page order, deduplicated."""
    soup = BeautifulSoup(html, "html.parser")
    seen: dict[int, Municipality] = {}
    for option in soup.select(MUNICIPALITY_OPTION_SELECTOR):
        municipality_id = _parse_int(option.get("value", ""), "municipality ID")
        if municipality_id not in seen:
            seen[municipality_id] = Municipality(id=municipality_id, name=cleanup(option.get_text()))
    return list(seen.values())


def parse_cadastral_municipalities(html: str) -> list[tuple[int, CadastralMunicipality]]:
    """(owning municipality id, cadastral municipality) pairs from the grid table."""
    soup = BeautifulSoup(html, "html.parser")
    rows = []
    for tr in soup.select(CADASTRAL_ROW_SELECTOR):
        cells = tr.find_all("td")
        if len(cells) < 4:
            continue

        img = cells[0].find("img")
        status = _STATUS_RE.search(img.get("src", "") if img else "")
        if status is None:
            raise DecodeError(f"error parsing cadastre type from {cells[0]}")

        link = cells[3].find("a")
        owner = _OWNER_RE.search(link.get("href", "") if link else "")
        if owner is None:
            raise DecodeError(f"error parsing municipality ID from {cells[3]}")

        rows.append((
            int(owner.group(1)),
            CadastralMunicipality(
                id=_parse_int(cells[2].get_text(), "cadastral municipality ID"),
                name=cleanup(cells[1].get_text()),
                type=int(status.group(1)),
            ),
        ))
    return rows


class MunicipalityScraper:
    """Fetch every municipality together with its cadastral municipalities."""

    def __init__(
        self, max_concurrent: int = 2, base_url: str | None = None, delay: float | None = None,
    ) -> None:
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._limiter = RateLimiter(settings.listing_delay if delay is None else delay)
        self.url = f"{base_url or settings.base_url}/{PUBLIC_ACCESS_PATH}"

    async def _get(self, client: httpx.AsyncClient, municipality_id: int | None = None) -> str:
        """Rate-limited GET of the start page, optionally with a municipality selected."""
        headers = {}
        if municipality_id is not None:
            headers["cookie"] = f"{MUNICIPALITY_COOKIE}=SelectedValueOpstina={municipality_id}"
        async with self._semaphore:
            await self._limiter.wait()
            try:
                resp = await client.get(self.url, headers=headers)
                resp.raise_for_status()
            except httpx.HTTPError as e:
                raise TransportFailure(f"failed to fetch page at {self.url}: {e!r}") from e
        return resp.text

    async def _populate(self, client: httpx.AsyncClient, by_id: dict[int, Municipality], municipality_id: int) -> None:
        html = await retry_async(
            self._get, client, municipality_id,
            retries=settings.retries, delay=settings.retry_delay,
            label=f"municipality {municipality_id}",
        )
        for owner_id, cm in parse_cadastral_municipalities(html):
            municipality = by_id.get(owner_id)
            if municipality is None:
                raise DecodeError(f"municipality id={owner_id} not found")
            if all(existing.id != cm.id for existing in municipality.cadastral_municipalities):
                municipality.cadastral_municipalities.append(cm)

    async def scrape(self, client: httpx.AsyncClient | None = None) -> list[Municipality]:
        """All municipalities sorted by id, cadastral municipalities sorted by id."""
        if client is None:
            async with httpx.AsyncClient(timeout=60.0) as owned:
                return await self.scrape(owned)

        html = await retry_async(
            self._get, client, retries=settings.retries, delay=settings.retry_delay,
            label="municipality list",
        )
        by_id = {m.id: m for m in parse_municipalities(html)}
        logger.info("Found %d municipalities", len(by_id))

        await asyncio.gather(*(self._populate(client, by_id, mid) for mid in by_id))

        municipalities = sorted(by_id.values(), key=lambda m: m.id)
        for m in municipalities:
            m.cadastral_municipalities.sort(key=lambda cm: cm.id)
        logger.info(
            "Found %d cadastral municipalities",
            sum(len(m.cadastral_municipalities) for m in municipalities),
        )
        return municipalities
