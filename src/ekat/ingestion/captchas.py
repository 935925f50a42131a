"""Captcha corpus collection.

Every search page on the portal embeds a captcha image whose URL carries
an opaque challenge guid. Requesting the image URL again renders the same
challenge anew, so several independent samples of one challenge can be
gathered. Samples arrive concurrently and out of order; the
``CaptchaCollector`` groups them by guid and releases a challenge exactly
once, the moment its sample quota is met.
"""

import asyncio
import logging
import random
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from urllib.parse import parse_qs, urlparse

from bs4 import BeautifulSoup

from ekat.config import settings
from ekat.core.errors import CorrelationError, DecodeError, TransportFailure
from ekat.core.types import Captcha, CaptchaSample, CaptchaType, Municipality
from ekat.ingestion.transport import ImageTransport, retry_async

logger = logging.getLogger(__name__)

FIND_OBJECT_PATH = "FindObjekat.aspx?OpstinaID={id}"
FIND_ADDRESS_PATH = "FindAdresa.aspx?OpstinaID={id}"
FIND_PARCEL_PATH = "FindParcela.aspx?KoID={id}"
CAPTCHA_IMG_SELECTOR = 'img[src^="CaptchaImage.aspx?guid="]'

_DONE = object()


# ---------------------------------------------------------------------------
# Correlation
# ---------------------------------------------------------------------------

class CaptchaCollector:
    """Live captchas keyed by guid, with one atomic append-and-maybe-release step."""

    def __init__(self) -> None:
        self._live: dict[str, Captcha] = {}
        self._emitted: set[str] = set()
        self._discarded: set[str] = set()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._live)

    def __contains__(self, captcha_id: str) -> bool:
        return captcha_id in self._live

    async def register(
        self,
        captcha_id: str,
        quota: int,
        captcha_type: CaptchaType = CaptchaType.ALPHANUM_4,
    ) -> Captcha:
        """Start collecting samples for a newly seen challenge."""
        if quota < 1:
            raise ValueError(f"sample quota must be positive, got {quota}")
        async with self._lock:
            if captcha_id in self._live or captcha_id in self._emitted or captcha_id in self._discarded:
                raise CorrelationError(f"captcha {captcha_id} registered twice")
            captcha = Captcha(id=captcha_id, type=captcha_type, quota=quota)
            self._live[captcha_id] = captcha
            return captcha

    async def ingest(self, captcha_id: str, sample: CaptchaSample) -> Captcha | None:
        """Append a sample; return the captcha if this sample completed it.

        Exactly one call per captcha returns it, no matter how many
        samples race to the quota.
        """
        async with self._lock:
            captcha = self._live.get(captcha_id)
            if captcha is None:
                if captcha_id in self._emitted:
                    raise CorrelationError(f"captcha {captcha_id} already completed")
                if captcha_id in self._discarded:
                    raise CorrelationError(f"captcha {captcha_id} was discarded")
                raise CorrelationError(f"captcha {captcha_id} not found")
            captcha.samples.append(sample)
            if not captcha.complete:
                return None
            del self._live[captcha_id]
            self._emitted.add(captcha_id)
            return captcha

    async def discard(self, captcha_id: str) -> Captcha | None:
        """Drop a captcha that can no longer be completed."""
        async with self._lock:
            captcha = self._live.pop(captcha_id, None)
            if captcha is not None:
                self._discarded.add(captcha_id)
            return captcha


# ---------------------------------------------------------------------------
# Page parsing and URL generation
# ---------------------------------------------------------------------------

def extract_captcha_ids(html: str) -> list[str]:
    """Captcha guids embedded in a search page, in document order."""
    soup = BeautifulSoup(html, "html.parser")
    ids = []
    for img in soup.select(CAPTCHA_IMG_SELECTOR):
        src = img.get("src", "")
        guid = parse_qs(urlparse(src).query).get("guid", [""])[0]
        try:
            ids.append(str(uuid.UUID(guid)))
        except ValueError:
            raise DecodeError(f"failed to parse captcha id {guid!r} as UUID") from None
    return ids


class PageURLGenerator:
    """Random search page URLs that carry a captcha of the requested type.

    4-character captchas sit on the object and address search pages of a
    municipality; 5-character ones on the parcel search page of a
    cadastral municipality.
    """

    def __init__(
        self,
        base_url: str,
        municipalities: list[Municipality],
        captcha_type: CaptchaType,
        rng: random.Random | None = None,
    ) -> None:
        self.base_url = base_url
        self.captcha_type = captcha_type
        self._rng = rng or random.Random()
        if captcha_type is CaptchaType.ALPHANUM_4:
            self._ids = [m.id for m in municipalities]
        else:
            self._ids = [cm.id for m in municipalities for cm in m.cadastral_municipalities]
        if not self._ids:
            raise ValueError(f"no municipalities to generate {captcha_type.value} captcha pages from")

    def __call__(self) -> str:
        target = self._rng.choice(self._ids)
        if self.captcha_type is CaptchaType.ALPHANUM_4:
            path = self._rng.choice([FIND_OBJECT_PATH, FIND_ADDRESS_PATH])
        else:
            path = FIND_PARCEL_PATH
        return f"{self.base_url}/{path.format(id=target)}"


# ---------------------------------------------------------------------------
# Scraper
# ---------------------------------------------------------------------------

@dataclass
class CaptchaRunStats:
    pages: int = 0
    registered: int = 0
    samples: int = 0
    completed: int = 0
    discarded: int = 0
    errors: list[str] = field(default_factory=list)

    def as_metrics(self) -> dict[str, int]:
        return {
            "pages": self.pages,
            "captchas_registered": self.registered,
            "samples": self.samples,
            "captchas_completed": self.completed,
            "captchas_discarded": self.discarded,
            "errors": len(self.errors),
        }


class CaptchaScraper:
    """Fetch captcha pages, then ``samples`` renderings of each captcha found.

    Runs until ``shutdown`` is set or ``max_captchas`` captchas completed.
    Completed captchas are handed over through a one-slot queue, so the
    scraper waits for the consumer to take each one.
    """

    def __init__(
        self,
        transport: ImageTransport,
        pages: PageURLGenerator,
        samples: int | None = None,
        workers: int | None = None,
        max_captchas: int = 0,
        shutdown: asyncio.Event | None = None,
    ) -> None:
        self.transport = transport
        self.pages = pages
        self.samples = samples or settings.captcha_samples
        self.workers = workers or settings.captcha_concurrency
        self.max_captchas = max_captchas
        self.shutdown = shutdown or asyncio.Event()
        self.collector = CaptchaCollector()
        self.stats = CaptchaRunStats()
        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=1)

    def _report(self, message: str) -> None:
        self.stats.errors.append(message)
        logger.warning(message)

    async def _fetch_sample(self, captcha_id: str) -> None:
        try:
            sample = await retry_async(
                self.transport.fetch_image, captcha_id,
                retries=settings.retries, delay=settings.retry_delay,
                label=f"captcha {captcha_id}",
            )
        except (TransportFailure, DecodeError) as e:
            if await self.collector.discard(captcha_id) is not None:
                self.stats.discarded += 1
            self._report(f"error fetching captcha {captcha_id}: {e}")
            return

        try:
            captcha = await self.collector.ingest(captcha_id, sample)
        except CorrelationError as e:
            self._report(str(e))
            return
        self.stats.samples += 1
        if captcha is not None:
            await self._outbox.put(captcha)

    async def _collect_page(self, url: str) -> None:
        html = await retry_async(
            self.transport.fetch_page, url,
            retries=settings.retries, delay=settings.retry_delay, label=url,
        )
        self.stats.pages += 1

        for captcha_id in extract_captcha_ids(html):
            try:
                await self.collector.register(captcha_id, self.samples, self.pages.captcha_type)
            except CorrelationError as e:
                self._report(str(e))
                continue
            self.stats.registered += 1
            logger.debug("Registered captcha %s from %s", captcha_id, url,
                         extra={"captcha_id": captcha_id})
            await asyncio.gather(
                *(self._fetch_sample(captcha_id) for _ in range(self.samples))
            )

    async def _worker(self) -> None:
        while not self.shutdown.is_set():
            url = self.pages()
            try:
                await self._collect_page(url)
            except (TransportFailure, DecodeError) as e:
                self._report(f"error fetching captcha page {url}: {e}")

    async def _run_workers(self) -> None:
        workers = [asyncio.create_task(self._worker()) for _ in range(self.workers)]
        try:
            await asyncio.gather(*workers)
        finally:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            await self._outbox.put(_DONE)

    async def scrape(self) -> AsyncIterator[Captcha]:
        """Yield completed captchas, each exactly once.

        Once ``shutdown`` is set (or ``max_captchas`` is reached) no new
        page is fetched, but captchas whose samples are already in flight
        are still completed and yielded.
        """
        runner = asyncio.create_task(self._run_workers())
        try:
            while True:
                item = await self._outbox.get()
                if item is _DONE:
                    break
                self.stats.completed += 1
                if self.max_captchas and self.stats.completed >= self.max_captchas:
                    self.shutdown.set()
                yield item
        finally:
            self.shutdown.set()
            # The consumer stopped early: let in-flight requests finish.
            while not runner.done():
                getter = asyncio.ensure_future(self._outbox.get())
                await asyncio.wait({getter, runner}, return_when=asyncio.FIRST_COMPLETED)
                if not getter.done():
                    getter.cancel()
                elif getter.result() is not _DONE:
                    logger.info("Dropping captcha %s completed after shutdown", getter.result().id)
            await runner
