"""Tests for captcha correlation, page parsing and the captcha scraper."""

import asyncio
import random
import uuid
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from ekat.core.errors import CorrelationError, DecodeError
from ekat.core.types import (
    CadastralMunicipality,
    CaptchaSample,
    CaptchaType,
    Municipality,
)
from ekat.ingestion.captchas import (
    CaptchaCollector,
    CaptchaScraper,
    PageURLGenerator,
    extract_captcha_ids,
)
from tests.conftest import FakeImageTransport, captcha_page

BASE = "https://portal.test/eKatastarPublic"
T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _sample(tag: str) -> CaptchaSample:
    return CaptchaSample(data=tag.encode(), sha1=tag, content_type="image/jpeg", generated_at=T0)


# ---------------------------------------------------------------------------
# Collector
# ---------------------------------------------------------------------------

class TestCaptchaCollector:
    @pytest.mark.asyncio
    async def test_released_exactly_at_quota(self):
        collector = CaptchaCollector()
        await collector.register("X", 3)

        assert await collector.ingest("X", _sample("a")) is None
        assert await collector.ingest("X", _sample("b")) is None
        captcha = await collector.ingest("X", _sample("c"))

        assert captcha is not None
        assert [s.sha1 for s in captcha.samples] == ["a", "b", "c"]
        assert "X" not in collector
        assert len(collector) == 0

    @pytest.mark.asyncio
    async def test_sample_after_completion_rejected(self):
        collector = CaptchaCollector()
        await collector.register("X", 3)
        for tag in "abc":
            await collector.ingest("X", _sample(tag))

        with pytest.raises(CorrelationError, match="already completed"):
            await collector.ingest("X", _sample("d"))

    @pytest.mark.asyncio
    async def test_unknown_id_rejected(self):
        with pytest.raises(CorrelationError, match="not found"):
            await CaptchaCollector().ingest("nope", _sample("a"))

    @pytest.mark.asyncio
    async def test_gathered_samples_release_once(self):
        collector = CaptchaCollector()
        await collector.register("X", 3)

        results = await asyncio.gather(*(collector.ingest("X", _sample(t)) for t in "abc"))

        released = [r for r in results if r is not None]
        assert len(released) == 1
        assert len(released[0].samples) == 3

    @pytest.mark.asyncio
    async def test_samples_wait_for_append_and_release_step(self):
        collector = CaptchaCollector()
        captcha = await collector.register("X", 3)

        async with collector._lock:
            tasks = [asyncio.create_task(collector.ingest("X", _sample(t))) for t in "abc"]
            await asyncio.sleep(0)
            # All three are parked before touching the captcha.
            assert captcha.samples == []
            assert not any(t.done() for t in tasks)

        results = await asyncio.gather(*tasks)

        assert [r for r in results if r is not None] == [captcha]
        assert [s.sha1 for s in captcha.samples] == ["a", "b", "c"]
        assert results[-1] is captcha

    @pytest.mark.asyncio
    async def test_register_twice(self):
        collector = CaptchaCollector()
        await collector.register("X", 2)
        with pytest.raises(CorrelationError):
            await collector.register("X", 2)

    @pytest.mark.asyncio
    async def test_register_after_release(self):
        collector = CaptchaCollector()
        await collector.register("X", 1)
        await collector.ingest("X", _sample("a"))
        with pytest.raises(CorrelationError):
            await collector.register("X", 1)

    @pytest.mark.asyncio
    async def test_invalid_quota(self):
        with pytest.raises(ValueError, match="quota"):
            await CaptchaCollector().register("X", 0)

    @pytest.mark.asyncio
    async def test_discard(self):
        collector = CaptchaCollector()
        await collector.register("X", 2, CaptchaType.ALPHANUM_5)
        await collector.ingest("X", _sample("a"))

        dropped = await collector.discard("X")

        assert dropped.type is CaptchaType.ALPHANUM_5
        assert await collector.discard("X") is None
        with pytest.raises(CorrelationError, match="was discarded"):
            await collector.ingest("X", _sample("b"))
        with pytest.raises(CorrelationError, match="registered twice"):
            await collector.register("X", 2)


# ---------------------------------------------------------------------------
# Page parsing
# ---------------------------------------------------------------------------

class TestExtractCaptchaIds:
    def test_ids_in_document_order(self):
        a, b = str(uuid.uuid4()), str(uuid.uuid4())
        assert extract_captcha_ids(captcha_page(a, b)) == [a, b]

    def test_no_captcha(self):
        assert extract_captcha_ids("<html><img src='logo.png'></html>") == []

    def test_invalid_guid(self):
        with pytest.raises(DecodeError, match="UUID"):
            extract_captcha_ids(captcha_page("not-a-guid"))

    def test_guid_normalized(self):
        guid = uuid.uuid4()
        assert extract_captcha_ids(captcha_page(str(guid).upper())) == [str(guid)]


class TestPageURLGenerator:
    MUNICIPALITIES = [
        Municipality(
            id=80438,
            name="NOVI SAD",
            cadastral_municipalities=[CadastralMunicipality(id=801, name="NOVI SAD I")],
        ),
        Municipality(id=70181, name="BEOGRAD"),
    ]

    def test_four_letter_pages(self):
        pages = PageURLGenerator(BASE, self.MUNICIPALITIES, CaptchaType.ALPHANUM_4, rng=random.Random(3))
        urls = {pages() for _ in range(50)}
        assert urls <= {
            f"{BASE}/FindObjekat.aspx?OpstinaID=80438",
            f"{BASE}/FindAdresa.aspx?OpstinaID=80438",
            f"{BASE}/FindObjekat.aspx?OpstinaID=70181",
            f"{BASE}/FindAdresa.aspx?OpstinaID=70181",
        }
        assert len(urls) > 1

    def test_five_letter_pages_use_cadastral_ids(self):
        pages = PageURLGenerator(BASE, self.MUNICIPALITIES, CaptchaType.ALPHANUM_5, rng=random.Random(3))
        assert {pages() for _ in range(10)} == {f"{BASE}/FindParcela.aspx?KoID=801"}

    def test_nothing_to_choose_from(self):
        with pytest.raises(ValueError):
            PageURLGenerator(BASE, [Municipality(id=1, name="X")], CaptchaType.ALPHANUM_5)


# ---------------------------------------------------------------------------
# Scraper
# ---------------------------------------------------------------------------

def _pages():
    return PageURLGenerator(BASE, [Municipality(id=1, name="X")], CaptchaType.ALPHANUM_4, rng=random.Random(0))


class TestCaptchaScraper:
    @pytest.mark.asyncio
    async def test_collects_until_max(self, no_retry_delay):
        transport = FakeImageTransport()
        scraper = CaptchaScraper(transport, _pages(), samples=3, workers=2, max_captchas=2)

        captchas = [c async for c in scraper.scrape()]

        assert len(captchas) >= 2
        assert len({c.id for c in captchas}) == len(captchas)
        for captcha in captchas:
            assert len(captcha.samples) == 3
            assert captcha.type is CaptchaType.ALPHANUM_4
        assert scraper.shutdown.is_set()
        assert scraper.stats.errors == []

    @pytest.mark.asyncio
    async def test_samples_are_distinct_requests(self, no_retry_delay):
        transport = FakeImageTransport()
        scraper = CaptchaScraper(transport, _pages(), samples=2, workers=1, max_captchas=1)

        captcha = [c async for c in scraper.scrape()][0]

        assert transport.images.count(captcha.id) == 2
        assert len({s.sha1 for s in captcha.samples}) == 2

    @pytest.mark.asyncio
    async def test_failed_sample_retried(self, no_retry_delay):
        transport = FakeImageTransport(failing_images=1)
        scraper = CaptchaScraper(transport, _pages(), samples=2, workers=1, max_captchas=1)

        captchas = [c async for c in scraper.scrape()]

        assert all(len(c.samples) == 2 for c in captchas)
        assert scraper.stats.discarded == 0

    @pytest.mark.asyncio
    async def test_unrecoverable_sample_discards_captcha(self, no_retry_delay):
        transport = FakeImageTransport(failing_images=3)
        with patch("ekat.ingestion.captchas.settings.retries", 3):
            scraper = CaptchaScraper(transport, _pages(), samples=1, workers=1, max_captchas=1)
            captchas = [c async for c in scraper.scrape()]

        assert len(captchas) >= 1
        assert scraper.stats.discarded == 1
        assert len(scraper.stats.errors) == 1
        assert transport.images[0] != captchas[0].id

    @pytest.mark.asyncio
    async def test_early_consumer_exit_stops_workers(self, no_retry_delay):
        transport = FakeImageTransport()
        scraper = CaptchaScraper(transport, _pages(), samples=1, workers=2)

        agen = scraper.scrape()
        first = await agen.__anext__()
        await agen.aclose()

        assert first.id in transport.images
        assert scraper.shutdown.is_set()
        pages_seen = len(transport.pages)
        await asyncio.sleep(0.01)
        assert len(transport.pages) == pages_seen

    @pytest.mark.asyncio
    async def test_external_shutdown(self, no_retry_delay):
        shutdown = asyncio.Event()
        shutdown.set()
        transport = FakeImageTransport()
        scraper = CaptchaScraper(transport, _pages(), samples=1, workers=2, shutdown=shutdown)

        assert [c async for c in scraper.scrape()] == []
        assert transport.pages == []
