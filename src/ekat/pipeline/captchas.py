"""Captcha pipeline: collect samples per challenge → save images and metadata."""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from ekat.config import settings
from ekat.core.errors import CacheIOError
from ekat.core.types import CaptchaType, Municipality
from ekat.ingestion.captchas import CaptchaRunStats, CaptchaScraper, PageURLGenerator
from ekat.ingestion.transport import ImageTransport
from ekat.observability.logging import log_context
from ekat.observability.tracing import log_metrics
from ekat.storage.cache import save_captcha

logger = logging.getLogger(__name__)


@dataclass
class CaptchaRunReport:
    stats: CaptchaRunStats = field(default_factory=CaptchaRunStats)
    saved: int = 0
    save_errors: list[str] = field(default_factory=list)


async def collect_captchas(
    scraper: CaptchaScraper, captcha_dir: Path,
) -> CaptchaRunReport:
    """Drain a scraper, saving every completed captcha as it arrives."""
    report = CaptchaRunReport(stats=scraper.stats)
    async for captcha in scraper.scrape():
        try:
            path = save_captcha(captcha, captcha_dir)
        except CacheIOError as e:
            report.save_errors.append(str(e))
            logger.error("Error saving captcha %s: %s", captcha.id, e, extra={"captcha_id": captcha.id})
            continue
        report.saved += 1
        logger.info("Saved captcha %s [%d] to %s", captcha.id, report.saved, path,
                    extra={"captcha_id": captcha.id})
        if report.saved % 10 == 0:
            log_metrics({"captchas_saved": report.saved}, step=report.saved)

    log_metrics({**report.stats.as_metrics(), "captchas_saved": report.saved})
    return report


async def fetch_captchas(
    municipalities: list[Municipality],
    captcha_type: CaptchaType = CaptchaType.ALPHANUM_4,
    captcha_dir: Path | None = None,
    samples: int | None = None,
    max_captchas: int = 0,
    shutdown: asyncio.Event | None = None,
    transport: ImageTransport | None = None,
) -> CaptchaRunReport:
    """Collect captchas of one type until cancelled or ``max_captchas`` are saved."""
    captcha_dir = Path(captcha_dir or settings.captcha_dir)

    async def _run(image_transport: ImageTransport) -> CaptchaRunReport:
        scraper = CaptchaScraper(
            image_transport,
            PageURLGenerator(image_transport.base_url, municipalities, captcha_type),
            samples=samples,
            max_captchas=max_captchas,
            shutdown=shutdown,
        )
        return await collect_captchas(scraper, captcha_dir)

    with log_context(captcha_type=captcha_type.value):
        if transport is not None:
            return await _run(transport)
        async with httpx.AsyncClient() as client:
            return await _run(ImageTransport(client))
