"""HTTP transports for the eKatastar Public Access portal.

Two endpoints matter: the street autocomplete web method, which is
POSTed a JSON body and answers with an ASP.NET ``{"d": [...]}`` envelope,
and the captcha image handler, which serves a freshly rendered JPEG for a
challenge guid on every request. Both are slow and easily upset, so every
request goes through a shared ``RateLimiter``; the image transport also
caps the number of requests in flight.
"""

import asyncio
import hashlib
import json
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx

from ekat.config import settings
from ekat.core.errors import DecodeError, TransportFailure
from ekat.core.types import CaptchaSample, SearchOutcome, SearchResponse

logger = logging.getLogger(__name__)

SEARCH_STREETS_PATH = "FindAdresa.aspx/PretragaUlica"
CAPTCHA_IMAGE_PATH = "CaptchaImage.aspx"
JSON_CONTENT_TYPE = "application/json; charset=utf-8"
JPEG_CONTENT_TYPE = "image/jpeg"


# ---------------------------------------------------------------------------
# Pacing and retries
# ---------------------------------------------------------------------------

class RateLimiter:
    """Enforce a fixed minimum delay between the starts of consecutive requests."""

    def __init__(self, delay: float) -> None:
        self.delay = delay
        self._lock = asyncio.Lock()
        self._last: float | None = None

    async def wait(self) -> None:
        async with self._lock:
            loop = asyncio.get_running_loop()
            if self._last is not None and self.delay > 0:
                remaining = self._last + self.delay - loop.time()
                if remaining > 0:
                    await asyncio.sleep(remaining)
            self._last = loop.time()


async def retry_async(fn, *args, retries: int = 3, delay: float = 2.0, label: str = ""):
    """Retry an async function with exponential backoff.

    Used for one-off page fetches (municipality listing, captcha pages).
    The street search never goes through here: a failed search is split
    into narrower queries instead of being retried verbatim.
    """
    last_exc = None
    for attempt in range(1, retries + 1):
        try:
            return await fn(*args)
        except (TransportFailure, httpx.HTTPError) as e:
            last_exc = e
            if attempt < retries:
                wait = delay * (2 ** (attempt - 1))
                logger.warning(
                    "%s failed (attempt %d/%d): %s, retrying in %.0fs",
                    label or fn.__name__, attempt, retries, e, wait,
                )
                await asyncio.sleep(wait)
            else:
                logger.error("%s failed after %d attempts: %s", label or fn.__name__, retries, e)
    raise last_exc  # type: ignore[misc]


# ---------------------------------------------------------------------------
# Street search
# ---------------------------------------------------------------------------

class SearchTransport:
    """Client for the street autocomplete web method.

    ``search`` never raises for upstream trouble: it classifies every
    response as OK, TRUNCATED or FAILURE so the enumeration engine can
    decide whether to persist or to split.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str | None = None,
        page_size: int | None = None,
        delay: float | None = None,
        timeout: float | None = None,
    ) -> None:
        self._client = client
        self.url = f"{base_url or settings.base_url}/{SEARCH_STREETS_PATH}"
        self.page_size = page_size or settings.search_page_size
        self.timeout = timeout if timeout is not None else settings.search_timeout
        self._limiter = RateLimiter(settings.search_delay if delay is None else delay)

    async def search(self, query: str, context: int | str) -> SearchResponse:
        """Run one autocomplete query for a municipality."""
        payload = {
            "prefixText": query,
            "contextKey": str(context),
            "count": self.page_size,
        }
        await self._limiter.wait()
        try:
            resp = await self._client.post(
                self.url,
                content=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
                headers={"content-type": JSON_CONTENT_TYPE},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            return SearchResponse(SearchOutcome.FAILURE, error=f"timeout: {e!r}")
        except httpx.HTTPError as e:
            return SearchResponse(SearchOutcome.FAILURE, error=f"request failed: {e!r}")

        return self.classify(resp)

    def classify(self, resp: httpx.Response) -> SearchResponse:
        """Turn a raw HTTP response into a SearchResponse.

        The portal answers an over-broad prefix with an HTTP 500 carrying
        the ASP.NET error envelope (``{"Message": ..., "ExceptionType": ...}``);
        a full page of rows means the server-side cap was reached.
        Both are TRUNCATED. Anything else unexpected is a FAILURE.
        """
        content_type = resp.headers.get("content-type", "").lower()

        if resp.status_code >= 400:
            if resp.status_code >= 500 and content_type == JSON_CONTENT_TYPE and _is_aspnet_error(resp):
                return SearchResponse(SearchOutcome.TRUNCATED, error=f"HTTP {resp.status_code}")
            return SearchResponse(SearchOutcome.FAILURE, error=f"HTTP {resp.status_code}")

        if content_type != JSON_CONTENT_TYPE:
            return SearchResponse(
                SearchOutcome.FAILURE,
                error=f"got unexpected response with content-type {content_type!r}",
            )

        try:
            data = resp.json()
        except ValueError as e:
            return SearchResponse(SearchOutcome.FAILURE, error=f"failed to decode response: {e}")

        rows = data.get("d") if isinstance(data, dict) else None
        if not isinstance(rows, list):
            return SearchResponse(SearchOutcome.FAILURE, error="response has no 'd' list")

        if len(rows) >= self.page_size:
            return SearchResponse(SearchOutcome.TRUNCATED, rows=rows, error="result cap reached")
        return SearchResponse(SearchOutcome.OK, rows=rows)


def _is_aspnet_error(resp: httpx.Response) -> bool:
    try:
        data = resp.json()
    except ValueError:
        return False
    return isinstance(data, dict) and "Message" in data


# ---------------------------------------------------------------------------
# Captcha images
# ---------------------------------------------------------------------------

class ImageTransport:
    """Client for captcha search pages and the captcha image handler."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str | None = None,
        max_concurrent: int | None = None,
        delay: float | None = None,
        timeout: float | None = None,
    ) -> None:
        self._client = client
        self.base_url = base_url or settings.base_url
        self.timeout = timeout if timeout is not None else settings.image_timeout
        self._semaphore = asyncio.Semaphore(max_concurrent or settings.captcha_concurrency)
        self._limiter = RateLimiter(settings.captcha_delay if delay is None else delay)

    async def _get(self, url: str) -> httpx.Response:
        """Rate-limited, concurrency-capped GET."""
        async with self._semaphore:
            await self._limiter.wait()
            try:
                resp = await self._client.get(url, timeout=self.timeout)
            except httpx.HTTPError as e:
                raise TransportFailure(f"failed to fetch {url}: {e!r}") from e
        if resp.status_code >= 400:
            raise TransportFailure(f"failed to fetch {url}: HTTP {resp.status_code}")
        return resp

    async def fetch_page(self, url: str) -> str:
        """Fetch a search page (HTML) that embeds a captcha challenge."""
        resp = await self._get(url)
        return resp.text

    def image_url(self, captcha_id: str) -> str:
        return f"{self.base_url}/{CAPTCHA_IMAGE_PATH}?guid={captcha_id}"

    async def fetch_image(self, captcha_id: str) -> CaptchaSample:
        """Fetch one rendering of the captcha with the given guid."""
        resp = await self._get(self.image_url(captcha_id))

        content_type = resp.headers.get("content-type", "").lower()
        if content_type != JPEG_CONTENT_TYPE:
            raise TransportFailure(
                f"captcha {captcha_id}: unexpected content-type {content_type!r}"
            )

        return CaptchaSample(
            data=resp.content,
            sha1=hashlib.sha1(resp.content).hexdigest(),
            content_type=JPEG_CONTENT_TYPE,
            generated_at=parse_http_date(resp.headers.get("date")),
        )


def parse_http_date(value: str | None) -> datetime:
    """Parse an RFC 1123 ``Date`` header into an aware UTC datetime."""
    if not value:
        raise DecodeError("missing date header")
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError) as e:
        raise DecodeError(f"failed to parse date header {value!r}: {e}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
