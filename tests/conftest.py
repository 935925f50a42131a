"""Shared test fixtures."""

import asyncio
import hashlib
import json
import random
import uuid
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from ekat.core.errors import TransportFailure
from ekat.core.types import CaptchaSample, SearchOutcome, SearchResponse


@pytest.fixture(autouse=True)
def _disable_mlflow_tracking():
    """Keep MLflow out of tests: no runs, no mlruns/ writes."""
    with patch("ekat.observability.tracing.settings.mlflow_enabled", False):
        yield


def row(name: str, street_id) -> str:
    """One autocomplete row as the portal encodes it: a JSON string inside the list."""
    return json.dumps({"First": name, "Second": str(street_id)}, ensure_ascii=False)


class FakeSearchTransport:
    """Answers queries from a callable or a dict; records every query issued.

    Also asserts that queries are never issued concurrently.
    """

    def __init__(self, answer=None, default: SearchResponse | None = None) -> None:
        self._answer = answer or {}
        self._default = default or SearchResponse(SearchOutcome.OK, rows=[])
        self.calls: list[tuple[str, object]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def queries(self) -> list[str]:
        return [q for q, _ in self.calls]

    async def search(self, query, context):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            self.calls.append((query, context))
            if callable(self._answer):
                return self._answer(query)
            return self._answer.get(query, self._default)
        finally:
            self.in_flight -= 1


def captcha_page(*guids: str) -> str:
    """A search page embedding one captcha image per guid."""
    imgs = "".join(f'<img id="c{i}" src="CaptchaImage.aspx?guid={g}" />' for i, g in enumerate(guids))
    return f"<html><body><form>{imgs}<img src='logo.png' /></form></body></html>"


class FakeImageTransport:
    """Serves fresh captchas per page and a distinct rendering per image request.

    The first ``failing_images`` image requests fail.
    """

    base_url = "https://portal.test/eKatastarPublic"

    def __init__(self, failing_images: int = 0, captchas_per_page: int = 1) -> None:
        self.pages: list[str] = []
        self.images: list[str] = []
        self.failing_images = failing_images
        self.captchas_per_page = captchas_per_page

    async def fetch_page(self, url: str) -> str:
        self.pages.append(url)
        await asyncio.sleep(0)
        return captcha_page(*(str(uuid.uuid4()) for _ in range(self.captchas_per_page)))

    async def fetch_image(self, captcha_id: str) -> CaptchaSample:
        self.images.append(captcha_id)
        n = len(self.images)
        await asyncio.sleep(0)
        if n <= self.failing_images:
            raise TransportFailure("HTTP 503")
        data = f"{captcha_id}-{n}".encode()
        return CaptchaSample(
            data=data,
            sha1=hashlib.sha1(data).hexdigest(),
            content_type="image/jpeg",
            generated_at=datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc),
        )


@pytest.fixture
def no_retry_delay():
    with patch("ekat.config.settings.retry_delay", 0):
        yield


@pytest.fixture
def rng():
    return random.Random(1234)
