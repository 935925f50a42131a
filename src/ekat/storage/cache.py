"""On-disk cache and output files.

The cache directory is the single source of truth for resuming an
interrupted run: a street query is resolved exactly when its JSON file
exists. Every file is therefore written to a temporary name in the same
directory and renamed into place, so a reader (or a resumed run) only
ever sees complete files.

Layout::

    <cache_dir>/<municipality>/<query key>.json          one per resolved query
    <output_dir>/municipalities/<id>/settlements+streets.json
    <output_dir>/municipalities.json, municipalities/<id>.json, ...
    <captcha_dir>/<captcha id>.json, <captcha_dir>/samples/<sha1>.jpg
"""

import json
import logging
import os
import tempfile
from pathlib import Path

from ekat.core.errors import CacheIOError, DecodeError
from ekat.core.text import query_key
from ekat.core.types import Captcha, Municipality, SearchResult, Settlement

logger = logging.getLogger(__name__)

_SAMPLE_EXTENSIONS = {"image/jpeg": ".jpg"}


# ---------------------------------------------------------------------------
# Atomic writes
# ---------------------------------------------------------------------------

def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write ``data`` to ``path`` via a temporary file and an atomic rename."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    except OSError as e:
        raise CacheIOError(f"failed to create file for {path}: {e}") from e

    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException as e:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        if isinstance(e, OSError):
            raise CacheIOError(f"failed to write {path}: {e}") from e
        raise


def encode_json(data, minified: bool = False) -> bytes:
    if minified:
        text = json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    else:
        text = json.dumps(data, ensure_ascii=False, indent=2) + "\n"
    return text.encode("utf-8")


def save_json(data, directory: Path, name: str) -> Path:
    """Save ``data`` as ``<name>.json`` and a minified ``<name>.min.json``."""
    path = directory / f"{name}.json"
    atomic_write_bytes(path, encode_json(data))
    atomic_write_bytes(directory / f"{name}.min.json", encode_json(data, minified=True))
    return path


def read_json(path: Path):
    try:
        raw = path.read_bytes()
    except OSError as e:
        raise CacheIOError(f"failed to read {path}: {e}") from e
    try:
        return json.loads(raw)
    except ValueError as e:
        raise DecodeError(f"failed to decode file {path}: {e}") from e


# ---------------------------------------------------------------------------
# Street search cache
# ---------------------------------------------------------------------------

class StreetCache:
    """Per-municipality directory of resolved street search queries."""

    def __init__(self, cache_dir: Path, municipality_id: int | str) -> None:
        self.municipality_id = municipality_id
        self.directory = Path(cache_dir) / str(municipality_id)

    def path_for(self, query: str) -> Path:
        return self.directory / f"{query_key(query)}.json"

    def is_resolved(self, query: str) -> bool:
        path = self.path_for(query)
        try:
            os.stat(path)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise CacheIOError(f"error checking for file {path}: {e}") from e
        return True

    def save(self, result: SearchResult) -> Path:
        """Persist a resolved query. Only complete files ever become visible."""
        path = self.path_for(result.query)
        atomic_write_bytes(path, encode_json(result.to_dict()))
        logger.debug("Saved %d rows for %r to %s", len(result.results), result.query, path)
        return path

    def files(self) -> list[Path]:
        """All resolved query files; temporary files never match ``*.json``."""
        if not self.directory.is_dir():
            raise CacheIOError(f"failed to list contents of {self.directory}: not a directory")
        return sorted(self.directory.glob("*.json"))

    def load(self, path: Path) -> SearchResult:
        data = read_json(path)
        try:
            return SearchResult.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"failed to decode file {path}: {e}") from e


# ---------------------------------------------------------------------------
# Merged output
# ---------------------------------------------------------------------------

def settlements_dir(output_dir: Path, municipality_id: int | str) -> Path:
    return Path(output_dir) / "municipalities" / str(municipality_id)


def save_settlements(
    settlements: list[Settlement], output_dir: Path, municipality_id: int | str,
) -> Path:
    """Write ``municipalities/<id>/settlements+streets.json`` (and ``.min.json``)."""
    return save_json(
        [s.to_dict() for s in settlements],
        settlements_dir(output_dir, municipality_id),
        "settlements+streets",
    )


# ---------------------------------------------------------------------------
# Captchas
# ---------------------------------------------------------------------------

def save_captcha(captcha: Captcha, captcha_dir: Path) -> Path:
    """Write every sample image, then the captcha metadata.

    The metadata file goes last, so its presence means all samples are on disk.
    """
    samples_dir = Path(captcha_dir) / "samples"
    for sample in captcha.samples:
        ext = _SAMPLE_EXTENSIONS.get(sample.content_type, ".bin")
        atomic_write_bytes(samples_dir / f"{sample.sha1}{ext}", sample.data)

    path = Path(captcha_dir) / f"{captcha.id}.json"
    atomic_write_bytes(path, encode_json(captcha.to_dict()))
    return path


# ---------------------------------------------------------------------------
# Municipalities
# ---------------------------------------------------------------------------

def save_municipalities(municipalities: list[Municipality], output_dir: Path) -> Path:
    """Write the municipality list plus one file per municipality."""
    output_dir = Path(output_dir)
    subdir = output_dir / "municipalities"

    path = save_json([m.to_dict() for m in municipalities], output_dir, "municipalities")
    save_json([m.id for m in municipalities], subdir, "ids")
    for m in municipalities:
        save_json(m.to_dict(), subdir, str(m.id))
    return path


def load_municipalities(path: Path) -> list[Municipality]:
    data = read_json(Path(path))
    if not isinstance(data, list):
        raise DecodeError(f"failed to decode {path}: expected a list of municipalities")
    try:
        return [Municipality.from_dict(item) for item in data]
    except (KeyError, TypeError, ValueError) as e:
        raise DecodeError(f"failed to decode {path}: {e}") from e
