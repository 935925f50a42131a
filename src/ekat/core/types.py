"""Domain types for the ekat harvester.

All shared dataclasses and type definitions live here so the scrapers,
the cache, and the merge step agree on one model. JSON encoding of each
type sits next to its definition; timestamps are always UTC ISO-8601.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone


def _ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def _parse_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Street search types
# ---------------------------------------------------------------------------

class SearchOutcome(enum.Enum):
    """Classification of a single autocomplete response."""

    OK = "ok"
    TRUNCATED = "truncated"
    FAILURE = "failure"


@dataclass
class Street:
    """A raw row returned by the street autocomplete: id + "SETTLEMENT, STREET"."""

    id: int
    full_name: str

    def to_dict(self) -> dict:
        return {"id": self.id, "full_name": self.full_name}

    @classmethod
    def from_dict(cls, data: dict) -> "Street":
        return cls(id=int(data["id"]), full_name=str(data["full_name"]))


@dataclass
class SearchResponse:
    """What the search transport hands back for one query."""

    outcome: SearchOutcome
    rows: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class SearchResult:
    """One resolved query: the cleaned query text and every row it matched."""

    query: str
    results: list[Street] = field(default_factory=list)
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "query": self.query,
            "results": [s.to_dict() for s in self.results],
            "updated_at": _ts(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SearchResult":
        return cls(
            query=str(data["query"]),
            results=[Street.from_dict(row) for row in data.get("results") or []],
            updated_at=_parse_ts(data["updated_at"]),
        )


@dataclass
class MergedStreet:
    """A street inside a settlement, after merging all cached search results."""

    id: int
    name: str
    updated_at: datetime

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "updated_at": _ts(self.updated_at)}


@dataclass
class Settlement:
    """A settlement and the streets found for it, sorted by name."""

    name: str
    updated_at: datetime
    streets: list[MergedStreet] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "updated_at": _ts(self.updated_at),
            "streets": [s.to_dict() for s in self.streets],
        }


# ---------------------------------------------------------------------------
# Captcha types
# ---------------------------------------------------------------------------

class CaptchaType(enum.Enum):
    """Captcha flavours served by the portal."""

    ALPHANUM_4 = "ALPHANUM_4"  # object & address search pages
    ALPHANUM_5 = "ALPHANUM_5"  # parcel search pages


@dataclass
class CaptchaSample:
    """One independently fetched rendering of a captcha challenge."""

    data: bytes
    sha1: str
    content_type: str
    generated_at: datetime

    def to_dict(self) -> dict:
        return {
            "sha1": self.sha1,
            "content_type": self.content_type,
            "generated_at": _ts(self.generated_at),
        }


@dataclass
class Captcha:
    """A captcha challenge and the samples collected for it so far."""

    id: str
    type: CaptchaType
    quota: int
    samples: list[CaptchaSample] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return len(self.samples) >= self.quota

    def to_dict(self) -> dict:
        # Image bytes are written as separate files, not embedded in JSON.
        return {
            "id": self.id,
            "type": self.type.value,
            "samples": [s.to_dict() for s in self.samples],
        }


# ---------------------------------------------------------------------------
# Municipality types
# ---------------------------------------------------------------------------

class CadastreType(enum.IntEnum):
    """Cadastre status codes, taken from the status icon next to each row."""

    UNKNOWN = 0
    REAL_ESTATE = 3  # Katastar nepokretnosti
    PARTIAL_REAL_ESTATE = 5  # Katastar nepokretnosti na delu katastarske opštine
    FORMING_REAL_ESTATE = 9  # Osnivanje katastra nepokretnosti kroz postupak komasacije


@dataclass
class CadastralMunicipality:
    id: int
    name: str
    type: int = CadastreType.UNKNOWN

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "type": int(self.type)}

    @classmethod
    def from_dict(cls, data: dict) -> "CadastralMunicipality":
        return cls(id=int(data["id"]), name=str(data["name"]), type=int(data.get("type", 0)))


@dataclass
class Municipality:
    id: int
    name: str
    cadastral_municipalities: list[CadastralMunicipality] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "cadastral_municipalities": [cm.to_dict() for cm in self.cadastral_municipalities],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Municipality":
        return cls(
            id=int(data["id"]),
            name=str(data["name"]),
            cadastral_municipalities=[
                CadastralMunicipality.from_dict(cm)
                for cm in data.get("cadastral_municipalities") or []
            ],
        )
