"""Core domain types shared across all ekat modules."""

from ekat.core.errors import (
    CacheIOError,
    ConsistencyError,
    CorrelationError,
    DecodeError,
    EkatError,
    TransportFailure,
)
from ekat.core.types import (
    CadastralMunicipality,
    CadastreType,
    Captcha,
    CaptchaSample,
    CaptchaType,
    MergedStreet,
    Municipality,
    SearchOutcome,
    SearchResponse,
    SearchResult,
    Settlement,
    Street,
)

__all__ = [
    "CacheIOError",
    "CadastralMunicipality",
    "CadastreType",
    "Captcha",
    "CaptchaSample",
    "CaptchaType",
    "ConsistencyError",
    "CorrelationError",
    "DecodeError",
    "EkatError",
    "MergedStreet",
    "Municipality",
    "SearchOutcome",
    "SearchResponse",
    "SearchResult",
    "Settlement",
    "Street",
    "TransportFailure",
]
