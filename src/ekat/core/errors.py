"""Error taxonomy shared by the scrapers, the cache, and the merge step."""


class EkatError(Exception):
    """Base class for every error raised by ekat."""


class TransportFailure(EkatError):
    """Network error, timeout, unexpected status or content type."""


class DecodeError(EkatError):
    """A row, name, or id that cannot be decoded."""


class ConsistencyError(EkatError):
    """The same street full name was observed with two different ids."""

    def __init__(self, full_name: str, first_id: int, second_id: int) -> None:
        super().__init__(f"mismatched IDs for street {full_name!r}: {first_id} vs {second_id}")
        self.full_name = full_name
        self.first_id = first_id
        self.second_id = second_id


class CacheIOError(EkatError):
    """Creating, writing, or reading a cache file failed."""


class CorrelationError(EkatError):
    """A captcha sample arrived for an id that is not (or no longer) registered."""
