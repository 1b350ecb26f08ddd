"""Exception types raised by the feed services."""

from __future__ import annotations


class FeedError(Exception):
    """Base class for feed loading errors."""


class MediaServerError(FeedError):
    """Raised when the media server cannot satisfy a request."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RequestSuperseded(FeedError):
    """A result arrived for a generation that is no longer current."""

    def __init__(self, context: str, generation: int, current: int):
        super().__init__(
            f"Generation {generation} for {context} superseded by {current}"
        )
        self.context = context
        self.generation = generation
        self.current = current


class TransientFetchFailure(FeedError):
    """A feed fetch failed; the feed can be retried by refreshing."""

    def __init__(self, context: str, cause: Exception):
        super().__init__(f"Unable to load {context}: {cause}")
        self.context = context
        self.cause = cause


class PaginationFailure(FeedError):
    """Fetching the next page of a row failed."""

    def __init__(self, key: str, offset: int, cause: Exception):
        super().__init__(f"Unable to load {key} from offset {offset}: {cause}")
        self.key = key
        self.offset = offset
        self.cause = cause
