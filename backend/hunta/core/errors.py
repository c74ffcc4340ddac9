from typing import Optional


class HuntaError(Exception):
    """Base class for errors raised by the search backend."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class FetchError(HuntaError):
    """
    An outbound GET failed after exhausting its retries.
    `url` is always redacted (no api keys).
    """

    def __init__(self, message: str, *, status_code: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class RateLimitedError(FetchError):
    """The remote kept answering 429 until retries ran out."""


class SourceError(HuntaError):
    """A source fetcher could not produce results (config or payload fault)."""

    def __init__(self, source: str, message: str):
        super().__init__(f"{source}: {message}")
        self.source = source


class GeminiRequestError(HuntaError):
    def __init__(self, message: str, *, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class GeminiRateLimitError(GeminiRequestError):
    def __init__(self, message: str, *, retry_after_seconds: Optional[float] = None, body: Optional[str] = None):
        super().__init__(message, status_code=429, body=body)
        self.retry_after_seconds = retry_after_seconds


class SearchError(HuntaError):
    """Unexpected fault inside the aggregator. The message is safe to show callers."""
