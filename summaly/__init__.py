"""
summaly: bounded retrieval and charset resolution for link previews.
"""

__version__ = "0.1.0"

from .errors import (  # noqa: E402
    FetchTimeoutError,
    InvalidURLError,
    MissingContentLengthError,
    SizeExceededError,
    StatusError,
    SummalyError,
    TransportError,
    TypeRejectedError,
)
from .fetcher import HTTPFetcher, Retrieval, RetrievalRequest  # noqa: E402
from .scraping import ScrapeResult, get, head, scraping  # noqa: E402
