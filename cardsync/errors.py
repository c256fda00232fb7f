"""
CardSync — Error Taxonomy

Every pipeline failure maps to one of these exceptions. Each carries an
HTTP-equivalent status so entry points can build a uniform result envelope.

    InvalidRequestError   400  caller input rejected before any network call
    NotFoundError         404  nothing to operate on
    UpstreamError         429/4xx/5xx  upstream failed (after retries if transient)
    ShapeError            502  upstream payload structure unrecognized
    PersistenceError      500  storage write aborted mid-run
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cardsync.pipeline.persistence import BatchResult


class CardSyncError(Exception):
    """Base class for all pipeline errors."""

    status: int = 500

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status


class InvalidRequestError(CardSyncError):
    status = 400


class NotFoundError(CardSyncError):
    status = 404


class ShapeError(CardSyncError):
    """Upstream returned a payload whose page-level structure is unrecognized."""

    status = 502


class UpstreamError(CardSyncError):
    """
    An upstream HTTP call failed.

    `status` is the last HTTP status seen, or 0 when the request never got a
    response (timeout, DNS, connection reset).
    """

    def __init__(
        self,
        message: str,
        *,
        status: int,
        url: str = "",
        body_snippet: str = "",
        attempts: int = 1,
        retryable: bool = False,
    ):
        super().__init__(message, status=status)
        self.url = url
        self.body_snippet = body_snippet
        self.attempts = attempts
        self.retryable = retryable

    @property
    def http_status(self) -> int:
        """Status to report to callers. Network-level failures surface as 502."""
        return self.status if self.status >= 400 else 502


class PersistenceError(CardSyncError):
    """A chunked upsert aborted. `result` tells how much was committed first."""

    status = 500

    def __init__(self, message: str, result: BatchResult):
        super().__init__(message)
        self.result = result

    @property
    def committed(self) -> int:
        return self.result.committed
