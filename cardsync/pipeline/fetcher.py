"""
CardSync — Rate-Limited Fetcher

Single choke point for every outbound HTTP call. Wraps an injected
httpx.AsyncClient with:

- a shared per-upstream RateLimiter (max in-flight + min interval between dispatches)
- bounded retries with exponential backoff on 429 / 5xx / timeout / network errors
- a per-task status tracker observable through stats()

One RateLimiter instance is shared by all fetchers that target the same
upstream inside a process. Nothing is coordinated across processes.
"""

from __future__ import annotations

import asyncio
import itertools
import random
import time
from collections import deque
from contextlib import AsyncExitStack, asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx
import structlog
from pydantic import BaseModel, Field

from cardsync.config import Settings, settings
from cardsync.errors import ShapeError, UpstreamError

logger = structlog.get_logger(__name__)

BODY_SNIPPET_CHARS = 500
JITTER_FRACTION = 0.1   # Jitter stays below 10% of base delay so delays never shrink

SleepFn = Callable[[float], Awaitable[Any]]


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class FetchPolicy(BaseModel):
    """Retry, timeout and throttle limits for one upstream."""

    max_retries: int = Field(default=3, ge=0, description="Retries after the first attempt")
    base_delay: float = Field(default=0.5, ge=0, description="Backoff base in seconds")
    timeout: float = Field(default=30.0, gt=0, description="Per-request timeout in seconds")
    max_concurrency: int = Field(default=5, ge=1, description="Max requests in flight")
    requests_per_second: float | None = Field(
        default=None, gt=0, description="Dispatch ceiling; None disables the interval gate"
    )

    @classmethod
    def for_justtcg(cls, cfg: Settings = settings) -> FetchPolicy:
        return cls(
            max_retries=cfg.JUSTTCG_MAX_RETRIES,
            base_delay=cfg.JUSTTCG_BASE_DELAY_SECONDS,
            timeout=cfg.JUSTTCG_TIMEOUT_SECONDS,
            max_concurrency=cfg.JUSTTCG_MAX_CONCURRENCY,
            requests_per_second=cfg.JUSTTCG_REQUESTS_PER_SECOND,
        )

    @classmethod
    def for_tcgcsv(cls, cfg: Settings = settings) -> FetchPolicy:
        return cls(
            max_retries=cfg.TCGCSV_MAX_RETRIES,
            base_delay=cfg.TCGCSV_BASE_DELAY_SECONDS,
            timeout=cfg.TCGCSV_TIMEOUT_SECONDS,
            max_concurrency=cfg.TCGCSV_MAX_CONCURRENCY,
            requests_per_second=cfg.TCGCSV_REQUESTS_PER_SECOND,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay after failed attempt `attempt` (1-based): base * 2^(attempt-1) + jitter."""
        jitter = random.uniform(0, self.base_delay * JITTER_FRACTION) if self.base_delay else 0.0
        return self.base_delay * (2 ** (attempt - 1)) + jitter


# ---------------------------------------------------------------------------
# Rate Limiter
# ---------------------------------------------------------------------------


class RateLimiter:
    """
    Concurrency slot + minimum dispatch interval, shared across callers.

    Usage:
        limiter = RateLimiter(max_concurrency=3, requests_per_second=2)
        async with limiter.slot():
            await client.get(...)
    """

    def __init__(
        self,
        max_concurrency: int,
        requests_per_second: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
    ):
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._interval = 1.0 / requests_per_second if requests_per_second else 0.0
        self._lock = asyncio.Lock()
        self._last_dispatch: float | None = None
        self._clock = clock
        self._sleep = sleep
        self.max_concurrency = max_concurrency
        self.in_flight = 0
        self.peak_in_flight = 0

    @classmethod
    def from_policy(cls, policy: FetchPolicy, **kwargs: Any) -> RateLimiter:
        return cls(policy.max_concurrency, policy.requests_per_second, **kwargs)

    async def _wait_for_interval(self) -> None:
        if not self._interval:
            return
        async with self._lock:
            now = self._clock()
            if self._last_dispatch is not None:
                ready_at = self._last_dispatch + self._interval
                if ready_at > now:
                    await self._sleep(ready_at - now)
                    now = ready_at
            self._last_dispatch = now

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        async with self._semaphore:
            await self._wait_for_interval()
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            try:
                yield
            finally:
                self.in_flight -= 1


# ---------------------------------------------------------------------------
# Task Tracking
# ---------------------------------------------------------------------------


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    THROTTLED = "throttled"
    COMPLETED = "completed"
    FAILED = "failed"


class FetchTask(BaseModel):
    """Status record for one logical request (all of its attempts)."""

    task_id: int
    url: str
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    retries: int = 0
    last_status: int | None = None
    error: str | None = None


class FetchStats(BaseModel):
    queued: int = 0
    running: int = 0
    throttled: int = 0
    completed: int = 0
    failed: int = 0
    total_tasks: int = 0
    retries: int = 0


class TaskTracker:
    """Keeps live tasks plus a bounded ring of finished ones."""

    def __init__(self, history_limit: int = 1000):
        self._ids = itertools.count(1)
        self._tasks: dict[int, FetchTask] = {}
        self._finished: deque[int] = deque()
        self._history_limit = history_limit
        self._completed = 0
        self._failed = 0
        self._retries = 0
        self._total = 0

    def create(self, url: str) -> FetchTask:
        task = FetchTask(task_id=next(self._ids), url=url)
        self._tasks[task.task_id] = task
        self._total += 1
        return task

    def transition(self, task: FetchTask, status: TaskStatus) -> None:
        task.status = status
        if status == TaskStatus.THROTTLED:
            task.retries += 1
            self._retries += 1
        elif status in (TaskStatus.COMPLETED, TaskStatus.FAILED):
            if status == TaskStatus.COMPLETED:
                self._completed += 1
            else:
                self._failed += 1
            self._finished.append(task.task_id)
            while len(self._finished) > self._history_limit:
                self._tasks.pop(self._finished.popleft(), None)

    def get(self, task_id: int) -> FetchTask | None:
        return self._tasks.get(task_id)

    def stats(self) -> FetchStats:
        live = [t.status for t in self._tasks.values()]
        return FetchStats(
            queued=live.count(TaskStatus.PENDING),
            running=live.count(TaskStatus.RUNNING),
            throttled=live.count(TaskStatus.THROTTLED),
            completed=self._completed,
            failed=self._failed,
            total_tasks=self._total,
            retries=self._retries,
        )


# ---------------------------------------------------------------------------
# Fetcher
# ---------------------------------------------------------------------------


def _is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class RateLimitedFetcher:
    """
    Retrying, throttled wrapper around one httpx.AsyncClient.

    Usage:
        async with httpx.AsyncClient(base_url=...) as http:
            fetcher = RateLimitedFetcher(http, FetchPolicy.for_tcgcsv(), upstream="tcgcsv")
            payload = await fetcher.get_json("/3/groups")
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        policy: FetchPolicy,
        *,
        limiter: RateLimiter | None = None,
        upstream: str = "upstream",
        sleep: SleepFn = asyncio.sleep,
        tracker: TaskTracker | None = None,
    ):
        self._client = client
        self._policy = policy
        self._limiter = limiter or RateLimiter.from_policy(policy)
        self._upstream = upstream
        self._sleep = sleep
        self._tracker = tracker or TaskTracker()

    @property
    def policy(self) -> FetchPolicy:
        return self._policy

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter

    def stats(self) -> FetchStats:
        return self._tracker.stats()

    def task(self, task_id: int) -> FetchTask | None:
        return self._tracker.get(task_id)

    async def _send(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        hold: AsyncExitStack | None = None,
    ) -> httpx.Response:
        """
        Dispatch with retries. Returns the first response with status < 400.

        With `hold`, the response is streamed and its limiter slot is handed to
        `hold`, so the slot stays taken until the caller closes that stack.

        Raises:
            UpstreamError: immediately on non-429 4xx, or once retries are exhausted.
        """
        task = self._tracker.create(url)
        max_attempts = self._policy.max_retries + 1
        last_status = 0
        last_body = ""

        for attempt in range(1, max_attempts + 1):
            task.attempts = attempt
            async with AsyncExitStack() as attempt_slot:
                await attempt_slot.enter_async_context(self._limiter.slot())
                self._tracker.transition(task, TaskStatus.RUNNING)
                request = self._client.build_request(
                    method, url, params=params, headers=headers, timeout=self._policy.timeout
                )
                try:
                    response = await self._client.send(request, stream=hold is not None)
                except httpx.TimeoutException as e:
                    last_status, last_body = 0, f"timeout: {e}"
                    logger.warning(
                        "fetch_timeout", upstream=self._upstream, url=url, attempt=attempt
                    )
                except httpx.RequestError as e:
                    last_status, last_body = 0, f"{type(e).__name__}: {e}"
                    logger.warning(
                        "fetch_network_error",
                        upstream=self._upstream,
                        url=url,
                        attempt=attempt,
                        error=str(e),
                    )
                else:
                    if response.status_code < 400:
                        task.last_status = response.status_code
                        self._tracker.transition(task, TaskStatus.COMPLETED)
                        if hold is not None:
                            hold.push_async_exit(attempt_slot.pop_all())
                        return response

                    if hold is not None:
                        await response.aread()
                        await response.aclose()
                    last_status = response.status_code
                    last_body = response.text[:BODY_SNIPPET_CHARS]
                    task.last_status = last_status

                    if not _is_retryable_status(last_status):
                        task.error = last_body
                        self._tracker.transition(task, TaskStatus.FAILED)
                        logger.error(
                            "fetch_permanent_error",
                            upstream=self._upstream,
                            url=url,
                            status_code=last_status,
                        )
                        raise UpstreamError(
                            f"{self._upstream} returned HTTP {last_status} for {url}",
                            status=last_status,
                            url=url,
                            body_snippet=last_body,
                            attempts=attempt,
                            retryable=False,
                        )
                    if last_status == 429:
                        logger.warning(
                            "fetch_rate_limited", upstream=self._upstream, url=url, attempt=attempt
                        )

            if attempt == max_attempts:
                break

            # Backoff happens outside the limiter slot so other callers keep moving
            wait_time = self._policy.backoff_delay(attempt)
            self._tracker.transition(task, TaskStatus.THROTTLED)
            logger.warning(
                "fetch_retry_scheduled",
                upstream=self._upstream,
                url=url,
                attempt=attempt,
                status_code=last_status,
                wait_seconds=round(wait_time, 3),
            )
            await self._sleep(wait_time)

        task.error = last_body
        self._tracker.transition(task, TaskStatus.FAILED)
        logger.error(
            "fetch_failed",
            upstream=self._upstream,
            url=url,
            attempts=max_attempts,
            status_code=last_status,
        )
        raise UpstreamError(
            f"{self._upstream} request failed after {max_attempts} attempts "
            f"(last status {last_status}) for {url}",
            status=last_status,
            url=url,
            body_snippet=last_body,
            attempts=max_attempts,
            retryable=True,
        )

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        return await self._send(method, url, params=params, headers=headers)

    async def get_json(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """GET and decode JSON. Undecodable bodies raise ShapeError."""
        response = await self._send("GET", url, params=params, headers=headers)
        try:
            return response.json()
        except ValueError as e:
            raise ShapeError(f"{self._upstream} returned non-JSON body for {url}") from e

    async def stream_text(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> AsyncIterator[str]:
        """
        GET and yield decoded text chunks as they arrive.

        Retries cover connecting and the response status only. A body that
        fails mid-stream is not replayed. The limiter slot is held until the
        body has been read and closed.
        """
        async with AsyncExitStack() as held:
            response = await self._send("GET", url, params=params, headers=headers, hold=held)
            held.push_async_callback(response.aclose)
            async for chunk in response.aiter_text():
                yield chunk
