"""Gateway HTTP executor with timeout, status-aware retry and jittered backoff."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from aliprice import metrics
from aliprice.config import Settings, settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Retryable exceptions (transport errors: timeouts, resets, DNS hiccups)
RETRYABLE_EXC = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)

# Query parameters that must never reach the logs
_REDACTED_PARAMS = {"sign", "app_key", "app_secret"}


@dataclass(frozen=True)
class RetryPolicy:
    """Timeout and backoff configuration for one class of calls.

    Delays are in seconds. Total attempts = ``max_retries + 1``.
    """

    name: str = "default"
    timeout: float = 18.0
    max_retries: int = 4
    base_delay: float = 0.6
    backoff_factor: float = 2.0
    jitter_ratio: float = 0.35
    max_delay: float = 10.0

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    @classmethod
    def for_catalog(cls, config: Settings = settings) -> "RetryPolicy":
        """Policy for catalog/query calls."""
        return cls(
            name="catalog",
            timeout=config.request_timeout_seconds,
            max_retries=config.fetch_max_retries,
            base_delay=config.fetch_base_delay_seconds,
            backoff_factor=config.fetch_backoff_factor,
            jitter_ratio=config.fetch_jitter_ratio,
            max_delay=config.fetch_max_delay_seconds,
        )

    @classmethod
    def for_detail(cls, config: Settings = settings) -> "RetryPolicy":
        """Per-product policy for the (costlier) SKU-detail endpoint."""
        return cls(
            name="sku_detail",
            timeout=config.request_timeout_seconds,
            max_retries=config.detail_max_retries,
            base_delay=config.detail_base_delay_seconds,
            backoff_factor=config.detail_backoff_factor,
            jitter_ratio=config.detail_jitter_ratio,
            max_delay=config.detail_max_delay_seconds,
        )


class TransientNetworkError(RuntimeError):
    """Raised for a single attempt that is expected to succeed on retry (429, 5xx, timeout)."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after
        self.body = body


class FetchFailure(RuntimeError):
    """Raised when a call fails for good: fatal status, or retries exhausted.

    ``retry_after`` keeps the delay the server asked for on the last attempt,
    so an outer retry loop can still honour it.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        transient: bool = False,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.transient = transient
        self.retry_after = retry_after

    @property
    def rate_limited(self) -> bool:
        return self.status_code == 429


def is_transient_error(exc: BaseException) -> bool:
    """Classify an exception raised by a single attempt."""
    if isinstance(exc, TransientNetworkError):
        return True
    if isinstance(exc, FetchFailure):
        return exc.transient
    return isinstance(exc, RETRYABLE_EXC)


def backoff_bound(attempt: int, policy: RetryPolicy) -> float:
    """Un-jittered delay before retrying after ``attempt`` (0-based)."""
    return min(policy.base_delay * (policy.backoff_factor ** attempt), policy.max_delay)


def compute_backoff_delay(
    attempt: int,
    policy: RetryPolicy,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Delay before the next attempt: the capped exponential bound scaled by a
    uniform factor in ``[1 - jitter, 1 + jitter]``.
    """
    uniform = (rng or random).uniform
    factor = uniform(1.0 - policy.jitter_ratio, 1.0 + policy.jitter_ratio)
    return backoff_bound(attempt, policy) * factor


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """
    Parse a Retry-After header into seconds to wait.

    Accepts delta-seconds or an HTTP-date; a date in the past means no wait.
    Returns None when the header is absent or unparseable.
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def redact_url(url: str) -> str:
    """Strip credentials and signature from a URL before logging it."""
    parts = urlsplit(url)
    if not parts.query:
        return url
    query = [
        (k, "***" if k in _REDACTED_PARAMS else v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
    ]
    return urlunsplit(parts._replace(query=urlencode(query)))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    is_transient: Callable[[BaseException], bool] = is_transient_error,
    label: str = "",
) -> T:
    """
    Run ``operation`` until it succeeds, a non-transient error is raised, or
    the policy's attempts are used up.

    A ``retry_after`` attribute on the raised exception (seconds) overrides
    the computed backoff.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Backoff configuration
        is_transient: Classifier deciding whether an exception is retried
        label: Name used in log lines

    Returns:
        The operation's result

    Raises:
        The last exception raised by the operation
    """
    label = label or policy.name
    for attempt in range(policy.max_attempts):
        try:
            return await operation()
        except Exception as e:
            if not is_transient(e) or attempt >= policy.max_attempts - 1:
                raise

            sleep_s = getattr(e, "retry_after", None)
            if sleep_s is None:
                sleep_s = compute_backoff_delay(attempt, policy)

            logger.warning(
                f"{label}: transient error ({type(e).__name__}: {e}), "
                f"retrying in {sleep_s:.2f}s (attempt {attempt + 1}/{policy.max_attempts})"
            )
            metrics.api_retries_total.labels(reason=type(e).__name__).inc()
            await asyncio.sleep(sleep_s)

    # Unreachable: the loop either returns or raises
    raise FetchFailure(f"{label}: no attempts made")


class RequestExecutor:
    """
    Issues gateway GET calls and returns the parsed JSON body.

    Features:
    - Per-attempt timeout (the whole request, not just a phase)
    - 429/5xx and transport errors retried with jittered exponential backoff
    - Server-provided Retry-After honoured
    - Malformed JSON on a 2xx treated as an empty result
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        policy: Optional[RetryPolicy] = None,
    ):
        """
        Initialize executor.

        Args:
            client: Optional shared httpx client (created lazily otherwise)
            policy: Default retry policy (catalog policy if omitted)
        """
        self._http_client = client
        self._owns_client = client is None
        self.policy = policy or RetryPolicy.for_catalog()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                follow_redirects=True,
                headers={"Accept": "application/json"},
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
            )
        return self._http_client

    async def close(self):
        """Close HTTP client (only if this executor created it)."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None

    async def __aenter__(self) -> "RequestExecutor":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def get_json(
        self,
        url: str,
        policy: Optional[RetryPolicy] = None,
        method_label: str = "",
    ) -> dict[str, Any]:
        """
        Fetch URL and parse its JSON body.

        Args:
            url: Fully signed request URL
            policy: Retry policy override
            method_label: API method name for logs/metrics

        Returns:
            Parsed JSON object ({} for an unparseable 2xx body)

        Raises:
            FetchFailure: On a fatal status, or once transient retries are exhausted
        """
        policy = policy or self.policy
        label = method_label or policy.name

        try:
            return await retry_async(
                lambda: self._attempt(url, policy, label),
                policy,
                is_transient_error,
                label=label,
            )
        except TransientNetworkError as e:
            raise FetchFailure(
                f"{label}: {e} after {policy.max_attempts} attempts",
                status_code=e.status_code,
                body=e.body,
                transient=True,
                retry_after=e.retry_after,
            ) from e
        except RETRYABLE_EXC as e:
            raise FetchFailure(
                f"{label}: transport error after {policy.max_attempts} attempts: "
                f"{type(e).__name__}",
                transient=True,
            ) from e
        except httpx.HTTPError as e:
            # Decoding errors, redirect loops, malformed requests: retrying will not help
            raise FetchFailure(
                f"{label}: {type(e).__name__}: {e}",
                transient=False,
            ) from e

    async def _attempt(self, url: str, policy: RetryPolicy, label: str) -> dict[str, Any]:
        """One bounded HTTP attempt."""
        client = await self._get_client()
        started = time.monotonic()

        try:
            resp = await asyncio.wait_for(
                client.get(url, timeout=policy.timeout), timeout=policy.timeout
            )
        except asyncio.TimeoutError as e:
            metrics.api_requests_total.labels(method=label, status="timeout").inc()
            raise TransientNetworkError(
                f"timed out after {policy.timeout:.1f}s: {redact_url(url)}"
            ) from e
        finally:
            metrics.api_request_duration_seconds.labels(method=label).observe(
                time.monotonic() - started
            )

        sc = resp.status_code
        metrics.api_requests_total.labels(method=label, status=str(sc)).inc()

        if 200 <= sc < 300:
            try:
                body = resp.json()
            except ValueError:
                # The gateway sometimes sends broken JSON for empty result sets
                logger.debug(f"{label}: unparseable JSON body, treating as empty")
                return {}
            if not isinstance(body, dict):
                logger.debug(f"{label}: non-object JSON body ({type(body).__name__})")
                return {}
            return body

        if sc == 429 or 500 <= sc < 600:
            raise TransientNetworkError(
                f"HTTP {sc}",
                status_code=sc,
                retry_after=parse_retry_after(resp.headers.get("Retry-After")),
                body=resp.text[:300],
            )

        raise FetchFailure(
            f"{label}: HTTP {sc} for {redact_url(url)}",
            status_code=sc,
            body=resp.text[:300],
        )
