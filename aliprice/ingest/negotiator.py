"""Protocol negotiation: probe (endpoint, sign method, timestamp) combinations.

The gateway's accepted combination differs between endpoints and
deployments and cannot be configured reliably ahead of time, so every
logical call walks an ordered candidate list and stops at the first one
that yields items. Nothing is remembered between calls.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, Mapping, Optional, Sequence, TypeVar
from urllib.parse import urlencode

from aliprice import metrics
from aliprice.config import Settings, settings
from aliprice.ingest.http_client import FetchFailure, RequestExecutor, RetryPolicy
from aliprice.ingest.normalizer import find_error
from aliprice.ingest.signer import SignMethod, TimestampFormat, encode_timestamp, format_param, sign

logger = logging.getLogger(__name__)

T = TypeVar("T")


class UpstreamAPIError(RuntimeError):
    """The gateway answered with an error payload (``error_response`` or non-200 code)."""

    def __init__(self, method: str, code: Any = None, msg: Optional[str] = None, sub_code: Any = None):
        self.method = method
        self.code = code
        self.msg = msg
        self.sub_code = sub_code
        detail = f"{code}" + (f"/{sub_code}" if sub_code else "")
        super().__init__(f"{method}: upstream error {detail}: {msg or 'no message'}")

    @classmethod
    def from_payload(cls, method: str, payload: Mapping[str, Any]) -> "UpstreamAPIError":
        return cls(
            method,
            code=payload.get("code"),
            msg=payload.get("msg") or payload.get("message"),
            sub_code=payload.get("sub_code"),
        )


@dataclass(frozen=True)
class Candidate:
    """One concrete way of calling the gateway."""

    endpoint: str
    sign_method: SignMethod
    timestamp_format: TimestampFormat

    @property
    def label(self) -> str:
        return self.endpoint.rstrip("/").rsplit("/", 1)[-1]


def default_candidates(config: Settings = settings) -> list[Candidate]:
    """Probing order for catalog calls (product query, product detail, categories)."""
    rest, sync = config.api_rest_endpoint, config.api_sync_endpoint
    return [
        Candidate(rest, SignMethod.HMAC_SHA256, TimestampFormat.EPOCH_MS),
        Candidate(rest, SignMethod.MD5, TimestampFormat.EPOCH_MS),
        Candidate(rest, SignMethod.HMAC_SHA256, TimestampFormat.FORMATTED_UTC),
        Candidate(rest, SignMethod.MD5, TimestampFormat.FORMATTED_UTC),
        Candidate(sync, SignMethod.MD5, TimestampFormat.FORMATTED_UTC),
    ]


def sku_detail_candidates(config: Settings = settings) -> list[Candidate]:
    """Probing order for SKU detail: the /sync gateway first, then the catalog order."""
    sync = config.api_sync_endpoint
    return [
        Candidate(sync, SignMethod.SHA256, TimestampFormat.EPOCH_SECONDS),
        Candidate(sync, SignMethod.SHA256, TimestampFormat.EPOCH_MS),
        *default_candidates(config),
    ]


@dataclass
class NegotiationResult(Generic[T]):
    """Outcome of one negotiated call.

    ``items`` is empty when every candidate answered without data; ``envelope``
    then holds the last raw body for diagnostics.
    """

    items: list[T]
    envelope: Optional[dict[str, Any]] = None
    candidate: Optional[Candidate] = None
    error: Optional[UpstreamAPIError] = None

    @property
    def empty(self) -> bool:
        return not self.items


class ProtocolNegotiator:
    """Signs, sends and normalizes one logical call across a candidate list."""

    def __init__(
        self,
        executor: RequestExecutor,
        app_key: Optional[str] = None,
        app_secret: Optional[str] = None,
        config: Settings = settings,
    ):
        self.executor = executor
        self.app_key = app_key if app_key is not None else config.ae_app_key
        self.app_secret = app_secret if app_secret is not None else config.ae_app_secret
        self.config = config

    def build_params(
        self,
        method: str,
        biz_params: Mapping[str, Any],
        candidate: Candidate,
    ) -> dict[str, Any]:
        """System parameters plus business parameters, signed."""
        params: dict[str, Any] = {
            "app_key": self.app_key,
            "method": method,
            "sign_method": candidate.sign_method.value,
            "timestamp": encode_timestamp(candidate.timestamp_format),
            "v": self.config.api_version,
            "format": self.config.api_format,
        }
        params.update({k: v for k, v in biz_params.items() if v is not None})
        params["sign"] = sign(params, self.app_secret, candidate.sign_method)
        return params

    def build_url(self, method: str, biz_params: Mapping[str, Any], candidate: Candidate) -> str:
        params = self.build_params(method, biz_params, candidate)
        query = urlencode({k: format_param(v) for k, v in params.items()})
        return f"{candidate.endpoint}?{query}"

    async def negotiate(
        self,
        method: str,
        biz_params: Mapping[str, Any],
        extract: Callable[[Any], list[T]],
        candidates: Optional[Sequence[Candidate]] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> NegotiationResult[T]:
        """
        Try each candidate in order until one yields items.

        Args:
            method: Gateway method name
            biz_params: Method-specific parameters (None values are dropped)
            extract: Normalizer turning a raw body into items
            candidates: Probing order (catalog order if omitted)
            policy: Executor retry policy override

        Returns:
            First non-empty result, or an empty result carrying the last envelope

        Raises:
            UpstreamAPIError: Every candidate answered with an error payload
            FetchFailure: The gateway rate-limited a candidate (probing stops
                there), or no candidate could be fetched at all
        """
        candidates = list(candidates or default_candidates(self.config))
        last_envelope: Optional[dict[str, Any]] = None
        last_error: Optional[UpstreamAPIError] = None
        last_failure: Optional[FetchFailure] = None
        answered_cleanly = False

        for candidate in candidates:
            url = self.build_url(method, biz_params, candidate)
            try:
                body = await self.executor.get_json(url, policy=policy, method_label=method)
            except FetchFailure as e:
                if e.rate_limited:
                    # Every candidate hits the same throttled gateway
                    self._record(candidate, "rate_limited")
                    logger.warning(
                        f"{method}: rate limited on {candidate.label}, "
                        f"retry after {e.retry_after if e.retry_after is not None else '?'}s"
                    )
                    raise
                logger.debug(
                    f"{method}: candidate {candidate.label}/{candidate.sign_method.value}/"
                    f"{candidate.timestamp_format.value} failed to fetch: {e}"
                )
                self._record(candidate, "fetch_failed")
                last_failure = e
                continue

            last_envelope = body
            error_payload = find_error(body)
            if error_payload is not None:
                last_error = UpstreamAPIError.from_payload(method, error_payload)
                logger.debug(f"{method}: candidate {candidate.label} rejected: {last_error}")
                self._record(candidate, "api_error")
                continue

            answered_cleanly = True
            items = extract(body)
            if items:
                self._record(candidate, "ok")
                return NegotiationResult(items=items, envelope=body, candidate=candidate)
            self._record(candidate, "empty")

        if answered_cleanly:
            return NegotiationResult(items=[], envelope=last_envelope, error=last_error)
        if last_error is not None:
            raise last_error
        if last_failure is not None:
            raise last_failure
        return NegotiationResult(items=[], envelope=last_envelope)

    @staticmethod
    def _record(candidate: Candidate, outcome: str) -> None:
        metrics.negotiation_attempts_total.labels(
            endpoint=candidate.label,
            sign_method=candidate.sign_method.value,
            timestamp_format=candidate.timestamp_format.value,
            outcome=outcome,
        ).inc()
