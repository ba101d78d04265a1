"""Request signing and timestamp encodings for the affiliate gateway.

The gateway accepts two signing schemes and two timestamp encodings, and
which combination a deployment accepts is not discoverable up front (see
``aliprice.ingest.negotiator``).
"""

import hashlib
import hmac
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional


class SignMethod(str, Enum):
    """Signing algorithms understood by the gateway.

    The value is what goes into the ``sign_method`` query parameter.
    """

    HMAC_SHA256 = "hmac-sha256"
    SHA256 = "sha256"  # Alias of HMAC_SHA256 used by the /sync gateway
    MD5 = "md5"


class TimestampFormat(str, Enum):
    """Encodings of the ``timestamp`` parameter."""

    EPOCH_MS = "epoch_ms"
    EPOCH_SECONDS = "epoch_s"  # Accepted by the /sync SKU-detail gateway
    FORMATTED_UTC = "formatted_utc"  # "YYYY-MM-DD HH:MM:SS" in UTC


def build_base_string(params: Mapping[str, Any]) -> str:
    """
    Build the canonical string that is signed.

    Drops ``sign`` and absent values, sorts the remaining keys and
    concatenates ``key + value`` with no separator.
    """
    keys = sorted(k for k, v in params.items() if k != "sign" and v is not None)
    return "".join(f"{k}{format_param(params[k])}" for k in keys)


def sign(params: Mapping[str, Any], secret: str, algorithm: SignMethod | str) -> str:
    """
    Sign a parameter set.

    Args:
        params: Request parameters (any existing ``sign`` key is ignored)
        secret: App secret
        algorithm: One of SignMethod (or its string value)

    Returns:
        Upper-case hex digest

    Raises:
        ValueError: If the algorithm is unknown
    """
    method = SignMethod(algorithm)
    base = build_base_string(params)

    if method in (SignMethod.HMAC_SHA256, SignMethod.SHA256):
        digest = hmac.new(
            secret.encode("utf-8"), base.encode("utf-8"), hashlib.sha256
        ).hexdigest()
    else:
        digest = hashlib.md5(f"{secret}{base}{secret}".encode("utf-8")).hexdigest()

    return digest.upper()


def encode_timestamp(fmt: TimestampFormat | str, now: Optional[datetime] = None) -> str:
    """
    Encode the current time for the ``timestamp`` parameter.

    Args:
        fmt: Timestamp encoding
        now: Optional fixed time (timezone-aware); defaults to the wall clock
    """
    fmt = TimestampFormat(fmt)
    if fmt is TimestampFormat.EPOCH_MS:
        if now is None:
            return str(time.time_ns() // 1_000_000)
        return str(int(now.timestamp() * 1000))
    if fmt is TimestampFormat.EPOCH_SECONDS:
        return str(int(now.timestamp() if now is not None else time.time()))

    moment = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%d %H:%M:%S")


def format_param(value: Any) -> str:
    """Render a parameter value exactly as it is signed and sent."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
