"""
Bokun HMAC signatures

Inbound: webhook authenticity check over the `x-bokun-*` headers.
Outbound: request signing for the Bokun REST API.
"""

import base64
import hashlib
import hmac
from datetime import datetime, timezone
from typing import Dict, Iterable, Mapping, Optional, Tuple, Union
from urllib.parse import urlencode

WEBHOOK_HEADER_PREFIX = "x-bokun-"
WEBHOOK_SIGNATURE_HEADER = "x-bokun-hmac"

HeaderInput = Union[Mapping[str, str], Iterable[Tuple[str, str]]]


def _header_pairs(headers: HeaderInput) -> Iterable[Tuple[str, str]]:
    if hasattr(headers, "items"):
        return headers.items()
    return headers


def canonical_header_string(
    headers: HeaderInput,
    prefix: str = WEBHOOK_HEADER_PREFIX,
    signature_header: str = WEBHOOK_SIGNATURE_HEADER,
) -> Tuple[str, Optional[str]]:
    """
    Build the signed string and pull out the supplied signature.

    Names are lower-cased, the signature header is excluded, pairs are
    sorted by name and URL-encoded as `k=v&k=v`. For a repeated header
    only the first value counts.
    """
    collected: Dict[str, str] = {}
    for name, value in _header_pairs(headers):
        key = str(name).lower()
        if not key.startswith(prefix) or key in collected:
            continue
        collected[key] = "" if value is None else str(value)

    signature = collected.pop(signature_header, None)
    canonical = urlencode(sorted(collected.items()))
    return canonical, signature


def verify_webhook_signature(
    headers: HeaderInput,
    secret: str,
    prefix: str = WEBHOOK_HEADER_PREFIX,
    signature_header: str = WEBHOOK_SIGNATURE_HEADER,
) -> bool:
    """
    True only if the supplied HMAC-SHA256 hex digest matches.

    Never raises. Missing headers, a missing signature or an empty
    secret all verify as False.
    """
    if not secret or not headers:
        return False

    try:
        canonical, signature = canonical_header_string(headers, prefix, signature_header)
    except (TypeError, ValueError):
        return False

    if not signature:
        return False

    expected = hmac.new(
        secret.encode("utf-8"),
        canonical.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()

    # Compare in constant time
    return hmac.compare_digest(expected, signature.strip().lower())


def sign_webhook_headers(headers: Dict[str, str], secret: str) -> str:
    """Compute the signature a sender would attach (used by tests and tooling)."""
    canonical, _ = canonical_header_string(headers)
    return hmac.new(secret.encode("utf-8"), canonical.encode("utf-8"), hashlib.sha256).hexdigest()


def bokun_date(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%d %H:%M:%S")


def bokun_request_headers(
    method: str,
    path: str,
    access_key: str,
    secret_key: str,
    now: Optional[datetime] = None,
) -> Dict[str, str]:
    """
    Auth headers for one Bokun API call.

    Signature is base64(HMAC-SHA1(date + access key + METHOD + path)),
    where path includes the query string.
    """
    date = bokun_date(now)
    message = f"{date}{access_key}{method.upper()}{path}"
    digest = hmac.new(secret_key.encode("utf-8"), message.encode("utf-8"), hashlib.sha1).digest()
    return {
        "X-Bokun-Date": date,
        "X-Bokun-AccessKey": access_key,
        "X-Bokun-Signature": base64.b64encode(digest).decode("ascii"),
        "Content-Type": "application/json;charset=UTF-8",
        "Accept": "application/json",
    }
