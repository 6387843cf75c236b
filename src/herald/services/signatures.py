"""HTTP message signatures for server-to-server requests.

Outgoing requests are signed over ``(request-target) host date digest`` with
RSA-SHA256. Incoming requests are verified against the sender's public key;
verification reports a boolean and treats malformed input as a failure
rather than an error.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import re
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from email.utils import format_datetime, parsedate_to_datetime

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding

from herald.core.errors import KeyMaterialError
from herald.core.settings import settings
from herald.db.time import as_utc, utcnow
from herald.services.keys import load_private_key, load_public_key

logger = logging.getLogger(__name__)

SIGNED_HEADERS: tuple[str, ...] = ("(request-target)", "host", "date", "digest")
REQUIRED_HEADERS = frozenset(SIGNED_HEADERS)
ALGORITHM = "rsa-sha256"
DIGEST_PREFIX = "SHA-256="

_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')

PublicKeyResolver = Callable[[str], Awaitable[str | None]]


@dataclass(frozen=True)
class SignatureParams:
    """Parsed contents of a ``Signature`` header."""

    key_id: str
    algorithm: str
    headers: tuple[str, ...]
    signature: str


def compute_digest(body: bytes) -> str:
    """Return the ``Digest`` header value for a request body."""
    return DIGEST_PREFIX + base64.b64encode(hashlib.sha256(body).digest()).decode("ascii")


def http_date(moment: datetime | None = None) -> str:
    """Format a timestamp as an RFC 7231 HTTP date."""
    return format_datetime(moment or utcnow(), usegmt=True)


def build_signing_string(
    method: str,
    path: str,
    headers: Mapping[str, str],
    header_names: Iterable[str] = SIGNED_HEADERS,
) -> str:
    """Build the canonical string that is signed and verified.

    Raises:
        KeyError: If a listed header is not present.
    """
    lowered = {name.lower(): value for name, value in headers.items()}
    lines = []
    for name in header_names:
        name = name.lower()
        if name == "(request-target)":
            lines.append(f"(request-target): {method.lower()} {path}")
        else:
            lines.append(f"{name}: {lowered[name]}")
    return "\n".join(lines)


def parse_signature_header(value: str) -> SignatureParams | None:
    """Parse a ``Signature`` header; return None if mandatory parameters are missing."""
    params = dict(_PARAM_RE.findall(value))
    key_id = params.get("keyId")
    signature = params.get("signature")
    if not key_id or not signature:
        return None
    header_list = params.get("headers", "date")
    return SignatureParams(
        key_id=key_id,
        algorithm=params.get("algorithm", ALGORITHM),
        headers=tuple(header_list.lower().split()),
        signature=signature,
    )


def request_target(url: httpx.URL) -> str:
    """Return the path and query used in ``(request-target)``."""
    return url.raw_path.decode("ascii")


class SignatureCodec:
    """Signs outgoing httpx requests and verifies incoming ones."""

    def __init__(self, max_skew_seconds: int | None = None) -> None:
        self.max_skew = timedelta(
            seconds=max_skew_seconds
            if max_skew_seconds is not None
            else settings.signature_max_skew_seconds
        )

    def sign(self, request: httpx.Request, private_key_pem: str, key_id: str) -> httpx.Request:
        """Sign ``request`` in place and return it.

        Raises:
            KeyMaterialError: If the private key cannot be imported.
        """
        private_key = load_private_key(private_key_pem)
        body = request.content

        if "date" not in request.headers:
            request.headers["Date"] = http_date()
        if "host" not in request.headers:
            request.headers["Host"] = request.url.netloc.decode("ascii")
        request.headers["Digest"] = compute_digest(body)

        signing_string = build_signing_string(
            request.method, request_target(request.url), request.headers
        )
        signature = private_key.sign(
            signing_string.encode("utf-8"),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
        request.headers["Signature"] = (
            f'keyId="{key_id}",algorithm="{ALGORITHM}",'
            f'headers="{" ".join(SIGNED_HEADERS)}",'
            f'signature="{base64.b64encode(signature).decode("ascii")}"'
        )
        return request

    async def verified_params(
        self,
        method: str,
        path: str,
        headers: Mapping[str, str],
        body: bytes,
        resolve_public_key: PublicKeyResolver,
        *,
        now: datetime | None = None,
    ) -> SignatureParams | None:
        """Verify an incoming request.

        Args:
            method: HTTP method of the request.
            path: Request path including any query string.
            headers: Request headers (case-insensitive lookup is applied).
            body: Raw request body.
            resolve_public_key: Coroutine returning the PEM for a key id, or None.
            now: Override for the current time.

        Returns:
            The parsed signature parameters when the request verifies, otherwise None.
        """
        lowered = {name.lower(): value for name, value in headers.items()}
        signature_header = lowered.get("signature")
        digest_header = lowered.get("digest")
        date_header = lowered.get("date")
        if not signature_header or not digest_header or not date_header:
            logger.debug("Rejecting request without signature, digest or date")
            return None

        try:
            sent_at = as_utc(parsedate_to_datetime(date_header))
        except (TypeError, ValueError):
            logger.debug("Rejecting request with unparseable date %r", date_header)
            return None
        if sent_at is None or abs((now or utcnow()) - sent_at) > self.max_skew:
            logger.debug("Rejecting request outside the clock skew window: %s", date_header)
            return None

        expected_digest = compute_digest(body).encode("ascii")
        if not hmac.compare_digest(digest_header.strip().encode("utf-8"), expected_digest):
            logger.debug("Rejecting request with mismatched digest")
            return None

        params = parse_signature_header(signature_header)
        if params is None:
            return None
        if params.algorithm.lower() not in {ALGORITHM, "hs2019"}:
            logger.debug("Rejecting unsupported signature algorithm %s", params.algorithm)
            return None
        if not REQUIRED_HEADERS.issubset(params.headers):
            logger.debug("Rejecting signature that omits required headers: %s", params.headers)
            return None

        try:
            signing_string = build_signing_string(method, path, lowered, params.headers)
            signature = base64.b64decode(params.signature, validate=True)
        except (KeyError, binascii.Error):
            return None

        public_key_pem = await resolve_public_key(params.key_id)
        if not public_key_pem:
            logger.info("No public key available for %s", params.key_id)
            return None

        try:
            public_key = load_public_key(public_key_pem)
            public_key.verify(
                signature,
                signing_string.encode("utf-8"),
                padding.PKCS1v15(),
                hashes.SHA256(),
            )
        except (InvalidSignature, KeyMaterialError):
            logger.info("Signature verification failed for %s", params.key_id)
            return None
        return params

    async def verify(
        self,
        method: str,
        path: str,
        headers: Mapping[str, str],
        body: bytes,
        resolve_public_key: PublicKeyResolver,
        *,
        now: datetime | None = None,
    ) -> bool:
        """Return True when the request carries a valid signature and digest."""
        params = await self.verified_params(
            method, path, headers, body, resolve_public_key, now=now
        )
        return params is not None


default_codec = SignatureCodec()
