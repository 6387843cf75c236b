"""Outbound HTTP transport shared by identity resolution and delivery."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

import httpx

from herald.core.errors import DeliveryError
from herald.core.settings import settings
from herald.services.keys import SigningKey
from herald.services.signatures import SignatureCodec, default_codec

logger = logging.getLogger(__name__)

ACTIVITY_CONTENT_TYPE = "application/activity+json"
ACTOR_ACCEPT = (
    "application/activity+json, "
    'application/ld+json; profile="https://www.w3.org/ns/activitystreams"'
)


def host_of(url: str) -> str:
    """Return the lowercase host name of a URL, or an empty string."""
    return (urlsplit(url).hostname or "").lower()


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of one signed POST to a remote endpoint."""

    endpoint: str
    host: str
    success: bool
    latency_ms: float
    status_code: int | None = None
    error: str | None = None


class FederationHttpClient:
    """Wraps a lazily created ``httpx.AsyncClient`` with signing and timeouts."""

    def __init__(
        self,
        *,
        request_timeout: float | None = None,
        fetch_timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        codec: SignatureCodec | None = None,
    ) -> None:
        self.request_timeout = request_timeout or settings.request_timeout_seconds
        self.fetch_timeout = fetch_timeout or settings.actor_fetch_timeout_seconds
        self.codec = codec or default_codec
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(self.request_timeout),
                    headers={"User-Agent": settings.user_agent},
                    transport=self._transport,
                    follow_redirects=True,
                )
        return self._client

    async def fetch_json(
        self,
        url: str,
        *,
        accept: str = ACTOR_ACCEPT,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """GET a JSON document from a remote server.

        Raises:
            DeliveryError: On timeout, connection failure, non-2xx status or a non-object body.
        """
        client = await self._ensure_client()
        try:
            response = await client.get(
                url,
                headers={"Accept": accept},
                params=params,
                timeout=self.fetch_timeout,
            )
        except httpx.HTTPError as exc:
            raise DeliveryError(url, f"fetch failed: {exc!r}") from exc

        if not response.is_success:
            raise DeliveryError(url, f"fetch returned {response.status_code}", response.status_code)
        try:
            document = response.json()
        except ValueError as exc:
            raise DeliveryError(url, "response is not JSON", response.status_code) from exc
        if not isinstance(document, dict):
            raise DeliveryError(url, "response is not a JSON object", response.status_code)
        return document

    async def post_signed(self, url: str, body: bytes, key: SigningKey) -> DeliveryOutcome:
        """Sign and POST an activity body, reporting the outcome instead of raising.

        Raises:
            KeyMaterialError: If the signing key cannot be used.
        """
        client = await self._ensure_client()
        request = client.build_request(
            "POST",
            url,
            content=body,
            headers={"Content-Type": ACTIVITY_CONTENT_TYPE, "Accept": ACTIVITY_CONTENT_TYPE},
            timeout=self.request_timeout,
        )
        self.codec.sign(request, key.private_key_pem, key.key_id)

        host = host_of(url)
        start_time = time.perf_counter()
        try:
            response = await client.send(request)
        except httpx.TimeoutException as exc:
            latency_ms = (time.perf_counter() - start_time) * 1000
            logger.info("Delivery to %s timed out after %.0fms", url, latency_ms)
            return DeliveryOutcome(url, host, False, latency_ms, error=f"timeout: {exc!r}")
        except httpx.HTTPError as exc:
            latency_ms = (time.perf_counter() - start_time) * 1000
            logger.info("Delivery to %s failed: %s", url, exc)
            return DeliveryOutcome(url, host, False, latency_ms, error=repr(exc))

        latency_ms = (time.perf_counter() - start_time) * 1000
        if response.is_success:
            return DeliveryOutcome(url, host, True, latency_ms, response.status_code)
        return DeliveryOutcome(
            url,
            host,
            False,
            latency_ms,
            response.status_code,
            error=f"HTTP {response.status_code}: {response.text[:200]}",
        )

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""
        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None


class _HttpClientSingleton:
    """Process-wide shared client."""

    _instance: FederationHttpClient | None = None

    @classmethod
    def get_instance(cls) -> FederationHttpClient:
        if cls._instance is None:
            cls._instance = FederationHttpClient()
        return cls._instance


def get_http_client() -> FederationHttpClient:
    """Return the shared outbound HTTP client."""
    return _HttpClientSingleton.get_instance()
