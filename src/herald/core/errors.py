"""Exception hierarchy for the federation engine."""

from __future__ import annotations


class HeraldError(RuntimeError):
    """Base exception for federation failures."""


class KeyMaterialError(HeraldError):
    """Signing keys are missing, unusable or cannot be generated.

    Treated as fatal for the affected identity; work that hits it is not retried.
    """


class ActivityValidationError(HeraldError, ValueError):
    """An activity payload is structurally invalid."""


class ResolutionError(HeraldError):
    """A remote identity could not be resolved to a delivery endpoint."""

    def __init__(self, actor_url: str, reason: str) -> None:
        super().__init__(f"{actor_url}: {reason}")
        self.actor_url = actor_url
        self.reason = reason


class DomainBlockedError(ResolutionError):
    """The remote host is on the domain blocklist."""

    def __init__(self, actor_url: str, host: str) -> None:
        super().__init__(actor_url, f"domain {host} is blocked")
        self.host = host


class DeliveryError(HeraldError):
    """Transient failure talking to a remote server (timeout, refused connection, 5xx)."""

    def __init__(self, url: str, message: str, status_code: int | None = None) -> None:
        super().__init__(f"{url}: {message}")
        self.url = url
        self.status_code = status_code


class InboundSignatureError(HeraldError):
    """An inbound request failed signature verification or signer/actor agreement."""
