"""Signing key management for local identities.

Each identity receives an RSA key pair the first time it needs to sign
something. The pair is written with a conditional update so that concurrent
callers converge on a single stored pair, and it is never regenerated
afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from herald.core.errors import KeyMaterialError
from herald.core.settings import settings
from herald.models import LocalIdentity
from herald.models.identity import IDENTITY_DISABLED

logger = logging.getLogger(__name__)

PUBLIC_EXPONENT = 65537


@dataclass(frozen=True)
class SigningKey:
    """Key material needed to sign requests on behalf of an identity."""

    key_id: str
    private_key_pem: str
    public_key_pem: str


def generate_key_pair(key_size: int | None = None) -> tuple[str, str]:
    """Generate an RSA key pair and return (private PKCS#8 PEM, public SPKI PEM)."""
    private_key = rsa.generate_private_key(
        public_exponent=PUBLIC_EXPONENT,
        key_size=key_size or settings.key_size,
    )
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    return private_pem, public_pem


def load_private_key(pem: str) -> rsa.RSAPrivateKey:
    """Import a PEM private key, raising KeyMaterialError if it is not usable RSA."""
    try:
        key = serialization.load_pem_private_key(pem.encode("ascii"), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise KeyMaterialError(f"Unable to import private key: {exc}") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise KeyMaterialError("Private key is not an RSA key")
    return key


def load_public_key(pem: str) -> rsa.RSAPublicKey:
    """Import a PEM public key, raising KeyMaterialError if it is not usable RSA."""
    try:
        key = serialization.load_pem_public_key(pem.encode("ascii"))
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise KeyMaterialError(f"Unable to import public key: {exc}") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise KeyMaterialError("Public key is not an RSA key")
    return key


class KeyManager:
    """Lazily provisions and returns signing keys for local identities."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def ensure_keys(self, identity: LocalIdentity) -> SigningKey:
        """Return the identity's key pair, generating and storing it on first use.

        Raises:
            KeyMaterialError: If the identity is disabled or keys cannot be stored.
        """
        if identity.status == IDENTITY_DISABLED:
            raise KeyMaterialError(f"Identity {identity.handle} is disabled")

        if identity.private_key_pem and identity.public_key_pem:
            return SigningKey(identity.key_id, identity.private_key_pem, identity.public_key_pem)

        try:
            private_pem, public_pem = generate_key_pair()
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise KeyMaterialError(f"Unable to generate keys for {identity.handle}") from exc

        try:
            result = self.db.execute(
                update(LocalIdentity)
                .where(
                    LocalIdentity.id == identity.id,
                    LocalIdentity.private_key_pem.is_(None),
                )
                .values(private_key_pem=private_pem, public_key_pem=public_pem)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise KeyMaterialError(f"Unable to store keys for {identity.handle}") from exc

        self.db.refresh(identity)
        if result.rowcount:
            logger.info("Generated signing keys for identity %s", identity.handle)
        else:
            logger.debug("Keys for identity %s were stored concurrently", identity.handle)

        if not identity.private_key_pem or not identity.public_key_pem:
            raise KeyMaterialError(f"Identity {identity.handle} has no usable key pair")
        return SigningKey(identity.key_id, identity.private_key_pem, identity.public_key_pem)
