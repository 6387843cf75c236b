"""Shared API dependencies for authentication and common functionality."""

from typing import Annotated, Any

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from herald.core.security import decode_access_token
from herald.core.settings import settings
from herald.db.session import get_db
from herald.models import LocalIdentity
from herald.models.identity import IDENTITY_DISABLED
from herald.services.http import FederationHttpClient, get_http_client
from herald.services.identities import get_by_handle

# Missing credentials are reported as 401 by get_token_claims rather than 403.
bearer_scheme = HTTPBearer(auto_error=False)

# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]


def get_http_client_dep() -> FederationHttpClient:
    """Get the shared outbound HTTP client for dependency injection."""
    return get_http_client()


HttpClientDep = Annotated[FederationHttpClient, Depends(get_http_client_dep)]


def get_token_claims(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> dict[str, Any]:
    """Return the claims of a valid bearer token.

    Raises:
        HTTPException: 401 if the token is missing, invalid or expired.
    """
    claims = decode_access_token(credentials.credentials) if credentials else None
    if claims is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return claims


ClaimsDep = Annotated[dict[str, Any], Depends(get_token_claims)]


def require_operator(claims: ClaimsDep) -> dict[str, Any]:
    """Allow only tokens carrying the operator role."""
    if claims.get("role") != settings.operator_role:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Operator role required",
        )
    return claims


OperatorDep = Annotated[dict[str, Any], Depends(require_operator)]


def get_active_identity(handle: str, db: SessionDep) -> LocalIdentity:
    """Look up a local identity that can receive activities.

    Raises:
        HTTPException: 404 if the identity is unknown or disabled.
    """
    identity = get_by_handle(db, handle)
    if identity is None or identity.status == IDENTITY_DISABLED:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Identity not found")
    return identity


def get_owned_identity(handle: str, db: SessionDep, claims: ClaimsDep) -> LocalIdentity:
    """Look up an identity and check the bearer token belongs to its owner.

    Raises:
        HTTPException: 404 for unknown or disabled identities, 403 for other owners.
    """
    identity = get_active_identity(handle, db)
    if claims.get("sub") != identity.owner_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token does not belong to the identity owner",
        )
    return identity


ActiveIdentityDep = Annotated[LocalIdentity, Depends(get_active_identity)]
OwnedIdentityDep = Annotated[LocalIdentity, Depends(get_owned_identity)]
