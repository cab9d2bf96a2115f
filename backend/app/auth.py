from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Annotated, Any

import httpx
import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import (
    ExpiredSignatureError,
    InvalidAudienceError,
    InvalidIssuerError,
    InvalidTokenError,
    MissingRequiredClaimError,
)
from jwt.algorithms import RSAAlgorithm

from .errors import AuthError, ConfigurationError, ExternalServiceError, ForbiddenError
from .logging_config import get_logger
from .settings import settings
from .storage import DB

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)
AuthCredentials = Annotated[HTTPAuthorizationCredentials | None, Depends(security)]


JWKS_TTL_SECONDS = 15 * 60
CLOCK_SKEW_SECONDS = 300


class Auth0Verifier:
    """RS256 access token verification against the tenant's published JWKS."""

    def __init__(self) -> None:
        self._jwks: dict[str, Any] | None = None
        self._jwks_fetched_at = 0.0

    def _fetch_jwks(self) -> dict[str, Any]:
        issuer = settings.auth0_issuer
        if not issuer:
            raise ConfigurationError("AUTH0_DOMAIN is not configured")
        try:
            response = httpx.get(f"{issuer}.well-known/jwks.json", timeout=5)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("auth0_jwks_fetch_failed", issuer=issuer, error=str(exc))
            raise ExternalServiceError("Failed to fetch Auth0 JWKS") from exc
        return response.json()

    def _keys(self) -> list[dict[str, Any]]:
        stale = time.monotonic() - self._jwks_fetched_at > JWKS_TTL_SECONDS
        if self._jwks is None or stale:
            self._jwks = self._fetch_jwks()
            self._jwks_fetched_at = time.monotonic()
        return list(self._jwks.get("keys", []))

    def _signing_key(self, token: str) -> Any:
        try:
            header = jwt.get_unverified_header(token)
        except InvalidTokenError as exc:
            raise AuthError("Malformed token header") from exc
        algorithm = header.get("alg")
        if algorithm != "RS256":
            raise AuthError(f"Unsupported algorithm: {algorithm}. Only RS256 allowed.")
        kid = header.get("kid")
        if not kid:
            raise AuthError("Missing key ID in token")
        for jwk in self._keys():
            if jwk.get("kid") == kid:
                return RSAAlgorithm.from_jwk(json.dumps(jwk))
        raise AuthError("Unknown token signature key")

    def verify(self, token: str) -> dict[str, Any]:
        audience, issuer = settings.AUTH0_AUDIENCE, settings.auth0_issuer
        if not audience or not issuer:
            raise ConfigurationError("Auth0 audience/domain not configured")

        key = self._signing_key(token)
        try:
            claims = jwt.decode(
                token,
                key=key,
                algorithms=["RS256"],
                audience=audience,
                issuer=issuer,
                options={"require": ["exp", "iat", "sub"]},
            )
        except ExpiredSignatureError as exc:
            raise AuthError("Token has expired") from exc
        except (InvalidAudienceError, InvalidIssuerError, MissingRequiredClaimError) as exc:
            raise AuthError("Invalid token claims") from exc
        except InvalidTokenError as exc:
            raise AuthError("Invalid token") from exc

        if claims.get("iat", 0) > time.time() + CLOCK_SKEW_SECONDS:
            raise AuthError("Token issued in the future")
        return claims


auth0_verifier = Auth0Verifier()


async def require_auth(credentials: HTTPAuthorizationCredentials | None) -> dict[str, Any]:
    """Verified bearer claims; raises AuthError when the caller is anonymous."""
    if settings.AUTH0_BYPASS:
        return {"sub": settings.AUTH0_BYPASS_SUBJECT, "scope": "", "name": "Local Dev"}
    token = credentials.credentials if credentials else ""
    if not token:
        raise AuthError("Missing Authorization header")
    return auth0_verifier.verify(token)


def subject_from_claims(claims: dict[str, Any]) -> str:
    subject = str(claims.get("sub") or "").strip()
    if not subject:
        raise AuthError("Unauthorized")
    return subject


def claim_scopes(claims: dict[str, Any]) -> set[str]:
    raw = claims.get("scope", "")
    if isinstance(raw, str):
        return set(raw.split())
    if isinstance(raw, list):
        return {str(item) for item in raw}
    return set()


@dataclass(frozen=True)
class Actor:
    user_id: str
    is_admin: bool
    partner_id: str | None = None


async def _is_admin(user_id: str, claims: dict[str, Any]) -> bool:
    if claim_scopes(claims) & settings.admin_scopes:
        return True
    return await DB.is_admin_profile(user_id)


async def resolve_partner_access(claims: dict[str, Any], partner_id: str | None) -> Actor:
    """Admins act on any partner; everyone else must be a member of `partner_id`."""
    user_id = subject_from_claims(claims)
    if await _is_admin(user_id, claims):
        return Actor(user_id=user_id, is_admin=True, partner_id=partner_id)
    if partner_id and await DB.is_partner_member(partner_id, user_id):
        return Actor(user_id=user_id, is_admin=False, partner_id=partner_id)
    logger.warning("partner_access_denied", user_id=user_id, partner_id=partner_id)
    raise ForbiddenError("Forbidden")


async def require_admin(claims: dict[str, Any]) -> Actor:
    user_id = subject_from_claims(claims)
    if not await _is_admin(user_id, claims):
        logger.warning("admin_access_denied", user_id=user_id)
        raise ForbiddenError("Forbidden")
    return Actor(user_id=user_id, is_admin=True)


__all__ = [
    "Actor",
    "AuthCredentials",
    "auth0_verifier",
    "claim_scopes",
    "require_admin",
    "require_auth",
    "resolve_partner_access",
    "subject_from_claims",
]
