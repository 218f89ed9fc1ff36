"""Bearer-token protection for the dashboard endpoints.

Tokens are RS256 JWTs verified against a JWKS endpoint and must carry the
``monitor:admin`` scope. Leaving ``MONITOR_JWT_JWKS_URL`` unset turns the
check off, which is how local development runs.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Optional, Set

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger(__name__)

ALGORITHM = "RS256"
REQUIRED_CLAIMS = ("exp", "iss", "aud")
ADMIN_SCOPE = "monitor:admin"
auth_scheme = HTTPBearer(auto_error=False)

# first match wins; PyJWTError catches the rest
_TOKEN_ERRORS = (
    (jwt.ExpiredSignatureError, "Token expired"),
    (jwt.InvalidAudienceError, "Invalid audience"),
    (jwt.InvalidIssuerError, "Invalid issuer"),
    (jwt.MissingRequiredClaimError, "Missing claim"),
    (jwt.PyJWTError, "Invalid token"),
)


@dataclass(frozen=True)
class AuthSettings:
    jwks_url: str
    issuer: str
    audience: str


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"{name} environment variable must be set to validate tokens.")
    return value


def load_settings() -> Optional[AuthSettings]:
    """Read the token settings, or ``None`` when admin auth is switched off."""
    jwks_url = os.environ.get("MONITOR_JWT_JWKS_URL")
    if not jwks_url:
        return None
    return AuthSettings(
        jwks_url=jwks_url,
        issuer=_require_env("MONITOR_JWT_ISSUER"),
        audience=_require_env("MONITOR_JWT_AUDIENCE"),
    )


@lru_cache(maxsize=1)
def _jwks_client(url: str) -> jwt.PyJWKClient:
    return jwt.PyJWKClient(url)


def _get_signing_key(token: str, jwks_url: str) -> jwt.PyJWK:
    return _jwks_client(jwks_url).get_signing_key_from_jwt(token)


def _scopes(payload: Dict) -> Set[str]:
    raw = payload.get("scope") or ""
    if isinstance(raw, str):
        return set(raw.split())
    return set(raw)


def _decode(token: str, settings: AuthSettings) -> Dict:
    try:
        signing_key = _get_signing_key(token, settings.jwks_url)
        return jwt.decode(
            token,
            signing_key.key,
            algorithms=[ALGORITHM],
            audience=settings.audience,
            issuer=settings.issuer,
            options={"require": list(REQUIRED_CLAIMS)},
        )
    except jwt.PyJWTError as exc:
        detail = next(message for error, message in _TOKEN_ERRORS if isinstance(exc, error))
        logger.info("Rejected admin token: %s", exc)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail) from exc


def verify_admin(credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme)) -> Dict:
    """Return the token claims of an admin caller; ``{}`` when auth is off."""
    settings = load_settings()
    if settings is None:
        return {}

    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")

    payload = _decode(credentials.credentials, settings)
    if ADMIN_SCOPE not in _scopes(payload):
        logger.warning("Rejected token without admin scope sub=%s", payload.get("sub"))
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin scope required")
    return payload


def reset_auth_state() -> None:
    """Drop the cached JWKS client."""

    _jwks_client.cache_clear()
