"""Authentication dependencies backed by identity-provider session tokens"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, HTTPException, Request
from jwt import PyJWKClient, PyJWKClientError
from jwt.exceptions import InvalidTokenError

from pixelbill.core.config import settings

security_logger = logging.getLogger("security")

SESSION_COOKIE = "__session"


@dataclass
class Identity:
    """Authenticated caller as seen by the identity provider"""
    external_id: str
    email: Optional[str] = None

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "Identity":
        external_id = claims.get("sub")
        if not external_id:
            raise InvalidTokenError("Token missing 'sub' claim")
        # Email is only present when the session token template exposes it
        email = claims.get("email") or claims.get("primary_email_address")
        return cls(external_id=external_id, email=email)


class SessionVerifier:
    """Verifies RS256 session tokens against the provider's JWKS (keys cached by PyJWKClient)"""

    def __init__(self, jwks_url: str, issuer: Optional[str] = None):
        self._jwks_client = PyJWKClient(jwks_url, cache_keys=True, lifespan=300)
        self._issuer = issuer or None

    def verify(self, token: str) -> Identity:
        signing_key = self._jwks_client.get_signing_key_from_jwt(token)
        options = {"require": ["exp", "sub"], "verify_aud": False}
        claims = jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            issuer=self._issuer,
            options=options,
            leeway=5,
        )
        return Identity.from_claims(claims)


_verifier: Optional[SessionVerifier] = None


def get_session_verifier() -> Optional[SessionVerifier]:
    """Lazily build the process-wide verifier; None when the JWKS URL is not configured"""
    global _verifier
    if _verifier is None and settings.CLERK_JWKS_URL:
        _verifier = SessionVerifier(settings.CLERK_JWKS_URL, settings.CLERK_ISSUER)
    return _verifier


def _extract_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip() or None
    return request.cookies.get(SESSION_COOKIE)


def get_optional_identity(
    request: Request,
    verifier: Optional[SessionVerifier] = Depends(get_session_verifier),
) -> Optional[Identity]:
    """Dependency: the caller's identity, or None if not (yet) authenticated"""
    token = _extract_token(request)
    if not token:
        return None
    if verifier is None:
        security_logger.error("Session token received but CLERK_JWKS_URL is not configured")
        return None
    try:
        return verifier.verify(token)
    except (InvalidTokenError, PyJWKClientError) as e:
        security_logger.warning(
            f"Session token rejected - IP: {request.client.host if request.client else 'unknown'}, "
            f"Path: {request.url.path}, Reason: {type(e).__name__}"
        )
        return None


def require_identity(identity: Optional[Identity] = Depends(get_optional_identity)) -> Identity:
    """Dependency: require an authenticated caller"""
    if identity is None:
        raise HTTPException(401, "Not authenticated. Please sign in.")
    return identity
