"""
auth/dependencies.py -- FastAPI Depends() helpers for the request gate.

Two token sources are checked in priority order:
  1. "access_token" cookie -- set by POST /login and /refresh-token.
  2. Authorization: Bearer <token> header -- API clients.

A cookie value may carry an optional "Bearer " prefix; it is stripped.

Each identity class gets its own dependency, built by access_claims(kind):
a token minted for an admin never authenticates a user route and vice versa.
Verification goes through the SessionCoordinator registered for that kind on
app.state.coordinators, so the signing key is never read from module state.

Failures raise core.errors exceptions; api/main.py renders them.

Layer rule: no imports from api/ or cache/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from typing import Callable

from fastapi import Request

from auth.models import AccessClaims, AdminCapability, IdentityKind
from auth.tokens import ACCESS_COOKIE
from core.errors import AuthenticationFailure, Forbidden

_BEARER = "Bearer "


def read_access_token(request: Request) -> str | None:
    token: str | None = request.cookies.get(ACCESS_COOKIE)
    if token and token.startswith(_BEARER):
        token = token[len(_BEARER) :]
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith(_BEARER):
            token = auth_header[len(_BEARER) :]
    return token or None


def access_claims(kind: IdentityKind) -> Callable[[Request], AccessClaims]:
    """Build the dependency that verifies an access token of the given class.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(claims: AccessClaims = Depends(access_claims(IdentityKind.user))): ...
    """

    def dependency(request: Request) -> AccessClaims:
        token = read_access_token(request)
        if token is None:
            raise AuthenticationFailure("Authentication required.")
        coordinator = request.app.state.coordinators[kind]
        claims = coordinator.verify_access_token(token)
        if claims is None:
            raise AuthenticationFailure("Invalid or expired access token.")
        return claims

    dependency.__name__ = f"{kind.value}_access_claims"
    return dependency


admin_claims = access_claims(IdentityKind.admin)
user_claims = access_claims(IdentityKind.user)


def require_manager(request: Request) -> AccessClaims:
    """Require an admin access token with the is_manager capability (403 otherwise)."""
    claims = admin_claims(request)
    capability = claims.capability
    if not isinstance(capability, AdminCapability) or not capability.is_manager:
        raise Forbidden("Manager access required.")
    return claims
