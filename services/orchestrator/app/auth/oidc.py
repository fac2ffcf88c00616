"""OIDC bearer-token validation guarding the mutating endpoints."""
from __future__ import annotations

import asyncio
from typing import Sequence

import httpx
from authlib.jose import JsonWebKey, jwt
from authlib.jose.errors import JoseError
from fastapi import HTTPException, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..config import OrchestratorSettings, get_settings


class OIDCVerifier:
    """Validate JWT tokens against the issuer's JWKS; open access when no issuer is configured."""

    def __init__(self, settings: OrchestratorSettings) -> None:
        self._settings = settings
        self._jwks: JsonWebKey | None = None
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self._settings.security.oidc_issuer_url)

    async def _get_jwks(self) -> JsonWebKey:
        async with self._lock:
            if self._jwks is not None:
                return self._jwks
            issuer = self._settings.security.oidc_issuer_url
            if not issuer:
                raise RuntimeError("OIDC issuer URL is not configured")
            jwks_url = issuer.rstrip("/") + "/.well-known/jwks.json"
            async with httpx.AsyncClient() as client:
                response = await client.get(jwks_url, timeout=10)
                response.raise_for_status()
            self._jwks = JsonWebKey.import_key_set(response.json())
            return self._jwks

    async def verify(self, credentials: HTTPAuthorizationCredentials | None, required_roles: Sequence[str]) -> dict:
        security = self._settings.security
        if not self.enabled:
            return {"sub": "anonymous", security.role_claim: [security.operator_role]}
        if credentials is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")

        jwks = await self._get_jwks()
        try:
            claims = jwt.decode(credentials.credentials, jwks)
            claims.validate()
        except (JoseError, ValueError) as exc:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc

        if claims.get("iss") != security.oidc_issuer_url:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid issuer")
        audience = security.oidc_audience
        if audience:
            token_audience = claims.get("aud")
            audiences = token_audience if isinstance(token_audience, list) else [token_audience]
            if audience not in audiences:
                raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid audience")

        if required_roles:
            roles = claims.get(security.role_claim, [])
            if isinstance(roles, str):
                roles = [roles]
            if not set(required_roles).intersection(roles):
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role")
        return dict(claims)


_oidc_singleton: OIDCVerifier | None = None


def get_oidc_verifier() -> OIDCVerifier:
    global _oidc_singleton
    if _oidc_singleton is None:
        _oidc_singleton = OIDCVerifier(get_settings())
    return _oidc_singleton


def reset_oidc_verifier() -> None:
    global _oidc_singleton
    _oidc_singleton = None


def require_roles(*roles: str):
    async def dependency(credentials: HTTPAuthorizationCredentials = Security(HTTPBearer(auto_error=False))):
        verifier = get_oidc_verifier()
        return await verifier.verify(credentials, roles)

    return dependency


def require_operator():
    """Dependency for mutating endpoints: the configured operator role."""
    return require_roles(get_settings().security.operator_role)


__all__ = ["require_roles", "require_operator", "get_oidc_verifier", "reset_oidc_verifier", "OIDCVerifier"]
