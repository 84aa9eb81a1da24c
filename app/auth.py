"""Bearer JWT and API-key auth middleware."""

from __future__ import annotations

import hmac
import logging
import os
import time
from typing import Any, Dict, Optional

import httpx
from jose import jwt
from jose.exceptions import JWTError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger("agentc2.auth")

_JWKS_CACHE: Dict[str, Any] = {"keys": None, "fetched_at": 0.0, "ttl": 600.0}
PUBLIC_PATHS = {"/health", "/embed/verify"}


def auth_disabled() -> bool:
    return os.getenv("AGENTC2_DISABLE_AUTH", "").strip().lower() in ("1", "true", "yes")


def _auth_error(code: str, message: str, path: str, detail: dict | None = None) -> JSONResponse:
    return JSONResponse(
        {
            "ok": False,
            "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
            "warnings": [],
        },
        status_code=401,
    )


def _fetch_jwks(jwks_url: str, force: bool = False) -> dict:
    now = time.time()
    if not force and _JWKS_CACHE["keys"] and now - _JWKS_CACHE["fetched_at"] < _JWKS_CACHE["ttl"]:
        return _JWKS_CACHE["keys"]
    resp = httpx.get(jwks_url, timeout=10.0)
    resp.raise_for_status()
    data = resp.json()
    _JWKS_CACHE["keys"] = data
    _JWKS_CACHE["fetched_at"] = now
    return data


def _find_key(jwks: dict, kid: str | None) -> dict | None:
    for jwk in jwks.get("keys", []):
        if jwk.get("kid") == kid:
            return jwk
    return None


def _get_bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.split(" ", 1)[1].strip() or None


def verify_jwt(token: str, jwks_url: str, issuer: str, audience: Optional[str]) -> dict:
    headers = jwt.get_unverified_header(token)
    kid = headers.get("kid")
    key = _find_key(_fetch_jwks(jwks_url), kid)
    if key is None:
        # rotated keys: refetch once before failing
        key = _find_key(_fetch_jwks(jwks_url, force=True), kid)
    if key is None:
        raise JWTError("Unknown kid")
    options = {"verify_aud": audience is not None}
    return jwt.decode(
        token,
        key,
        algorithms=[headers.get("alg", "RS256")],
        issuer=issuer,
        audience=audience,
        options=options,
    )


def _api_key_matches(candidate: str) -> bool:
    expected = os.getenv("AGENTC2_API_KEY", "").strip()
    if not expected or not candidate:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


class AuthMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, supabase_url: str, audience: Optional[str] = None) -> None:
        super().__init__(app)
        base = supabase_url.rstrip("/")
        self._audience = audience
        self._jwks_url = f"{base}/auth/v1/.well-known/jwks.json"
        self._issuer = f"{base}/auth/v1"

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        if auth_disabled() or request.method == "OPTIONS" or request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        api_key = request.headers.get("X-API-Key", "").strip()
        if api_key:
            if not _api_key_matches(api_key):
                logger.warning("auth_invalid_api_key path=%s", request.url.path)
                return _auth_error("AUTH_INVALID_API_KEY", "Invalid API key", "X-API-Key")
            org_slug = request.headers.get("X-Organization-Slug", "").strip()
            if not org_slug:
                return _auth_error(
                    "AUTH_ORG_REQUIRED",
                    "X-Organization-Slug is required with an API key",
                    "X-Organization-Slug",
                )
            request.state.user = {"id": "api-key", "email": None, "role": "service", "api_key": True, "org_slug": org_slug}
            request.state.auth_ms = (time.perf_counter() - start) * 1000
            return await call_next(request)

        token = _get_bearer_token(request)
        if not token:
            logger.warning("auth_missing_token path=%s", request.url.path)
            return _auth_error("AUTH_MISSING_TOKEN", "Missing bearer token", "Authorization")

        try:
            claims = verify_jwt(token, self._jwks_url, self._issuer, self._audience)
        except (JWTError, httpx.HTTPError) as exc:
            logger.warning("auth_invalid_token path=%s issuer=%s error=%s", request.url.path, self._issuer, exc)
            return _auth_error("AUTH_INVALID_TOKEN", "Invalid bearer token", "Authorization", {"error": str(exc)})

        request.state.user = {
            "id": claims.get("sub"),
            "email": claims.get("email"),
            "role": claims.get("role"),
            "claims": claims,
        }
        request.state.auth_ms = (time.perf_counter() - start) * 1000
        return await call_next(request)
