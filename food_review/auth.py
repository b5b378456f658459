from __future__ import annotations

import hmac
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt

from .config import get_settings


_http = httpx.Client(timeout=5)
_bearer = HTTPBearer(auto_error=False)

SYSTEM_CRON_ACTOR = "system-cron"


class JWKSCache:
    def __init__(self) -> None:
        self._jwks: Optional[Dict[str, Any]] = None
        self._exp_ts: float = 0.0

    def get(self, url: str) -> Dict[str, Any]:
        now = time.time()
        if self._jwks is None or now >= self._exp_ts:
            resp = _http.get(url)
            resp.raise_for_status()
            self._jwks = resp.json()
            # cache for 10 minutes
            self._exp_ts = now + 600
        return self._jwks  # type: ignore[return-value]


_jwks_cache = JWKSCache()


def _verify_jwt(token: str) -> Dict[str, Any]:
    settings = get_settings()
    if settings.auth_disable_verification:
        # Dev mode: do not verify signature. Not for production.
        try:
            return jwt.get_unverified_claims(token)
        except Exception as e:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Invalid token: {e}")

    if not settings.clerk_issuer:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Auth issuer not configured")

    jwks_url = settings.clerk_jwks_url or settings.clerk_issuer.rstrip("/") + "/.well-known/jwks.json"
    jwks = _jwks_cache.get(jwks_url)

    try:
        unverified = jwt.get_unverified_header(token)
        kid = unverified.get("kid")
        key = next((k for k in jwks.get("keys", []) if k.get("kid") == kid), None)
        if not key:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Signing key not found")
        claims = jwt.decode(
            token,
            key,
            algorithms=[key.get("alg", "RS256")],
            audience=settings.clerk_audience,
            issuer=settings.clerk_issuer,
        )
        return claims
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"JWT verification failed: {e}")


def get_current_principal(creds: Optional[HTTPAuthorizationCredentials] = Depends(_bearer)) -> Dict[str, Any]:
    if not creds or not creds.scheme.lower() == "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    token = creds.credentials
    claims = _verify_jwt(token)
    # normalize common fields
    principal = {
        "sub": claims.get("sub"),
        "email": claims.get("email") or claims.get("email_address"),
        "claims": claims,
    }
    if not principal["sub"]:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token: no sub")
    return principal



def require_admin(principal: Dict[str, Any]) -> None:
    s = get_settings()
    email = principal.get("email")
    if s.admin_emails:
        if not email or email.lower() not in [e.lower() for e in s.admin_emails]:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin only")
    else:
        # If no admin list configured and not dev, block
        if s.environment not in ("dev", "development"):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin not configured")


@dataclass(frozen=True)
class ReviewActor:
    """Who triggered a review run; `run_by` is what gets recorded on the run."""

    run_by: str
    email: Optional[str] = None
    via_cron: bool = False


def _cron_secret_matches(provided: Optional[str]) -> bool:
    expected = get_settings().cron_secret
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def require_review_actor(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    cron_secret: Optional[str] = Header(default=None, alias="X-Cron-Secret"),
) -> ReviewActor:
    """Admin session or the shared cron secret."""
    if _cron_secret_matches(cron_secret):
        return ReviewActor(run_by=SYSTEM_CRON_ACTOR, via_cron=True)
    principal = get_current_principal(creds)
    require_admin(principal)
    email = principal.get("email")
    return ReviewActor(run_by=email or principal["sub"], email=email)
