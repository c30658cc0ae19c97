import logging
import threading
import time
from typing import Optional, Sequence

import requests
from fastapi.responses import RedirectResponse
from jose import JWTError, jwt
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from auth import AUTH_COOKIE

logger = logging.getLogger(__name__)

JWKS_URL = "https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com"
PROTECTED_PREFIXES = ("/user_dashboard", "/course-upload", "/wallet", "/admin-dashboard", "/admin")
ADMIN_PREFIXES = ("/admin-dashboard", "/admin")


class KeySet:
    """The provider's published signing keys, refetched after ``ttl`` seconds."""

    def __init__(self, url: str = JWKS_URL, ttl: int = 3600):
        self.url = url
        self.ttl = ttl
        self._keys = None
        self._fetched_at = 0.0
        self._lock = threading.Lock()

    def get(self) -> dict:
        with self._lock:
            if self._keys is None or time.monotonic() - self._fetched_at > self.ttl:
                response = requests.get(self.url, timeout=10)
                response.raise_for_status()
                self._keys = response.json()
                self._fetched_at = time.monotonic()
            return self._keys


class TokenVerifier:
    def __init__(self, project_id: str, keys: Optional[KeySet] = None):
        self.project_id = project_id
        self.keys = keys or KeySet()

    def __call__(self, token: str) -> Optional[dict]:
        """Return the token's claims, or None if it does not verify."""
        try:
            return jwt.decode(
                token,
                self.keys.get(),
                algorithms=["RS256"],
                audience=self.project_id,
                issuer=f"https://securetoken.google.com/{self.project_id}",
            )
        except (JWTError, requests.RequestException, ValueError) as exc:
            logger.info("Route guard rejected token: %s", exc)
            return None


def matches(path: str, prefixes: Sequence[str]) -> bool:
    return any(path == p or path.startswith(p + "/") for p in prefixes)


class RouteGuardMiddleware(BaseHTTPMiddleware):
    """Gate page paths on a verified session cookie; admin paths need the admin claim."""

    def __init__(self, app, protected: Sequence[str] = PROTECTED_PREFIXES,
                 admin: Sequence[str] = ADMIN_PREFIXES):
        super().__init__(app)
        self.protected = protected
        self.admin = admin

    async def _claims(self, request) -> Optional[dict]:
        token = request.cookies.get(AUTH_COOKIE)
        if not token:
            return None
        verifier = request.app.state.services.verifier
        return await run_in_threadpool(verifier, token)

    async def dispatch(self, request, call_next):
        path = request.url.path
        home = RedirectResponse(url="/", status_code=307)

        if matches(path, ("/login",)):
            if await self._claims(request) is not None:
                return home
            return await call_next(request)

        if not matches(path, self.protected):
            return await call_next(request)

        claims = await self._claims(request)
        if claims is None:
            return home
        if matches(path, self.admin) and claims.get("admin") is not True:
            logger.info("Non-admin %s redirected away from %s", claims.get("sub"), path)
            return home

        request.state.claims = claims
        return await call_next(request)
