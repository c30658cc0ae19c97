import logging
from typing import Optional, Tuple
from urllib.parse import urlparse

import requests
from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse, RedirectResponse
from firebase_admin import auth as firebase_auth
from pydantic import BaseModel

from errors import Forbidden, InvalidToken, Unauthenticated, UpstreamFailure
from schemas import SessionTokens
from services import Services, get_services

logger = logging.getLogger(__name__)

AUTH_COOKIE = "firebaseAuthToken"
REFRESH_COOKIE = "firebaseAuthRefreshToken"
AUTH_COOKIE_MAX_AGE = 60 * 60
REFRESH_COOKIE_MAX_AGE = 60 * 60 * 24 * 30
SECURE_TOKEN_URL = "https://securetoken.googleapis.com/v1/token"

router = APIRouter()


class Principal(BaseModel):
    uid: str
    email: Optional[str] = None
    name: Optional[str] = None
    is_admin: bool = False


def principal_from_claims(claims: dict) -> Principal:
    # The admin custom claim is the only admin grant.
    return Principal(
        uid=claims.get("uid") or claims["sub"],
        email=claims.get("email"),
        name=claims.get("name"),
        is_admin=claims.get("admin") is True,
    )


class FirebaseAuthProvider:
    def __init__(self, app, api_key: str):
        self.app = app
        self.api_key = api_key

    def verify(self, token: Optional[str]) -> Principal:
        if not token:
            raise Unauthenticated()
        try:
            claims = firebase_auth.verify_id_token(token, app=self.app)
        except (ValueError, firebase_auth.InvalidIdTokenError):
            raise InvalidToken()
        except firebase_auth.CertificateFetchError as exc:
            logger.warning("Could not fetch token signing certificates: %s", exc)
            raise UpstreamFailure()
        return principal_from_claims(claims)

    def bootstrap_admin(self, email: str) -> bool:
        """Grant the admin claim to ``email`` once; returns True if it was granted now."""
        try:
            user = firebase_auth.get_user_by_email(email, app=self.app)
        except firebase_auth.UserNotFoundError:
            logger.warning("Admin bootstrap skipped, no user with email %s", email)
            return False
        claims = dict(user.custom_claims or {})
        if claims.get("admin") is True:
            return False
        claims["admin"] = True
        firebase_auth.set_custom_user_claims(user.uid, claims, app=self.app)
        logger.info("Granted admin claim to %s", user.uid)
        return True

    def refresh(self, refresh_token: str) -> Tuple[str, str]:
        """Exchange a refresh token for a new (id_token, refresh_token) pair."""
        try:
            response = requests.post(
                SECURE_TOKEN_URL,
                params={"key": self.api_key},
                json={"grant_type": "refresh_token", "refresh_token": refresh_token},
                timeout=10,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Token refresh failed: %s", exc)
            raise UpstreamFailure()
        if not isinstance(data, dict) or not data.get("id_token") or not data.get("refresh_token"):
            logger.warning("Token refresh returned an unexpected payload")
            raise UpstreamFailure()
        return data["id_token"], data["refresh_token"]


# ---------- Dependencies ----------

def request_token(request: Request, authorization: Optional[str] = Header(default=None)) -> Optional[str]:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip() or None
    return request.cookies.get(AUTH_COOKIE)


def get_current_user(token: Optional[str] = Depends(request_token),
                     services: Services = Depends(get_services)) -> Principal:
    return services.auth.verify(token)


def require_admin(user: Principal = Depends(get_current_user)) -> Principal:
    if not user.is_admin:
        raise Forbidden()
    return user


def resolve_principal(services: Services, body_token: Optional[str], header_token: Optional[str]) -> Principal:
    """Actions may carry the token in the body; fall back to header/cookie."""
    return services.auth.verify(body_token or header_token)


# ---------- Session cookies ----------

def set_session_cookies(response, token: str, refresh_token: str, secure: bool) -> None:
    response.set_cookie(AUTH_COOKIE, token, max_age=AUTH_COOKIE_MAX_AGE, httponly=True,
                        secure=secure, samesite="lax", path="/")
    response.set_cookie(REFRESH_COOKIE, refresh_token, max_age=REFRESH_COOKIE_MAX_AGE, httponly=True,
                        secure=secure, samesite="lax", path="/")


def is_local_path(path: str) -> bool:
    parsed = urlparse(path)
    return path.startswith("/") and not path.startswith("//") and not parsed.scheme and not parsed.netloc


@router.get("/api/refresh-token")
def refresh_session(request: Request, redirect: Optional[str] = None,
                    services: Services = Depends(get_services)):
    home = RedirectResponse(url="/", status_code=307)
    if not redirect or not is_local_path(redirect):
        return home
    refresh_token = request.cookies.get(REFRESH_COOKIE)
    if not refresh_token:
        return home
    try:
        token, new_refresh_token = services.auth.refresh(refresh_token)
    except UpstreamFailure:
        return home

    logger.info("Session refreshed, redirecting to %s", redirect)
    response = RedirectResponse(url=redirect, status_code=307)
    set_session_cookies(response, token, new_refresh_token, secure=services.settings.production)
    return response


@router.post("/api/session")
def create_session(tokens: SessionTokens, services: Services = Depends(get_services)):
    user = services.auth.verify(tokens.token)
    response = JSONResponse({"success": True, "uid": user.uid, "isAdmin": user.is_admin})
    set_session_cookies(response, tokens.token, tokens.refresh_token, secure=services.settings.production)
    return response


@router.delete("/api/session")
def clear_session():
    response = JSONResponse({"success": True})
    response.delete_cookie(AUTH_COOKIE, path="/")
    response.delete_cookie(REFRESH_COOKIE, path="/")
    return response


@router.get("/me")
def me(user: Principal = Depends(get_current_user)):
    return {"uid": user.uid, "email": user.email, "isAdmin": user.is_admin}
