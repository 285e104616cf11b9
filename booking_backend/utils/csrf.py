# module booking_backend.utils.csrf
"""
Protection CSRF (double-submit cookie) pour les navigateurs authentifiés par le cookie sb_access.
- Le webhook Stripe est exempté: il est authentifié par sa signature, sans cookie.
- Un appel portant un Bearer n'est pas exposé au CSRF (le navigateur ne l'ajoute pas seul).
"""
import secrets
from fastapi import FastAPI, Request
from fastapi.responses import Response, JSONResponse

from booking_backend.config import COOKIE_SECURE
from booking_backend.utils.security import COOKIE_NAME

CSRF_COOKIE_NAME = "csrf_token"
CSRF_HEADER_NAME = "X-CSRF-Token"
CSRF_EXEMPT_PATHS = frozenset({"/api/v1/payments/webhook"})
_MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def get_or_create_csrf_token(request: Request) -> str:
    return request.cookies.get(CSRF_COOKIE_NAME) or secrets.token_urlsafe(32)


def _needs_check(request: Request) -> bool:
    if request.method.upper() not in _MUTATING_METHODS:
        return False
    if (request.url.path.rstrip("/") or "/") in CSRF_EXEMPT_PATHS:
        return False
    if request.headers.get("Authorization", "").startswith("Bearer "):
        return False
    return bool(request.cookies.get(COOKIE_NAME))


def _token_matches(request: Request) -> bool:
    cookie_token = request.cookies.get(CSRF_COOKIE_NAME, "")
    header_token = request.headers.get(CSRF_HEADER_NAME, "")
    return bool(cookie_token and header_token) and secrets.compare_digest(header_token, cookie_token)


def _set_csrf_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=CSRF_COOKIE_NAME,
        value=token,
        httponly=False,  # lu par le front pour renvoyer l'en-tête X-CSRF-Token
        secure=COOKIE_SECURE,
        samesite="Lax",
        max_age=60 * 60,
        path="/",
    )


def register_csrf_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def csrf_protection(request: Request, call_next):
        if _needs_check(request) and not _token_matches(request):
            return JSONResponse(status_code=403, content={"detail": "CSRF verification failed"})
        response = await call_next(request)
        if not request.cookies.get(CSRF_COOKIE_NAME):
            _set_csrf_cookie(response, get_or_create_csrf_token(request))
        return response
