"""
Gestionnaires d'exceptions de l'API.
- PaymentError (et sous-classes): rendu JSON {"detail", "code"} avec le status porté par l'erreur.
- HTTPException: JSON {"detail"} (401 auth, 429 rate limit, 403 CSRF).
"""
import logging
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from booking_backend.payments.errors import PaymentError

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(PaymentError)
    async def payment_error_handler(request: Request, exc: PaymentError):
        log = logger.warning if exc.status_code >= 500 else logger.info
        log("%s %s -> %s %s", request.method, request.url.path, exc.status_code, exc.code)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "code": exc.code})

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=exc.headers)
