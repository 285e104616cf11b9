"""
Factory d'application utilisée par les entrypoints (booking_backend.asgi, tests).
Ordonne les étapes d'initialisation de manière lisible et testable.
"""
import logging
import os

from fastapi import FastAPI
from .lifespan import lifespan
from .middlewares import register_basic_middlewares
from .security import register_security_middleware
from .exceptions import register_exception_handlers
from .routers import register_routers
from booking_backend.utils.csrf import register_csrf_middleware


def configure_logging() -> None:
    """Format unique pour les logs applicatifs (niveau via LOG_LEVEL)."""
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "info").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app() -> FastAPI:
    """
    Construit l'app FastAPI avec le lifespan et enregistre:
      - middlewares de base, CSRF, en-têtes de sécurité
      - gestionnaires d'exceptions (erreurs de paiement typées, HTTPException)
      - routers (payments, health)
    """
    configure_logging()
    app = FastAPI(title="Booking Payments API", lifespan=lifespan)
    register_basic_middlewares(app)
    register_csrf_middleware(app)
    register_security_middleware(app)
    register_exception_handlers(app)
    register_routers(app)
    return app
