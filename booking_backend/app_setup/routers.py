"""
Registre central des routers.
- API v1: payments (sessions, webhook, statuts)
- Health: health_router
"""
from fastapi import FastAPI
from booking_backend.payments import views as payments_views
from booking_backend.health.router import router as health_router


def register_routers(app: FastAPI) -> None:
    app.include_router(payments_views.router)
    app.include_router(health_router)
