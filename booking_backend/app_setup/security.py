from fastapi import FastAPI
from booking_backend.config import SUPABASE_URL, COOKIE_SECURE


def register_security_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def security_headers(request, call_next):
        response = await call_next(request)

        # En-têtes de sécurité
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        if COOKIE_SECURE:
            response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains")

        # API JSON + docs Swagger uniquement
        swagger_cdns = ["https://cdn.jsdelivr.net"]
        connect = ["'self'"] + ([SUPABASE_URL] if SUPABASE_URL else [])
        response.headers["Content-Security-Policy"] = (
            "default-src 'self'; object-src 'none'; frame-ancestors 'none'; "
            "img-src 'self' data: https://fastapi.tiangolo.com; "
            f"style-src 'self' 'unsafe-inline' {' '.join(swagger_cdns)}; "
            f"script-src 'self' 'unsafe-inline' {' '.join(swagger_cdns)}; "
            f"connect-src {' '.join(connect)}"
        )
        # Statuts de paiement: toujours relus, jamais servis depuis un cache
        if request.url.path.startswith("/api/v1/payments"):
            response.headers["Cache-Control"] = "no-store"
        return response
