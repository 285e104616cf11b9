"""
ASGI entrypoint: expose `app` for process managers / deployments.

- En production, un process manager (ex: gunicorn/uvicorn-workers) importe `booking_backend.asgi:app`.
- Toute la configuration FastAPI est centralisée dans booking_backend.app_setup, ce fichier n'expose que `app`.
"""

from booking_backend.app import app

if __name__ == "__main__":
    import os
    import uvicorn
    uvicorn.run(
        "booking_backend.asgi:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=True,     # rechargement automatique en dev
    )
