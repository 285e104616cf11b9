from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from booking_backend.health.service import health_supabase_info, health_payments_info
from booking_backend.utils.rate_limit import rate_limit_health_info

router = APIRouter(prefix="/health", tags=["Health"])

@router.get("")
def health_root():
    return {"ok": True}

@router.get("/supabase")
def health_supabase():
    info = health_supabase_info()
    return JSONResponse(info, status_code=200 if info.get("ok") else 503)

@router.get("/payments")
def health_payments(request: Request):
    info = health_payments_info()
    info["rate_limit"] = rate_limit_health_info(request)
    return info
