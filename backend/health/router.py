from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from backend.infra.database import ping
from backend.utils.rate_limit import rate_limit_health_info

router = APIRouter(prefix="/health", tags=["Health"])

@router.get("")
def health_root():
    return {"ok": True}

@router.get("/database")
def health_database():
    ok = ping()
    return JSONResponse({"ok": ok}, status_code=200 if ok else 503)

@router.get("/rate-limit")
def health_rate_limit(request: Request):
    return rate_limit_health_info(request)
