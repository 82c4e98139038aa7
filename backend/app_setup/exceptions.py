"""
Gestionnaires d'exceptions utilisés par la factory.
- AppError (taxonomie métier): JSON {detail, code, ...} avec le statut de l'erreur
- RequestValidationError: 400 BAD_REQUEST avec le détail par champ
- HTTPException 401/403 sur pages HTML (hors /api/*): redirection vers la connexion
"""
import logging
import urllib.parse
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.status import HTTP_303_SEE_OTHER

from backend.config import LOGIN_PAGE_PATH
from backend.utils.errors import AppError

logger = logging.getLogger(__name__)

def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("app error path=%s code=%s", request.url.path, exc.code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg", "")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={"detail": "Invalid request", "code": "BAD_REQUEST", "errors": errors},
        )

    @app.exception_handler(HTTPException)
    async def html_redirect_on_auth_errors(request: Request, exc: HTTPException):
        """
        - Web: redirection avec message vers la page de connexion.
        - API: JSON pour clients programmatiques.
        """
        if exc.status_code in (401, 403):
            accept = (request.headers.get("accept") or "").lower()
            is_api = request.url.path.startswith("/api/")
            if "text/html" in accept and not is_api:
                detail = str(getattr(exc, "detail", "")) or (
                    "Please sign in" if exc.status_code == 401 else "Access denied"
                )
                msg = urllib.parse.quote_plus(detail)
                return RedirectResponse(url=f"{LOGIN_PAGE_PATH}?error={msg}", status_code=HTTP_303_SEE_OTHER)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=getattr(exc, "headers", None))
