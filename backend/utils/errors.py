"""
Taxonomie d'erreurs métier.
Chaque erreur porte un code stable (branchement côté UI) et un statut HTTP;
le rendu JSON est fait par backend.app_setup.exceptions.
"""
from typing import Any, Dict, List, Optional


class AppError(Exception):
    code = "INTERNAL_SERVER_ERROR"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, extra: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.extra = extra or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"detail": self.message, "code": self.code}
        body.update(self.extra)
        return body


# --- Erreurs corrigeables par le client (aucune mutation effectuée) ---

class ValidationFailed(AppError):
    code = "BAD_REQUEST"
    status_code = 400


class BusinessRuleViolation(AppError):
    code = "BAD_REQUEST"
    status_code = 400


class StockValidationError(BusinessRuleViolation):
    def __init__(self, message: str, stock_errors: List[Dict[str, Any]]):
        super().__init__(message, extra={"stockErrors": stock_errors})
        self.stock_errors = stock_errors


class Forbidden(AppError):
    code = "FORBIDDEN"
    status_code = 403


class NotFound(AppError):
    code = "NOT_FOUND"
    status_code = 404


class ConflictError(AppError):
    code = "CONFLICT"
    status_code = 409


# --- Dépendances externes (jamais exposées brutes à l'utilisateur) ---

class ExternalServiceError(AppError):
    code = "EXTERNAL_SERVICE_ERROR"
    status_code = 502


class PaymentConfigurationError(ExternalServiceError):
    code = "CONFIGURATION_ERROR"
    status_code = 500

    def __init__(self, message: str = "Payment configuration error", **kwargs: Any):
        super().__init__(message, **kwargs)


class ProviderUnavailable(ExternalServiceError):
    code = "PROVIDER_UNAVAILABLE"


class DatabaseUnavailable(AppError):
    code = "DATABASE_ERROR"
    status_code = 503


class InternalError(AppError):
    pass
