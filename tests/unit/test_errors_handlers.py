from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from backend.app_setup.exceptions import register_exception_handlers
from backend.utils.errors import (
    ConflictError,
    DatabaseUnavailable,
    NotFound,
    PaymentConfigurationError,
    StockValidationError,
)


def _make_app():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/api/stock")
    def stock_error():
        raise StockValidationError("Stock validation failed:\nA (B): Out of stock", [{"planId": "p1"}])

    @app.get("/api/conflict")
    def conflict():
        raise ConflictError("Some items are no longer available", extra={"validation": {"valid": False}})

    @app.get("/api/missing")
    def missing():
        raise NotFound("Payment not found", code="PAYMENT_NOT_FOUND")

    @app.get("/api/db")
    def db():
        raise DatabaseUnavailable("Database error")

    @app.get("/page")
    def page():
        raise HTTPException(status_code=401, detail="Please sign in")

    @app.get("/api/private")
    def private():
        raise HTTPException(status_code=401, detail="Not authenticated")

    return app


def test_error_codes_and_status():
    assert StockValidationError("x", []).status_code == 400
    assert PaymentConfigurationError().message == "Payment configuration error"
    assert PaymentConfigurationError().code == "CONFIGURATION_ERROR"
    assert NotFound("x", code="PAYMENT_NOT_FOUND").code == "PAYMENT_NOT_FOUND"
    assert NotFound("y").code == "NOT_FOUND"


def test_app_error_rendered_as_json():
    client = TestClient(_make_app())

    r = client.get("/api/stock")
    assert r.status_code == 400
    assert r.json()["code"] == "BAD_REQUEST"
    assert r.json()["stockErrors"] == [{"planId": "p1"}]

    r = client.get("/api/conflict")
    assert r.status_code == 409
    assert r.json()["validation"] == {"valid": False}

    r = client.get("/api/missing")
    assert r.status_code == 404
    assert r.json() == {"detail": "Payment not found", "code": "PAYMENT_NOT_FOUND"}

    assert client.get("/api/db").status_code == 503


def test_auth_errors_redirect_html_pages_only():
    client = TestClient(_make_app())

    r = client.get("/page", headers={"accept": "text/html"}, follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"].startswith("/auth/signin?error=")

    r = client.get("/api/private", headers={"accept": "text/html"}, follow_redirects=False)
    assert r.status_code == 401
    assert r.json()["detail"] == "Not authenticated"
