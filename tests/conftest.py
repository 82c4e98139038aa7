import os

# Environnement de test fixé avant l'import de backend.config
os.environ["DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS"] = "1"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["DB_CREATE_ALL"] = "false"
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["GATEWAY_MERCHANT_ID"] = ""
os.environ["GATEWAY_API_KEY"] = ""
os.environ["GATEWAY_SECRET_KEY"] = ""
os.environ["TAX_RATE"] = "0"
os.environ["BASE_URL"] = "http://shop.test"

import pytest
from decimal import Decimal
from typing import Any, Dict, Generator, List, Optional
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from backend.app import app as fastapi_app
from backend.infra import database
from backend.models import (
    Base,
    CartItem,
    DeliveryType,
    PaymentMethod,
    Product,
    ProductPlan,
    StockItem,
    new_id,
)
from backend.payments.providers import CallbackOutcome, PaymentProvider, SessionResult
from backend.utils.security import require_admin, require_user

BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)

# Marquage automatique selon le dossier
def pytest_collection_modifyitems(config, items):
    for item in items:
        nodeid = item.nodeid.replace("\\", "/")
        if "tests/unit/" in nodeid:
            item.add_marker(pytest.mark.unit)
        elif "tests/integration/" in nodeid:
            item.add_marker(pytest.mark.integration)

# Base sqlite en mémoire, recréée pour chaque test
@pytest.fixture(autouse=True)
def _database():
    engine = database.init_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)

@pytest.fixture(scope="session")
def app():
    return fastapi_app

@pytest.fixture()
def client(app) -> Generator[TestClient, None, None]:
    with TestClient(app) as c:
        yield c

@pytest.fixture
def fake_user() -> Dict[str, Any]:
    return {
        "id": "test-user",
        "email": "test@example.com",
        "role": "user",
        "metadata": {"full_name": "Test User"},
        "token": "fake-token",
    }

@pytest.fixture
def admin_user() -> Dict[str, Any]:
    return {"id": "admin-user-id", "email": "admin@example.com", "role": "admin", "metadata": {"role": "admin"}}

# Simuler un utilisateur authentifié pour les endpoints protégés
@pytest.fixture(autouse=True)
def _override_require_user(app, fake_user):
    app.dependency_overrides[require_user] = lambda: fake_user
    try:
        yield
    finally:
        app.dependency_overrides.pop(require_user, None)

@pytest.fixture
def authenticated_admin_client(app, client, admin_user):
    app.dependency_overrides[require_admin] = lambda: admin_user
    app.dependency_overrides[require_user] = lambda: admin_user
    yield client
    app.dependency_overrides.pop(require_admin, None)

# --- Données de test ---

@pytest.fixture
def make_plan():
    """Crée produit + plan (+ unités de stock) et retourne l'id du plan."""
    def _make(
        name: str = "Streamly",
        plan_type: str = "PREMIUM",
        price: str = "10.00",
        delivery_type: DeliveryType = DeliveryType.AUTOMATIC,
        stock: int = 0,
        currency: str = "USD",
        available: bool = True,
        duration: int = 30,
    ) -> str:
        with database.session_scope() as session:
            product = Product(name=name, slug=f"{name.lower()}-{new_id()[:8]}")
            session.add(product)
            session.flush()
            plan = ProductPlan(
                product_id=product.id,
                name=f"{name} {plan_type}",
                plan_type=plan_type,
                price=Decimal(price),
                currency=currency,
                duration=duration,
                billing_period="MONTHLY",
                delivery_type=delivery_type,
                is_available=available,
            )
            session.add(plan)
            session.flush()
            for i in range(stock):
                session.add(StockItem(plan_id=plan.id, content=f"{name.lower()}-account-{i}"))
            return plan.id
    return _make

@pytest.fixture
def add_to_cart():
    def _add(user_id: str, plan_id: str, quantity: int = 1) -> None:
        with database.session_scope() as session:
            session.add(CartItem(user_id=user_id, plan_id=plan_id, quantity=quantity))
    return _add

# --- Fournisseur de paiement factice ---

class FakeProvider(PaymentProvider):
    """
    Fournisseur en mémoire: sessions acceptées par défaut, résultats de callback
    pilotés par le test via `results[token] = {...}`.
    """
    method = PaymentMethod.PROVIDER_A
    slug = "provider-a"
    token_fields = ("token", "session_id")

    def __init__(self):
        self.configured = True
        self.results: Dict[str, Dict[str, Any]] = {}
        self.sessions: List[Any] = []
        self.next_result: Optional[SessionResult] = None
        self.create_error: Optional[Exception] = None
        self.retrieve_calls: List[str] = []

    def is_configured(self) -> bool:
        return self.configured

    def create_session(self, request) -> SessionResult:
        self.sessions.append(request)
        if self.create_error is not None:
            raise self.create_error
        if self.next_result is not None:
            return self.next_result
        token = f"tok-{request.payment_id}"
        return SessionResult(
            success=True,
            provider_payment_id=f"pp-{request.payment_id}",
            payment_url=f"https://pay.example/checkout/{token}",
            token=token,
        )

    def retrieve_result(self, token: str) -> Dict[str, Any]:
        self.retrieve_calls.append(token)
        return dict(self.results.get(token) or {"token": token, "status": "unknown"})

    def map_callback(self, raw: Dict[str, Any]) -> CallbackOutcome:
        status = str(raw.get("status") or "").upper()
        if status not in ("COMPLETED", "FAILED", "PROCESSING"):
            status = "FAILED"
        return CallbackOutcome(
            status=status,
            provider_status=str(raw.get("status") or ""),
            conversation_id=raw.get("conversationId"),
            provider_payment_id=raw.get("paymentId"),
            token=raw.get("token"),
            failure_reason="Card declined" if status == "FAILED" else None,
            raw=raw,
        )

@pytest.fixture
def fake_provider(monkeypatch) -> FakeProvider:
    provider = FakeProvider()
    monkeypatch.setattr("backend.payments.providers.get_provider", lambda method: provider)
    return provider

@pytest.fixture
def place_order(fake_provider):
    """
    Crée une commande fournisseur (session ouverte via le fournisseur factice)
    et retourne (order_id, payment_id, token).
    """
    from sqlalchemy import select
    from backend.models import Payment
    from backend.orders import service as orders_service

    def _place(user: Dict[str, Any], lines: Dict[str, int], method: PaymentMethod = PaymentMethod.PROVIDER_A):
        result = orders_service.create_order(
            user, [{"planId": plan_id, "quantity": qty} for plan_id, qty in lines.items()], method
        )
        with database.session_scope() as session:
            payment = session.scalars(select(Payment).where(Payment.order_id == result["orderId"])).first()
            payment_id = payment.id
            token = (payment.provider_data or {}).get("token")
        return result["orderId"], payment_id, token
    return _place

@pytest.fixture
def settle(fake_provider):
    """Programme le résultat renvoyé par le fournisseur pour un token."""
    def _settle(token: str, status: str, payment_id: Optional[str] = None) -> None:
        fake_provider.results[token] = {"status": status, "token": token, "conversationId": payment_id}
    return _settle

@pytest.fixture
def browser_headers() -> Dict[str, str]:
    return {"User-Agent": BROWSER_UA, "Accept": "text/html"}
