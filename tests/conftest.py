import os
import pytest
from decimal import Decimal
from typing import Any, Dict, Generator, Optional
from fastapi.testclient import TestClient

# Pas de tâche de fond pendant les tests: l'expiration est déclenchée explicitement
os.environ.setdefault("DISABLE_EXPIRY_SWEEPER", "1")

from shopease.app_setup.factory import create_app
from shopease.infra import database
from shopease.inventory.models import PRODUCT_ACTIVE, Product
from shopease.utils.rate_limit import MemoryBackend, RateLimiter
from shopease.utils.security import get_current_user, get_optional_user

# Budgets larges: seuls les tests de rate limit construisent un limiteur strict
RELAXED_BUDGETS = {
    "orders": (1000, 60),
    "polling": (1000, 60),
    "auth": (1000, 900),
    "general": (10000, 60),
}

TEST_USER: Dict[str, Any] = {
    "id": "test-user",
    "email": "test@example.com",
    "role": "user",
    "metadata": {"full_name": "Test User"},
    "token": "fake-token",
}
TEST_ADMIN: Dict[str, Any] = {
    "id": "admin-user-id",
    "email": "admin@example.com",
    "role": "admin",
    "metadata": {"role": "admin"},
    "token": "fake-admin-token",
}

# Marquage automatique selon le dossier
def pytest_collection_modifyitems(config, items):
    for item in items:
        nodeid = item.nodeid.replace("\\", "/")
        if "/tests/unit/" in nodeid or nodeid.startswith("tests/unit/"):
            item.add_marker(pytest.mark.unit)
        elif "/tests/integration/" in nodeid or nodeid.startswith("tests/integration/"):
            item.add_marker(pytest.mark.integration)
        elif "/tests/functional/" in nodeid or nodeid.startswith("tests/functional/"):
            item.add_marker(pytest.mark.functional)

# --- Base de données: un fichier SQLite neuf par test ---

@pytest.fixture()
def engine(tmp_path):
    eng = database.configure(f"sqlite:///{tmp_path / 'shopease-test.db'}")
    database.create_all()
    yield eng
    eng.dispose()

@pytest.fixture()
def db_factory(engine):
    return database.get_sessionmaker()

@pytest.fixture()
def db(db_factory):
    session = db_factory()
    try:
        yield session
    finally:
        session.close()

@pytest.fixture()
def make_product(db_factory):
    """Insère un produit et retourne son id."""
    def _make(name: str = "Produit", price: str = "10.00", stock: int = 10,
              status: str = PRODUCT_ACTIVE, images: Optional[str] = None) -> int:
        with db_factory() as s, s.begin():
            product = Product(name=name, price=Decimal(price), stock=stock, status=status, images=images)
            s.add(product)
            s.flush()
            return product.id
    return _make

@pytest.fixture()
def stock_of(db_factory):
    """Lit le stock courant d'un produit (nouvelle session, donc valeur commitée)."""
    def _read(product_id: int) -> int:
        with db_factory() as s:
            return s.get(Product, product_id).stock
    return _read

@pytest.fixture()
def order_payload():
    def _payload(items, payment_method: str = "Cash on Delivery", declared_total=None, **overrides) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "customerName": "Sok Dara",
            "customerPhone": "012345678",
            "customerAddress": "12 Street 310",
            "customerCity": "Phnom Penh",
            "customerDistrict": "Chamkarmon",
            "paymentMethod": payment_method,
            "items": items,
        }
        if declared_total is not None:
            body["declaredTotal"] = declared_total
        body.update(overrides)
        return body
    return _payload

# --- Application ---

@pytest.fixture()
def rate_limiter():
    return RateLimiter(MemoryBackend(), budgets=RELAXED_BUDGETS)

@pytest.fixture()
def app(engine, rate_limiter):
    application = create_app()
    # Base déjà configurée par la fixture engine; limiteur isolé par test
    application.state.database_ready = True
    application.state.rate_limiter = rate_limiter
    return application

@pytest.fixture()
def client(app) -> Generator[TestClient, None, None]:
    with TestClient(app) as c:
        yield c

@pytest.fixture()
def as_user(app):
    app.dependency_overrides[get_current_user] = lambda: TEST_USER
    app.dependency_overrides[get_optional_user] = lambda: TEST_USER
    yield TEST_USER
    app.dependency_overrides.pop(get_current_user, None)
    app.dependency_overrides.pop(get_optional_user, None)

@pytest.fixture()
def as_admin(app):
    app.dependency_overrides[get_current_user] = lambda: TEST_ADMIN
    yield TEST_ADMIN
    app.dependency_overrides.pop(get_current_user, None)
