import pytest

from app.lims import create_app
from app.lims.auth import _login_attempts
from app.lims.db import session_scope
from app.lims.models import Base, User
from app.lims.modules.customers.service import create_customer
from app.lims.modules.sample_types.service import create_sample_type
from app.lims.modules.users.service import seed_lab
from app.lims.modules.zoho_sync.zoho_client import clear_token_cache

ADMIN_PASSWORD = "admin-pass-1"

OIL_TESTS = [
    {"parameter": "Density @15C", "method": "ASTM D4052", "unit": "kg/m3", "specMin": "820", "specMax": "845", "tat": 2},
    {"parameter": "Flash Point", "method": "ASTM D93", "unit": "C", "specMin": "55", "tat": 3},
    {"parameter": "Water Content", "method": "ASTM D6304", "unit": "mg/kg", "specMax": "200"},
]


@pytest.fixture(autouse=True)
def _reset_module_state():
    _login_attempts.clear()
    clear_token_cache()
    yield
    _login_attempts.clear()
    clear_token_cache()


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.delenv("CSRF_ENABLED", raising=False)
    monkeypatch.delenv("PUBLIC_BASE_URL", raising=False)
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        seed_lab(s, name="Gulf Fuel Lab", code="GFL", admin_username="admin", admin_password=ADMIN_PASSWORD)
        seed_lab(s, name="Other Lab", code="OTH", admin_username="other", admin_password=ADMIN_PASSWORD)
    return app


def login(client, username: str = "admin", password: str = ADMIN_PASSWORD):
    return client.post("/auth/login", data={"username": username, "password": password}, follow_redirects=False)


@pytest.fixture()
def client(app):
    c = app.test_client()
    r = login(c)
    assert r.status_code == 302
    return c


def get_user(s, username: str = "admin") -> User:
    return s.query(User).filter(User.username == username).one()


@pytest.fixture()
def masters(app):
    """One active customer and one diesel sample type in the first lab; returns their ids."""
    with session_scope(app) as s:
        admin = get_user(s)
        customer = create_customer(s, {"name": "Al Noor Shipping", "email": "ops@alnoor.test"}, user=admin)
        st = create_sample_type(
            s,
            {"name": "Diesel", "specification_standard": "EN 590", "tests": OIL_TESTS},
            user=admin,
        )
        return {"customer_id": customer.id, "sample_type_id": st.id}
