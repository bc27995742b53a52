import pytest
from werkzeug.security import generate_password_hash

from app.petmemorial import create_app
from app.petmemorial.auth import _login_attempts
from app.petmemorial.db import session_scope
from app.petmemorial.models import Base, Permission, Role, User

CSRF = "test-csrf-token"

ALL_PERMISSIONS = [
    ("admin.view", "Admin: view status"),
    ("memorials.view", "Memorials: view dashboard"),
    ("memorials.edit", "Memorials: create and edit"),
    ("memorials.delete", "Memorials: delete"),
]


@pytest.fixture(autouse=True)
def _reset_login_attempts():
    # Every test logs in from the same address.
    _login_attempts.clear()
    yield
    _login_attempts.clear()


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("DOCSTORE_BACKEND", "sql")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_LOCAL_ROOT", str(tmp_path / "storage"))
    for k in ("PUBLIC_BASE_URL", "S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        perms = [Permission(key=key, name=name) for key, name in ALL_PERMISSIONS]
        r = Role(key="admin", name="Administrador")
        r.permissions.extend(perms)
        u = User(email="admin@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(r)
        viewer = User(email="viewer@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        s.add_all(perms + [r, u, viewer])

    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def login(client, email="admin@example.com", password="pw"):
    r = client.post("/auth/login", data={"email": email, "password": password}, follow_redirects=False)
    with client.session_transaction() as sess:
        sess["csrf_token"] = CSRF
    return r


@pytest.fixture()
def admin_client(client):
    login(client)
    return client


def memorial_form(**overrides):
    """Valid form post for a memorial with one hosted image."""
    data = {
        "csrf_token": CSRF,
        "name": "Thor",
        "memorialCode": "#001",
        "tutors": "Ana e Paulo",
        "animalType": "Cão",
        "sex": "Macho",
        "breed": "Labrador",
        "birthDate": "2012-03-04",
        "cremationDate": "2024-08-09",
        "tree": "Ipê Amarelo",
        "shortDescription": "Um companheiro leal e feliz.",
        "fullDescription": "Thor adorava correr na praia e dormir no sofá da sala.",
        "images-0-url": "https://cdn.example.com/thor.jpg",
    }
    data.update(overrides)
    return data
