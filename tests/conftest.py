import os
import tempfile
from itertools import count
from types import SimpleNamespace

os.environ["BCRYPT_ROUNDS"] = "4"
os.environ.pop("DATABASE_URL", None)
os.environ.pop("DATABASE_NAME", None)
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="ishtop-uploads-"))

import pytest
from fastapi.testclient import TestClient

from auth import AuthService
from chats import ChatService
from events import PushTransport
from main import create_app
from notifications import NotificationService
from orders import OrderService
from schemas import OrderCreate, UserRegister
from store import MemoryStore
from users import UserService

_seq = count(1)


@pytest.fixture
def store():
    s = MemoryStore()
    s.ensure_indexes()
    return s


@pytest.fixture
def transport():
    return PushTransport()


@pytest.fixture
def services(store, transport, tmp_path):
    notifications = NotificationService(store, transport)
    return SimpleNamespace(
        store=store,
        auth=AuthService(store),
        notifications=notifications,
        users=UserService(store, notifications, str(tmp_path)),
        orders=OrderService(store, notifications),
        chats=ChatService(store, notifications, transport),
    )


@pytest.fixture
def make_user(services):
    def _make(role="CUSTOMER", **extra):
        n = next(_seq)
        body = UserRegister(
            name=extra.pop("name", f"User{n}"),
            phone=f"+99890{n:07d}",
            email=f"user{n}@mail.uz",
            password="secret123",
            role="CUSTOMER" if role == "ADMIN" else role,
            **extra,
        )
        _, user = services.auth.register(body)
        if role == "ADMIN":
            user = services.store.update("user", user["id"], set={"role": "ADMIN"})
        return user
    return _make


@pytest.fixture
def make_order(services, make_user):
    def _make(customer=None, price=50_000, category="plumbing", **extra):
        customer = customer or make_user("CUSTOMER")
        body = OrderCreate(title=extra.pop("title", "Fix the sink"), category=category, price=price, **extra)
        return services.orders.create_order(customer, body)
    return _make


@pytest.fixture
def app(store, transport, tmp_path):
    return create_app(store=store, transport=transport, upload_dir=str(tmp_path / "uploads"))


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def signup(client, store):
    """Register over HTTP; returns (user, auth headers)."""
    def _signup(role="CUSTOMER", **extra):
        n = next(_seq)
        payload = {
            "name": extra.pop("name", f"Api{n}"),
            "phone": f"+99891{n:07d}",
            "email": f"api{n}@mail.uz",
            "password": "secret123",
            "role": "CUSTOMER" if role == "ADMIN" else role,
            **extra,
        }
        resp = client.post("/auth/register", json=payload)
        assert resp.status_code == 200, resp.text
        data = resp.json()
        user = data["user"]
        if role == "ADMIN":
            store.update("user", user["id"], set={"role": "ADMIN"})
            user["role"] = "ADMIN"
        return user, {"Authorization": f"Bearer {data['token']}"}
    return _signup
