import mongomock
import pytest
from fastapi.testclient import TestClient

from config import Settings
from database import get_db, get_optional_db
from email_service import EmailService
from errors import EmailDeliveryError
from main import app, get_email_service
from models import Products, Sessions, Users, pwd_context

# full-strength bcrypt makes the suite crawl
pwd_context.update(bcrypt__rounds=4)

ADDRESS = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "email": "ada@mailbox.org",
    "phone": "+44 20 7946 0000",
    "address": "12 Analytical Row",
    "city": "London",
    "state": "LDN",
    "zip_code": "N1 9GU",
    "country": "UK",
}


class RecordingTransport:
    name = "recording"

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, message):
        if self.fail:
            raise EmailDeliveryError("transport down")
        self.sent.append(message)
        return f"rec-{len(self.sent)}"

    def subjects(self):
        return [m["subject"] for m in self.sent]


@pytest.fixture
def db():
    return mongomock.MongoClient()["storefront_test"]


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def mailer(transport):
    return EmailService(Settings(frontend_url="http://shop.test"), transport=transport)


@pytest.fixture
def client(db, mailer):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_optional_db] = lambda: None
    app.dependency_overrides[get_email_service] = lambda: mailer
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(db, email, password="secret123", role="customer", name="Test User"):
    user = Users.create(db, {"name": name, "email": email, "password": password, "role": role})
    token = Sessions.create(db, user["_id"])
    return user, {"Authorization": f"Bearer {token}"}


@pytest.fixture
def customer(db):
    return make_user(db, "alice@shopper.io", name="Alice")


@pytest.fixture
def other_customer(db):
    return make_user(db, "bob@shopper.io", name="Bob")


@pytest.fixture
def admin(db):
    return make_user(db, "root@storefront.io", role="admin", name="Admin")


def make_product(db, **overrides):
    data = {
        "name": "Trail Runner",
        "description": "Lightweight trail running shoe",
        "price": 50.0,
        "category": "shoes",
        "brand": "Stride",
        "images": ["https://cdn.shop.io/trail.jpg"],
        "stock": 5,
    }
    data.update(overrides)
    return Products.create(db, data)


def order_payload(*lines, **extra):
    payload = {
        "items": [{"product_id": str(pid), "quantity": qty} for pid, qty in lines],
        "shipping_address": ADDRESS,
        "payment_method": "card",
    }
    payload.update(extra)
    return payload
