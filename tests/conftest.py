"""
Shared fixtures: an in-memory MongoDB and a TestClient wired to it.
"""
import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from database import ensure_indexes, get_db, now
from main import app
from security import create_access_token, hash_password


@pytest.fixture
def db():
    database = mongomock.MongoClient()["kakamalem_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make_user(email="buyer@example.com", roles=("customer",), password="password123", **extra):
        doc = {
            "email": email,
            "first_name": "Test",
            "last_name": "User",
            "phone": None,
            "password_hash": hash_password(password),
            "roles": list(roles),
            "addresses": [],
            "cart": [],
            "recently_viewed": [],
            "created_at": now(),
        }
        doc.update(extra)
        doc["_id"] = db["user"].insert_one(doc).inserted_id
        return doc
    return _make_user


def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user['_id'])})}"}


@pytest.fixture
def make_storefront(db):
    def _make_storefront(seller, slug="my-shop", status="active"):
        doc = {
            "name": slug.replace("-", " ").title(),
            "slug": slug,
            "description": "",
            "contact_phone": "",
            "seller": str(seller["_id"]),
            "status": status,
            "analytics": {"total_views": 0, "unique_visitors": 0, "viewed_by_users": []},
            "created_at": now(),
        }
        doc["_id"] = db["storefront"].insert_one(doc).inserted_id
        return doc
    return _make_storefront


@pytest.fixture
def make_product(db):
    def _make_product(name="Saffron Tea", price=100.0, seller=None, stores=(), quantity=10, **extra):
        doc = {
            "name": name,
            "slug": name.lower().replace(" ", "-") + "-" + str(ObjectId())[-6:],
            "price": price,
            "sale_price": None,
            "currency": "AF",
            "quantity": quantity,
            "track_quantity": True,
            "allow_backorders": False,
            "status": "published",
            "seller": str(seller["_id"]) if seller else None,
            "stores": [str(s["_id"]) for s in stores],
            "categories": [],
            "display_order": 0,
            "total_sold": 0,
            "analytics": {"view_count": 0, "unique_view_count": 0, "add_to_cart_count": 0, "wishlist_count": 0},
            "created_at": now(),
        }
        doc.update(extra)
        doc["_id"] = db["product"].insert_one(doc).inserted_id
        return doc
    return _make_product


SHIPPING_ADDRESS = {
    "firstName": "Ahmad",
    "lastName": "Karimi",
    "address1": "Street 4",
    "city": "Kabul",
    "country": "Afghanistan",
    "phone": "+93 700 000 000",
    "coordinates": {"latitude": 34.5, "longitude": 69.2},
}
