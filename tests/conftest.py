import os

os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["SECRET_KEY"] = "test-secret"
os.environ["ADMIN_SECRET_KEY"] = "let-me-in"
os.environ.pop("DATABASE_URL", None)
os.environ.pop("DATABASE_NAME", None)

import functools
import threading

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
from main import app
from schemas import Address, Category, Franchise, FranchiseAddress, Product, User
from security import create_access_token, get_password_hash

PASSWORD = "secret123"


@pytest.fixture(autouse=True)
def db(monkeypatch):
    mock_db = mongomock.MongoClient().bluemedix_test
    monkeypatch.setattr(database, "db", mock_db)
    database.ensure_indexes()
    return mock_db


@pytest.fixture
def atomic_collections(monkeypatch):
    """Run each mongomock collection call under one lock, as a server applies a single-document write."""
    lock = threading.RLock()

    def locked(method):
        @functools.wraps(method)
        def wrapper(*args, **kwargs):
            with lock:
                return method(*args, **kwargs)

        return wrapper

    for name in ("find_one", "find_one_and_update", "insert_one", "update_one", "delete_one", "count_documents"):
        monkeypatch.setattr(mongomock.Collection, name, locked(getattr(mongomock.Collection, name)))


@pytest.fixture
def client():
    return TestClient(app)


def auth_headers(user: dict) -> dict:
    return {"Authorization": f"Bearer {create_access_token(str(user['_id']))}"}


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role="user", franchise=None, status="Active", email=None):
        counter["n"] += 1
        user = User(
            name=f"{role} {counter['n']}",
            email=email or f"{role.lower()}{counter['n']}@example.com",
            password_hash=get_password_hash(PASSWORD),
            role=role,
            status=status,
            franchise=franchise,
        )
        user_id = database.create_document("user", user)
        return db["user"].find_one({"_id": database.oid(user_id)})

    return _make


@pytest.fixture
def admin(make_user):
    return make_user(role="admin")


@pytest.fixture
def customer(make_user):
    return make_user()


@pytest.fixture
def make_franchise(db):
    counter = {"n": 0}

    def _make(pincode="560001", is_active=True):
        counter["n"] += 1
        franchise = Franchise(
            name=f"Franchise {counter['n']}",
            address=FranchiseAddress(
                street="1 Main Road", city="Bengaluru", state="KA", pincode=pincode, country="India"
            ),
            contactNumber="9999999999",
            email=f"franchise{counter['n']}@example.com",
            isActive=is_active,
        )
        fid = database.create_document("franchise", franchise)
        return db["franchise"].find_one({"_id": database.oid(fid)})

    return _make


@pytest.fixture
def make_manager(db, make_user):
    def _make(franchise):
        manager = make_user(role="orderManager", franchise=franchise["_id"])
        db["franchise"].update_one({"_id": franchise["_id"]}, {"$set": {"orderManager": manager["_id"]}})
        return manager

    return _make


@pytest.fixture
def category(db):
    cid = database.create_document("category", Category(name="Surgical"))
    return db["category"].find_one({"_id": database.oid(cid)})


@pytest.fixture
def make_product(db, category):
    def _make(price=100.0, discount=0, warehouse_stock=10, publish=True, name="Gloves"):
        product = Product(
            name=name,
            category=category["_id"],
            price=price,
            discount=discount,
            warehouseStock=warehouse_stock,
            publish=publish,
        )
        pid = database.create_document("product", product)
        return db["product"].find_one({"_id": database.oid(pid)})

    return _make


@pytest.fixture
def set_stock(db):
    def _set(franchise, product, quantity):
        db["franchisestock"].update_one(
            {"franchise": franchise["_id"], "product": product["_id"]},
            {"$set": {"quantity": quantity}},
            upsert=True,
        )

    return _set


@pytest.fixture
def make_address(db):
    def _make(user, pincode="560001"):
        aid = database.create_document("address", Address(street="2 Lake View", city="Bengaluru", pincode=pincode))
        db["user"].update_one({"_id": user["_id"]}, {"$push": {"address_info": database.oid(aid)}})
        return db["address"].find_one({"_id": database.oid(aid)})

    return _make


@pytest.fixture
def shop(make_franchise, make_product, set_stock, make_address, customer):
    """A customer, a franchise in 560001 stocking 5 gloves, and a local address."""
    franchise = make_franchise(pincode="560001")
    product = make_product(price=100.0, warehouse_stock=10)
    set_stock(franchise, product, 5)
    address = make_address(customer, pincode="560001")
    return {"customer": customer, "franchise": franchise, "product": product, "address": address}
