from concurrent.futures import ThreadPoolExecutor

import pytest
from pymongo.errors import DuplicateKeyError

from cart import CartItemIn, add_to_cart
from conftest import auth_headers
from security import principal_from_user


@pytest.fixture
def headers(customer):
    return auth_headers(customer)


def _add(client, headers, product, franchise=None, quantity=1):
    body = {"productId": str(product["_id"]), "quantity": quantity}
    if franchise:
        body["franchiseId"] = str(franchise["_id"])
    return client.post("/api/cart/add", json=body, headers=headers)


def test_repeat_adds_accumulate(client, db, headers, make_product, make_franchise):
    product, franchise = make_product(), make_franchise()
    assert _add(client, headers, product, franchise, 2).json()["message"] == "Item added to cart successfully"
    resp = _add(client, headers, product, franchise, 3)
    assert resp.json()["message"] == "Cart updated successfully"
    assert resp.json()["cartItem"]["quantity"] == 5
    assert db["cartitem"].count_documents({}) == 1

    # a different franchise is a separate line
    _add(client, headers, product, make_franchise(pincode="400001"))
    assert db["cartitem"].count_documents({}) == 2


def test_concurrent_adds_share_one_row(db, customer, make_product, atomic_collections):
    product = make_product()
    user = principal_from_user(customer)
    payload = CartItemIn(productId=str(product["_id"]), quantity=2)
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: add_to_cart(payload, user), range(20)))

    rows = list(db["cartitem"].find({}))
    assert len(rows) == 1
    assert rows[0]["quantity"] == 40
    assert [r["message"] for r in results].count("Item added to cart successfully") == 1


def test_cart_line_key_is_unique(db, customer, make_product):
    row = {"user_id": customer["_id"], "product_id": make_product()["_id"], "franchise": None, "quantity": 1}
    db["cartitem"].insert_one(dict(row))
    with pytest.raises(DuplicateKeyError):
        db["cartitem"].insert_one(dict(row))


def test_totals_use_discounted_price(client, headers, make_product):
    _add(client, headers, make_product(price=200, discount=10), quantity=2)
    _add(client, headers, make_product(price=50, name="Mask"))
    body = client.get("/api/cart", headers=headers).json()
    assert body["totalItems"] == 2
    assert body["totalPrice"] == 410


def test_unknown_product_or_franchise(client, headers, make_product):
    assert client.post("/api/cart/add", json={"productId": "64b000000000000000000000"}, headers=headers).status_code == 404
    body = {"productId": str(make_product()["_id"]), "franchiseId": "64b000000000000000000000"}
    assert client.post("/api/cart/add", json=body, headers=headers).status_code == 404


def test_zero_quantity_is_rejected(client, headers, make_product):
    assert _add(client, headers, make_product(), quantity=0).status_code == 400


def test_oversized_quantity_is_rejected(client, db, headers, make_product):
    product = make_product()
    resp = _add(client, headers, product, quantity=10**20)
    assert resp.status_code == 400
    assert resp.json()["error"] == "validation"
    item = _add(client, headers, product).json()["cartItem"]
    url = f"/api/cart/item/{item['_id']}"
    assert client.put(url, json={"quantity": 10**20}, headers=headers).status_code == 400
    assert db["cartitem"].find_one({})["quantity"] == 1


def test_update_and_remove(client, db, headers, make_product):
    item = _add(client, headers, make_product()).json()["cartItem"]
    url = f"/api/cart/item/{item['_id']}"
    assert client.put(url, json={"quantity": 4}, headers=headers).json()["cartItem"]["quantity"] == 4
    assert client.put(url, json={"quantity": 0}, headers=headers).status_code == 400
    assert client.delete(url, headers=headers).status_code == 200
    assert db["cartitem"].count_documents({}) == 0


def test_other_users_rows_are_invisible(client, db, headers, make_product, make_user):
    item = _add(client, headers, make_product()).json()["cartItem"]
    intruder = auth_headers(make_user())
    url = f"/api/cart/item/{item['_id']}"
    assert client.put(url, json={"quantity": 9}, headers=intruder).status_code == 404
    assert client.delete(url, headers=intruder).status_code == 404
    assert client.get("/api/cart", headers=intruder).json()["cartItems"] == []
    assert db["cartitem"].find_one({})["quantity"] == 1


def test_clear_only_touches_own_cart(client, db, headers, make_product, make_user):
    product = make_product()
    _add(client, headers, product)
    _add(client, auth_headers(make_user()), product)
    assert client.delete("/api/cart/clear", headers=headers).status_code == 200
    assert db["cartitem"].count_documents({}) == 1


def test_cart_requires_login(client):
    assert client.get("/api/cart").status_code == 401
