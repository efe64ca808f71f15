from conftest import auth_headers

ADDRESS = {"street": "4 Park Street", "city": "Kolkata", "state": "WB", "pincode": "700016", "country": "India"}


def test_create_links_address_to_owner(client, db, customer):
    resp = client.post("/api/addresses", json=ADDRESS, headers=auth_headers(customer))
    assert resp.status_code == 201
    address_id = resp.json()["address"]["_id"]
    owner = db["user"].find_one({"_id": customer["_id"]})
    assert [str(a) for a in owner["address_info"]] == [address_id]


def test_list_returns_only_own_addresses(client, customer, make_user, make_address):
    make_address(customer)
    make_address(make_user())
    resp = client.get("/api/addresses", headers=auth_headers(customer))
    assert len(resp.json()["addresses"]) == 1


def test_owner_updates_and_deletes(client, db, customer, make_address):
    address = make_address(customer)
    url = f"/api/addresses/{address['_id']}"
    resp = client.put(url, json={"city": "Mysuru", "pincode": "570001"}, headers=auth_headers(customer))
    assert resp.json()["address"]["city"] == "Mysuru"
    assert resp.json()["address"]["street"] == "2 Lake View"

    assert client.delete(url, headers=auth_headers(customer)).status_code == 200
    assert db["address"].count_documents({}) == 0
    assert db["user"].find_one({"_id": customer["_id"]})["address_info"] == []


def test_strangers_are_forbidden_admin_may_read(client, customer, make_user, make_address, admin):
    address = make_address(customer)
    url = f"/api/addresses/{address['_id']}"
    stranger = auth_headers(make_user())
    assert client.get(url, headers=stranger).status_code == 403
    assert client.put(url, json={"city": "X"}, headers=stranger).status_code == 403
    assert client.delete(url, headers=stranger).status_code == 403

    assert client.get(url, headers=auth_headers(admin)).status_code == 200
    assert client.delete(url, headers=auth_headers(admin)).status_code == 403


def test_unknown_and_malformed_ids(client, customer):
    headers = auth_headers(customer)
    assert client.get("/api/addresses/64b000000000000000000000", headers=headers).status_code == 404
    resp = client.get("/api/addresses/xyz", headers=headers)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Invalid address id"
