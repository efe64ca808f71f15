from conftest import PASSWORD, auth_headers


class TestAdminUserManagement:
    def test_list_filters_and_hides_secrets(self, client, admin, make_user):
        make_user()
        make_user(role="orderManager")
        resp = client.get("/api/users", params={"role": "orderManager"}, headers=auth_headers(admin))
        assert resp.status_code == 200
        users = resp.json()["users"]
        assert [u["role"] for u in users] == ["orderManager"]
        assert all("password_hash" not in u for u in users)
        assert resp.json()["pagination"]["total"] == 1

    def test_search_and_pagination(self, client, admin, make_user):
        for _ in range(3):
            make_user()
        resp = client.get("/api/users", params={"search": "user", "limit": 2}, headers=auth_headers(admin))
        body = resp.json()
        assert len(body["users"]) == 2
        assert body["pagination"] == {"total": 3, "page": 1, "limit": 2, "pages": 2}

    def test_listing_keeps_ids_on_later_reads(self, client, admin, customer):
        for _ in range(2):
            users = client.get("/api/users", headers=auth_headers(admin)).json()["users"]
            assert all("_id" in u for u in users)
        me = client.get("/api/auth/me", headers=auth_headers(customer)).json()["user"]
        assert me["_id"] == str(customer["_id"])
        assert "password_hash" not in me

    def test_non_admin_cannot_list(self, client, customer):
        assert client.get("/api/users", headers=auth_headers(customer)).status_code == 403

    def test_create_manager_bound_to_franchise(self, client, db, admin, make_franchise):
        franchise = make_franchise()
        resp = client.post(
            "/api/users/manager",
            json={"name": "Kiran", "email": "kiran@example.com", "password": "manager1", "franchiseId": str(franchise["_id"])},
            headers=auth_headers(admin),
        )
        assert resp.status_code == 201
        manager = resp.json()["manager"]
        assert manager["role"] == "orderManager"
        assert manager["franchise"] == str(franchise["_id"])
        assert str(db["franchise"].find_one({"_id": franchise["_id"]})["orderManager"]) == manager["_id"]

        managers = client.get("/api/users/managers", headers=auth_headers(admin)).json()["managers"]
        assert [m["email"] for m in managers] == ["kiran@example.com"]
        assert managers[0]["franchise"]["name"] == franchise["name"]

    def test_create_manager_for_unknown_franchise(self, client, db, admin):
        resp = client.post(
            "/api/users/manager",
            json={"name": "Kiran", "email": "kiran@example.com", "password": "manager1", "franchiseId": "64b000000000000000000000"},
            headers=auth_headers(admin),
        )
        assert resp.status_code == 404
        assert db["user"].count_documents({"role": "orderManager"}) == 0

    def test_change_status(self, client, db, admin, customer):
        resp = client.patch(f"/api/users/{customer['_id']}/status", json={"status": "Suspended"}, headers=auth_headers(admin))
        assert resp.status_code == 200
        assert db["user"].find_one({"_id": customer["_id"]})["status"] == "Suspended"
        assert client.get("/api/auth/me", headers=auth_headers(customer)).status_code == 403

    def test_admin_cannot_change_own_status(self, client, admin):
        resp = client.patch(f"/api/users/{admin['_id']}/status", json={"status": "Inactive"}, headers=auth_headers(admin))
        assert resp.status_code == 400

    def test_invalid_status_value(self, client, admin, customer):
        resp = client.patch(f"/api/users/{customer['_id']}/status", json={"status": "Banned"}, headers=auth_headers(admin))
        assert resp.status_code == 400


class TestProfile:
    def test_staff_can_read_user(self, client, customer, make_franchise, make_manager, make_address):
        make_address(customer)
        manager = make_manager(make_franchise())
        resp = client.get(f"/api/users/{customer['_id']}", headers=auth_headers(manager))
        assert resp.status_code == 200
        assert resp.json()["user"]["address_info"][0]["city"] == "Bengaluru"
        assert client.get(f"/api/users/{customer['_id']}", headers=auth_headers(customer)).status_code == 403

    def test_update_own_profile(self, client, customer):
        resp = client.patch(f"/api/users/{customer['_id']}", json={"name": "New Name", "phone": "123"}, headers=auth_headers(customer))
        assert resp.status_code == 200
        assert resp.json()["user"]["name"] == "New Name"

    def test_cannot_update_someone_else(self, client, customer, make_user, admin):
        other = make_user()
        assert client.patch(f"/api/users/{other['_id']}", json={"name": "X"}, headers=auth_headers(customer)).status_code == 403
        assert client.patch(f"/api/users/{other['_id']}", json={"name": "X"}, headers=auth_headers(admin)).status_code == 200

    def test_change_password(self, client, customer):
        headers = auth_headers(customer)
        wrong = client.post("/api/users/change-password", json={"oldpassword": "nope", "newpassword": "fresh123"}, headers=headers)
        assert wrong.status_code == 401

        ok = client.post("/api/users/change-password", json={"oldpassword": PASSWORD, "newpassword": "fresh123"}, headers=headers)
        assert ok.status_code == 200
        login = client.post("/api/auth/login", json={"email": customer["email"], "password": "fresh123"})
        assert login.status_code == 200
