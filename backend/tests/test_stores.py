# Overview: Pytest coverage for store management routes.

from crm.models import Store


class TestStoreApi:
    def test_any_staff_can_list(self, client, sales_headers, store, other_store):
        response = client.get("/api/stores", headers=sales_headers)
        assert response.status_code == 200
        assert {s["code"] for s in response.json["data"]} == {"MAIN", "BR2"}

    def test_admin_creates_store(self, client, db_session, admin_headers):
        response = client.post(
            "/api/stores",
            json={
                "name": "Airport Kiosk",
                "code": "air1",
                "address": {"street": "Terminal 2", "city": "Mumbai", "zip_code": "400099"},
                "tax_rate_bps": 1200,
            },
            headers=admin_headers,
        )

        assert response.status_code == 201
        data = response.json["data"]
        assert data["code"] == "AIR1"
        assert data["address"]["city"] == "Mumbai"
        assert data["tax_rate_bps"] == 1200
        assert db_session.query(Store).filter_by(code="AIR1").count() == 1

    def test_manager_cannot_create(self, client, manager_headers):
        response = client.post("/api/stores", json={"name": "X", "code": "XX"}, headers=manager_headers)
        assert response.status_code == 403

    def test_duplicate_code_is_409(self, client, admin_headers, store):
        response = client.post("/api/stores", json={"name": "Copy", "code": "main"}, headers=admin_headers)
        assert response.status_code == 409

    def test_invalid_code_and_tax(self, client, admin_headers):
        response = client.post("/api/stores", json={"name": "Bad", "code": "a b"}, headers=admin_headers)
        assert response.status_code == 400

        response = client.post(
            "/api/stores", json={"name": "Bad", "code": "BAD", "tax_rate_bps": 20000}, headers=admin_headers
        )
        assert response.status_code == 400

    def test_lookup_by_code(self, client, sales_headers, store):
        response = client.get("/api/stores/code/main", headers=sales_headers)
        assert response.status_code == 200
        assert response.json["data"]["id"] == store.id

    def test_update_and_deactivate(self, client, admin_headers, sales_headers, other_store):
        response = client.put(
            f"/api/stores/{other_store.id}", json={"manager_name": "Deepa"}, headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json["data"]["manager_name"] == "Deepa"

        assert client.delete(f"/api/stores/{other_store.id}", headers=admin_headers).status_code == 200
        assert client.get(f"/api/stores/{other_store.id}", headers=sales_headers).status_code == 404

        listed = client.get("/api/stores?include_inactive=true", headers=sales_headers)
        assert other_store.id in [s["id"] for s in listed.json["data"]]

    def test_cors_header_for_known_origin(self, client, sales_headers):
        response = client.get(
            "/api/stores", headers={**sales_headers, "Origin": "http://localhost:5173"}
        )
        assert response.headers["Access-Control-Allow-Origin"] == "http://localhost:5173"

        response = client.get("/api/stores", headers={**sales_headers, "Origin": "http://evil.test"})
        assert "Access-Control-Allow-Origin" not in response.headers
