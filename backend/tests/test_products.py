# Overview: Pytest coverage for the product catalogue and per-store stock routes.

import re

import pytest

from crm.models import StockLevel
from crm.services import products_service
from crm.validation import ConflictError, NotFoundError, ValidationError


class TestProductService:
    def test_generated_sku(self, db_session, store):
        product = products_service.create_product(
            patch={"name": "Inspiron 15", "brand": "Dell", "category": "laptop", "price_cents": 4_500_000},
        )
        assert re.fullmatch(r"DELINS-\d{4}", product.sku)

    def test_codes_are_upper_cased_and_unique(self, db_session, product):
        assert product.sku == "LEN-E14"
        with pytest.raises(ConflictError):
            products_service.create_product(
                patch={"name": "Copy", "brand": "Lenovo", "category": "laptop", "price_cents": 1, "sku": "len-e14"},
            )
        with pytest.raises(ConflictError):
            products_service.create_product(
                patch={"name": "Copy", "brand": "Lenovo", "category": "laptop", "price_cents": 1, "barcode": "8901234567890"},
            )

    def test_opening_stock_creates_level(self, db_session, store, product):
        level = db_session.query(StockLevel).filter_by(product_id=product.id, store_id=store.id).one()
        assert level.stock == 10
        assert level.low_stock_threshold == 2
        assert level.is_low_stock is False

    def test_store_without_stock_gets_empty_level(self, db_session, other_store):
        product = products_service.create_product(
            patch={"name": "Vostro", "brand": "Dell", "category": "laptop", "price_cents": 3_000_000},
            store_id=other_store.id,
        )
        data = products_service.product_to_dict(product)
        assert data["total_stock"] == 0
        assert data["is_low_stock"] is True

    def test_negative_opening_stock(self, db_session, store):
        with pytest.raises(ValidationError):
            products_service.create_product(
                patch={"name": "Bad", "brand": "HP", "category": "laptop", "price_cents": 1},
                store_id=store.id,
                stock=-1,
            )

    def test_barcode_then_sku_lookup(self, db_session, product):
        assert products_service.get_product_by_barcode("8901234567890").id == product.id
        assert products_service.get_product_by_barcode(" len-e14 ").id == product.id
        with pytest.raises(NotFoundError):
            products_service.get_product_by_barcode("0000000000000")

    def test_soft_deleted_product_not_scannable(self, db_session, product):
        products_service.delete_product(product_id=product.id)
        with pytest.raises(NotFoundError):
            products_service.get_product_by_barcode("8901234567890")
        assert products_service.list_products()["count"] == 0

    def test_list_filters(self, db_session, store, product, accessory):
        assert products_service.list_products(category="LAPTOP")["count"] == 1
        assert products_service.list_products(brand="logitech")["count"] == 1
        assert products_service.list_products(search="thinkpad")["count"] == 1

        paged = products_service.list_products(page=1, per_page=1)
        assert paged["pagination"]["total"] == 2
        assert paged["pagination"]["has_next"] is True


class TestProductApi:
    def test_list_requires_auth(self, client, db_session):
        assert client.get("/api/products").status_code == 401

    def test_manager_creates_product_for_own_store(self, client, manager_headers, store):
        response = client.post(
            "/api/products",
            json={
                "name": "Pavilion 14",
                "brand": "HP",
                "model": "14-dv2000",
                "category": "laptop",
                "price_cents": 6_200_000,
                "stock": 4,
                "low_stock_threshold": 1,
            },
            headers=manager_headers,
        )

        assert response.status_code == 201
        data = response.json["data"]
        assert data["stock_levels"][0]["store_id"] == store.id
        assert data["total_stock"] == 4
        assert data["total_available"] == 4

    def test_sales_cannot_create(self, client, sales_headers):
        response = client.post(
            "/api/products",
            json={"name": "X", "brand": "Y", "category": "laptop", "price_cents": 100},
            headers=sales_headers,
        )
        assert response.status_code == 403

    def test_manager_cannot_seed_other_store(self, client, manager_headers, other_store):
        response = client.post(
            "/api/products",
            json={"name": "X", "brand": "Y", "category": "laptop", "price_cents": 100, "store_id": other_store.id, "stock": 1},
            headers=manager_headers,
        )
        assert response.status_code == 403

    def test_validation_collects_fields(self, client, manager_headers):
        response = client.post(
            "/api/products",
            json={"name": "X", "price_cents": 1.5},
            headers=manager_headers,
        )
        assert response.status_code == 400
        fields = {e["field"] for e in response.json["errors"]}
        assert {"brand", "category", "price_cents"} <= fields

    def test_duplicate_sku_is_409(self, client, manager_headers, product):
        response = client.post(
            "/api/products",
            json={"name": "X", "brand": "Lenovo", "category": "laptop", "price_cents": 100, "sku": "LEN-E14"},
            headers=manager_headers,
        )
        assert response.status_code == 409

    def test_barcode_route(self, client, sales_headers, store, product):
        response = client.get(f"/api/products/barcode/8901234567890?store_id={store.id}", headers=sales_headers)
        assert response.status_code == 200
        assert response.json["data"]["id"] == product.id
        assert response.json["data"]["total_available"] == 10

        missing = client.get("/api/products/barcode/unknown", headers=sales_headers)
        assert missing.status_code == 404

    def test_update_and_delete(self, client, manager_headers, product):
        response = client.put(f"/api/products/{product.id}", json={"price_cents": 4_800_000}, headers=manager_headers)
        assert response.status_code == 200
        assert response.json["data"]["price_cents"] == 4_800_000

        assert client.delete(f"/api/products/{product.id}", headers=manager_headers).status_code == 200
        assert client.get(f"/api/products/{product.id}", headers=manager_headers).status_code == 404


class TestInventoryApi:
    def test_availability(self, client, sales_headers, store, product):
        response = client.get(f"/api/inventory/{product.id}/stores/{store.id}", headers=sales_headers)
        assert response.status_code == 200
        assert response.json["data"]["available"] == 10

    def test_restock(self, client, manager_headers, store, accessory):
        response = client.post(
            f"/api/inventory/{accessory.id}/stores/{store.id}/restock",
            json={"quantity": 7, "low_stock_threshold": 4, "note": "Supplier delivery"},
            headers=manager_headers,
        )
        assert response.status_code == 200
        data = response.json["data"]
        assert data["stock"] == 10
        assert data["low_stock_threshold"] == 4
        assert data["is_low_stock"] is False

    def test_restock_rejects_bad_quantity(self, client, manager_headers, store, accessory):
        response = client.post(
            f"/api/inventory/{accessory.id}/stores/{store.id}/restock",
            json={"quantity": 0},
            headers=manager_headers,
        )
        assert response.status_code == 400

    def test_restock_other_store_forbidden(self, client, manager_headers, other_store, accessory):
        response = client.post(
            f"/api/inventory/{accessory.id}/stores/{other_store.id}/restock",
            json={"quantity": 1},
            headers=manager_headers,
        )
        assert response.status_code == 403

    def test_threshold(self, client, manager_headers, store, accessory):
        response = client.put(
            f"/api/inventory/{accessory.id}/stores/{store.id}/threshold",
            json={"low_stock_threshold": 3},
            headers=manager_headers,
        )
        assert response.status_code == 200
        assert response.json["data"]["is_low_stock"] is True

        listed = client.get(f"/api/products?low_stock=true&store_id={store.id}", headers=manager_headers)
        assert [p["id"] for p in listed.json["data"]["items"]] == [accessory.id]
