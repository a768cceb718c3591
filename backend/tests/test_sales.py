# Overview: Pytest coverage for sale creation, cancellation and refunds.

"""
Sale coordinator tests.

- totals: 18% tax on the discounted subtotal, loyalty floor(total / 100)
- a sale either reserves every line or leaves stock untouched
- cancel restores stock exactly once
- refunds are bounded by the refundable balance
"""

import pytest

from crm.models import Customer, Sale, StockLevel, InventoryReservation, NotificationOutbox
from crm.services import activity_service, sales_service
from crm.services.customer_service import CustomerById, InlineCustomer
from crm.services.reservation_service import InsufficientStockError
from crm.services.sales_service import SaleError
from crm.validation import ValidationError


def _item(product, quantity, **extra):
    item = {"product_id": product.id, "quantity": quantity, "unit_price_cents": None, "discount_bps": 0}
    item.update(extra)
    return item


def _stock(db_session, product, store):
    level = db_session.query(StockLevel).filter_by(product_id=product.id, store_id=store.id).one()
    db_session.refresh(level)
    return level


class TestPricing:
    def test_round_half_up(self):
        assert sales_service.round_half_up_div(5, 10) == 1
        assert sales_service.round_half_up_div(4, 10) == 0
        assert sales_service.round_half_up_div(15, 10) == 2

    def test_tax_on_subtotal(self):
        assert sales_service.tax_cents_for(5_000_000, 1800) == 900_000
        # 0.18 * 333 = 59.94
        assert sales_service.tax_cents_for(333, 1800) == 60

    def test_line_discount(self):
        assert sales_service.line_total_cents(2, 5_000_000, 1000) == 9_000_000

    def test_loyalty_points_floor(self, db_session):
        assert sales_service.loyalty_points_for(5_900_000) == 590
        assert sales_service.loyalty_points_for(9_999) == 0
        assert sales_service.loyalty_points_for(10_000) == 1


class TestParseItems:
    def test_requires_items(self):
        with pytest.raises(ValidationError):
            sales_service.parse_sale_items([])

    def test_discount_percentage_to_bps(self):
        items = sales_service.parse_sale_items([{"product_id": 1, "quantity": 2, "discount": 12.5}])
        assert items == [{"product_id": 1, "quantity": 2, "unit_price_cents": None, "discount_bps": 1250}]

    def test_collects_errors_per_item(self):
        with pytest.raises(ValidationError) as exc:
            sales_service.parse_sale_items([
                {"product_id": 1, "quantity": 0},
                {"product_id": 2, "quantity": 1, "discount": 120},
            ])
        fields = {e["field"] for e in exc.value.errors}
        assert fields == {"items[0].quantity", "items[1].discount"}


class TestCreateSale:
    def test_completed_sale_totals_and_loyalty(self, db_session, store, customer, product):
        sale, outbox_ids = sales_service.create_sale(
            store_id=store.id,
            customer_ref=CustomerById(customer.id),
            items=[_item(product, 1)],
        )

        assert sale.status == "completed"
        assert sale.sale_number == f"S-{store.id:03d}-0001"
        assert sale.subtotal_cents == 5_000_000
        assert sale.tax_rate_bps == 1800
        assert sale.tax_cents == 900_000
        assert sale.total_cents == 5_900_000
        assert sale.loyalty_points_awarded == 590

        db_session.refresh(customer)
        assert customer.loyalty_points == 590
        assert customer.total_purchases_cents == 5_900_000
        assert customer.total_visits == 1

        level = _stock(db_session, product, store)
        assert level.stock == 9
        assert level.reserved == 0
        reservation = db_session.query(InventoryReservation).one()
        assert reservation.status == "COMMITTED"
        assert reservation.sale_id == sale.id

        # opted-in customer with an email gets a receipt
        assert len(outbox_ids) == 1

    def test_discount_lines(self, db_session, store, customer, product, accessory):
        sale, _ = sales_service.create_sale(
            store_id=store.id,
            customer_ref=CustomerById(customer.id),
            items=[_item(product, 2, discount_bps=1000), _item(accessory, 1)],
        )

        assert sale.subtotal_cents == 9_050_000
        assert sale.discount_cents == 1_000_000
        assert sale.tax_cents == 1_629_000
        assert sale.total_cents == 10_679_000
        assert [line.line_total_cents for line in sale.lines] == [9_000_000, 50_000]

    def test_store_tax_override(self, db_session, store, customer, product):
        store.tax_rate_bps = 500
        db_session.commit()

        sale, _ = sales_service.create_sale(
            store_id=store.id,
            customer_ref=CustomerById(customer.id),
            items=[_item(product, 1)],
        )
        assert sale.tax_cents == 250_000
        assert sale.total_cents == 5_250_000

    def test_insufficient_stock_changes_nothing(self, db_session, store, customer, product, accessory):
        with pytest.raises(InsufficientStockError) as exc:
            sales_service.create_sale(
                store_id=store.id,
                customer_ref=CustomerById(customer.id),
                items=[_item(product, 2), _item(accessory, 5)],
            )

        assert exc.value.details["product_id"] == accessory.id
        assert exc.value.details["available"] == 3

        laptop = _stock(db_session, product, store)
        mouse = _stock(db_session, accessory, store)
        assert (laptop.stock, laptop.reserved) == (10, 0)
        assert (mouse.stock, mouse.reserved) == (3, 0)
        assert db_session.query(Sale).count() == 0
        db_session.refresh(customer)
        assert customer.loyalty_points == 0

    def test_pending_sale_awards_nothing_until_completed(self, db_session, store, customer, product):
        sale, outbox_ids = sales_service.create_sale(
            store_id=store.id,
            customer_ref=CustomerById(customer.id),
            items=[_item(product, 1)],
            status="pending",
        )
        assert sale.loyalty_points_awarded == 0
        assert outbox_ids == []
        db_session.refresh(customer)
        assert customer.loyalty_points == 0
        # stock is still taken for pending sales
        assert _stock(db_session, product, store).stock == 9

        sale, outbox_ids = sales_service.update_status(sale.id, "completed")
        assert sale.loyalty_points_awarded == 590
        db_session.refresh(customer)
        assert customer.loyalty_points == 590

        receipts = db_session.query(NotificationOutbox).filter_by(entity_type="sale", entity_id=sale.id).all()
        assert [r.template for r in receipts] == ["sale_receipt"]
        assert outbox_ids == [receipts[0].id]
        assert receipts[0].recipient == "ravi@example.com"

    def test_inline_customer_is_created_once(self, db_session, store, product, accessory):
        ref = InlineCustomer(name="Asha", email="asha@example.com", phone="9123456789")
        first, _ = sales_service.create_sale(store_id=store.id, customer_ref=ref, items=[_item(accessory, 1)])
        second, _ = sales_service.create_sale(
            store_id=store.id,
            customer_ref=InlineCustomer(name="Asha", phone="91234-56789"),
            items=[_item(accessory, 1)],
        )

        assert first.customer_id == second.customer_id
        assert db_session.query(Customer).count() == 1
        assert second.sale_number == f"S-{store.id:03d}-0002"

    def test_invalid_payment_method(self, db_session, store, customer, product):
        with pytest.raises(ValidationError):
            sales_service.create_sale(
                store_id=store.id,
                customer_ref=CustomerById(customer.id),
                items=[_item(product, 1)],
                payment_method="barter",
            )


class TestCancel:
    def test_cancel_twice_restores_stock_once(self, db_session, store, customer, product):
        sale, _ = sales_service.create_sale(
            store_id=store.id,
            customer_ref=CustomerById(customer.id),
            items=[_item(product, 2)],
        )
        assert _stock(db_session, product, store).stock == 8

        cancelled, _ = sales_service.update_status(sale.id, "cancelled", reason="Customer changed mind")
        assert cancelled.status == "cancelled"
        assert cancelled.cancelled_at is not None
        assert "Customer changed mind" in cancelled.notes
        assert _stock(db_session, product, store).stock == 10

        again, _ = sales_service.update_status(sale.id, "cancelled")
        assert again.status == "cancelled"
        assert _stock(db_session, product, store).stock == 10

        db_session.refresh(customer)
        assert customer.loyalty_points == 0
        assert customer.total_purchases_cents == 0

    def test_cancelled_is_terminal(self, db_session, store, customer, product):
        sale, _ = sales_service.create_sale(
            store_id=store.id,
            customer_ref=CustomerById(customer.id),
            items=[_item(product, 1)],
        )
        sales_service.update_status(sale.id, "cancelled")

        with pytest.raises(SaleError):
            sales_service.update_status(sale.id, "completed")

    def test_refund_status_only_through_refund(self, db_session, store, customer, product):
        sale, _ = sales_service.create_sale(
            store_id=store.id,
            customer_ref=CustomerById(customer.id),
            items=[_item(product, 1)],
        )
        with pytest.raises(SaleError):
            sales_service.update_status(sale.id, "refunded")
        with pytest.raises(ValidationError):
            sales_service.update_status(sale.id, "shipped")

    def test_cancel_recorded_once_in_activity_trail(self, db_session, store, customer, product):
        sale, _ = sales_service.create_sale(
            store_id=store.id,
            customer_ref=CustomerById(customer.id),
            items=[_item(product, 1)],
        )
        sales_service.update_status(sale.id, "cancelled", reason="Duplicate bill")
        sales_service.update_status(sale.id, "cancelled")

        events = activity_service.list_activity(entity_type="sale", entity_id=sale.id)
        assert [e.event_type for e in events] == ["sale.created", "sale.cancelled"]
        assert events[1].note == "Duplicate bill"


class TestRefund:
    def _sale(self, store, customer, product, quantity=2):
        sale, _ = sales_service.create_sale(
            store_id=store.id,
            customer_ref=CustomerById(customer.id),
            items=[_item(product, quantity)],
        )
        return sale

    def test_partial_then_full_refund(self, db_session, store, customer, product):
        sale = self._sale(store, customer, product)
        total = sale.total_cents

        sale = sales_service.add_refund(sale.id, amount_cents=1_000_000, reason="Dent on lid")
        assert sale.status == "partially_refunded"
        assert sale.refunded_cents == 1_000_000
        assert sale.refundable_cents == total - 1_000_000

        sale = sales_service.add_refund(sale.id, amount_cents=total - 1_000_000, reason="Returned")
        assert sale.status == "refunded"
        assert len(sale.refunds) == 2

        with pytest.raises(SaleError):
            sales_service.add_refund(sale.id, amount_cents=1, reason="Again")

    def test_refund_cannot_exceed_balance(self, db_session, store, customer, product):
        sale = self._sale(store, customer, product, quantity=1)

        with pytest.raises(SaleError) as exc:
            sales_service.add_refund(sale.id, amount_cents=sale.total_cents + 1, reason="Too much")
        assert exc.value.details["refundable"] == sale.total_cents

    @pytest.mark.parametrize("amount", [0, -5, 1.5, None])
    def test_refund_amount_must_be_positive_cents(self, db_session, store, customer, product, amount):
        sale = self._sale(store, customer, product, quantity=1)
        with pytest.raises(ValidationError):
            sales_service.add_refund(sale.id, amount_cents=amount, reason="Bad amount")

    def test_refund_requires_reason(self, db_session, store, customer, product):
        sale = self._sale(store, customer, product, quantity=1)
        with pytest.raises(ValidationError):
            sales_service.add_refund(sale.id, amount_cents=100, reason="  ")

    def test_returned_items_restock(self, db_session, store, customer, product):
        sale = self._sale(store, customer, product)
        assert _stock(db_session, product, store).stock == 8

        sales_service.add_refund(
            sale.id,
            amount_cents=5_900_000,
            reason="One unit returned",
            items=[{"product_id": product.id, "quantity": 1}],
        )
        assert _stock(db_session, product, store).stock == 9

        with pytest.raises(SaleError):
            sales_service.add_refund(
                sale.id,
                amount_cents=100,
                reason="Too many units",
                items=[{"product_id": product.id, "quantity": 2}],
            )

    def test_cancel_after_partial_return_restocks_remaining_units(self, db_session, store, customer, product):
        sale = self._sale(store, customer, product)
        sales_service.add_refund(
            sale.id,
            amount_cents=100,
            reason="One unit returned",
            items=[{"product_id": product.id, "quantity": 1}],
        )
        sales_service.update_status(sale.id, "cancelled")
        assert _stock(db_session, product, store).stock == 10

    def test_cancelled_sale_cannot_be_refunded(self, db_session, store, customer, product):
        sale = self._sale(store, customer, product, quantity=1)
        sales_service.update_status(sale.id, "cancelled")
        with pytest.raises(SaleError):
            sales_service.add_refund(sale.id, amount_cents=100, reason="Late")


class TestSalesApi:
    def _payload(self, customer, product, **extra):
        payload = {
            "customer_id": customer.id,
            "items": [{"product_id": product.id, "quantity": 1}],
            "payment_method": "card",
        }
        payload.update(extra)
        return payload

    def test_create_sale(self, client, sales_headers, store, customer, product):
        response = client.post("/api/sales", json=self._payload(customer, product), headers=sales_headers)

        assert response.status_code == 201
        body = response.json
        assert body["success"] is True
        assert body["data"]["total_cents"] == 5_900_000
        assert body["data"]["loyalty_points_awarded"] == 590
        assert body["data"]["store_id"] == store.id
        assert body["data"]["lines"][0]["quantity"] == 1

        detail = client.get(f"/api/sales/{body['data']['id']}", headers=sales_headers)
        assert detail.status_code == 200
        assert [e["event_type"] for e in detail.json["data"]["activity"]] == ["sale.created"]

    def test_create_sale_requires_auth(self, client, db_session, customer, product):
        response = client.post("/api/sales", json=self._payload(customer, product))
        assert response.status_code == 401
        assert response.json["success"] is False

    def test_engineer_cannot_sell(self, client, engineer_headers, customer, product):
        response = client.post("/api/sales", json=self._payload(customer, product), headers=engineer_headers)
        assert response.status_code == 403

    def test_cross_store_sale_forbidden(self, client, sales_headers, other_store, customer, product):
        response = client.post(
            "/api/sales",
            json=self._payload(customer, product, store_id=other_store.id),
            headers=sales_headers,
        )
        assert response.status_code == 403
        assert response.json["success"] is False

    def test_out_of_stock_is_400_with_details(self, client, db_session, sales_headers, store, customer, accessory):
        payload = self._payload(customer, accessory)
        payload["items"][0]["quantity"] = 4
        response = client.post("/api/sales", json=payload, headers=sales_headers)

        assert response.status_code == 400
        assert response.json["details"]["available"] == 3
        assert _stock(db_session, accessory, store).stock == 3

    def test_missing_customer_is_400(self, client, sales_headers, product):
        response = client.post(
            "/api/sales",
            json={"items": [{"product_id": product.id, "quantity": 1}]},
            headers=sales_headers,
        )
        assert response.status_code == 400

    def test_unknown_product_is_404(self, client, sales_headers, customer):
        response = client.post(
            "/api/sales",
            json={"customer_id": customer.id, "items": [{"product_id": 999999, "quantity": 1}]},
            headers=sales_headers,
        )
        assert response.status_code == 404

    def test_receipt_email_sent(self, client, db_session, sales_headers, customer, product, channels):
        response = client.post("/api/sales", json=self._payload(customer, product), headers=sales_headers)
        assert response.status_code == 201

        assert len(channels["email"].sent) == 1
        recipient, message = channels["email"].sent[0]
        assert recipient == "ravi@example.com"
        assert response.json["data"]["sale_number"] in message.subject
        row = db_session.query(NotificationOutbox).one()
        assert row.status == "SENT"
        assert row.entity_type == "sale"

    def test_receipt_sent_when_pending_sale_completes(self, client, db_session, sales_headers, customer, product, channels):
        created = client.post(
            "/api/sales", json=self._payload(customer, product, status="pending"), headers=sales_headers
        )
        assert created.status_code == 201
        assert channels["email"].sent == []

        sale_id = created.json["data"]["id"]
        response = client.put(f"/api/sales/{sale_id}/status", json={"status": "completed"}, headers=sales_headers)

        assert response.status_code == 200
        assert response.json["data"]["status"] == "completed"
        assert len(channels["email"].sent) == 1
        assert channels["email"].sent[0][0] == "ravi@example.com"
        row = db_session.query(NotificationOutbox).one()
        assert row.status == "SENT"
        assert row.template == "sale_receipt"

    def test_receipt_failure_does_not_fail_sale(self, client, db_session, sales_headers, customer, product):
        # channels are unconfigured under TestingConfig
        response = client.post("/api/sales", json=self._payload(customer, product), headers=sales_headers)
        assert response.status_code == 201
        row = db_session.query(NotificationOutbox).one()
        assert row.status == "FAILED"
        assert row.attempts == 1

    def test_cancel_via_api(self, client, db_session, sales_headers, store, customer, product):
        sale_id = client.post("/api/sales", json=self._payload(customer, product), headers=sales_headers).json["data"]["id"]

        first = client.put(f"/api/sales/{sale_id}/status", json={"status": "cancelled"}, headers=sales_headers)
        second = client.put(f"/api/sales/{sale_id}/status", json={"status": "cancelled"}, headers=sales_headers)

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json["data"]["status"] == "cancelled"
        assert _stock(db_session, product, store).stock == 10

    def test_refund_requires_manager(self, client, sales_headers, manager_headers, customer, product):
        sale_id = client.post("/api/sales", json=self._payload(customer, product), headers=sales_headers).json["data"]["id"]

        denied = client.post(
            f"/api/sales/{sale_id}/refund",
            json={"amount_cents": 100, "reason": "Scratch"},
            headers=sales_headers,
        )
        assert denied.status_code == 403

        allowed = client.post(
            f"/api/sales/{sale_id}/refund",
            json={"amount_cents": 100, "reason": "Scratch"},
            headers=manager_headers,
        )
        assert allowed.status_code == 200
        assert allowed.json["data"]["status"] == "partially_refunded"
        assert allowed.json["data"]["refunds"][0]["processed_by"] == "Manager"

    def test_over_refund_is_400(self, client, sales_headers, manager_headers, customer, product):
        sale = client.post("/api/sales", json=self._payload(customer, product), headers=sales_headers).json["data"]

        response = client.post(
            f"/api/sales/{sale['id']}/refund",
            json={"amount_cents": sale["total_cents"] + 1, "reason": "Too much"},
            headers=manager_headers,
        )
        assert response.status_code == 400
        assert response.json["details"]["refundable"] == sale["total_cents"]

    def test_other_store_staff_cannot_read_sale(
        self, client, sales_headers, other_store, customer, product, user_factory, login
    ):
        sale_id = client.post("/api/sales", json=self._payload(customer, product), headers=sales_headers).json["data"]["id"]
        outsider = user_factory(
            name="Outsider", email="outsider@crm.test", phone="9000000009",
            role="sales", store_id=other_store.id,
        )
        headers = login(outsider.email, store_id=other_store.id)

        assert client.get(f"/api/sales/{sale_id}", headers=headers).status_code == 403

    def test_list_is_scoped_to_own_store(self, client, sales_headers, admin_headers, customer, product, other_store):
        client.post("/api/sales", json=self._payload(customer, product), headers=sales_headers)

        mine = client.get("/api/sales", headers=sales_headers)
        assert mine.status_code == 200
        assert mine.json["data"]["pagination"]["total"] == 1

        other = client.get(f"/api/sales?store_id={other_store.id}", headers=admin_headers)
        assert other.json["data"]["pagination"]["total"] == 0
