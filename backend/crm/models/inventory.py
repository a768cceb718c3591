from __future__ import annotations

from ..extensions import db
from crm.time_utils import to_utc_z


class Product(db.Model):
    """
    Catalogue entry shared by all stores.

    SKU is globally unique and auto-generated when not supplied. Barcode is
    optional and unique when present. On-hand quantities live in StockLevel,
    never on the product row.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("sku", name="uq_products_sku"),
        db.UniqueConstraint("barcode", name="uq_products_barcode"),
        db.Index("ix_products_active_name", "is_active", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    sku = db.Column(db.String(64), nullable=False)
    barcode = db.Column(db.String(64), nullable=True)

    name = db.Column(db.String(255), nullable=False)
    brand = db.Column(db.String(120), nullable=False)
    model = db.Column(db.String(120), nullable=True)
    category = db.Column(db.String(64), nullable=False, index=True)
    description = db.Column(db.Text, nullable=True)

    # Authoritative storage in cents (frontend may only format for display)
    price_cents = db.Column(db.Integer, nullable=False)
    warranty_months = db.Column(db.Integer, nullable=False, default=12)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "barcode": self.barcode,
            "name": self.name,
            "brand": self.brand,
            "model": self.model,
            "category": self.category,
            "description": self.description,
            "price_cents": self.price_cents,
            "warranty_months": self.warranty_months,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockLevel(db.Model):
    """
    On-hand and reserved quantity of one product at one store.

    INVARIANTS:
    - reserved >= 0 and stock >= reserved (available never negative)
    - every mutation is a single conditional UPDATE (see reservation_service)
    - is_low_stock is recomputed in the same statement as the quantity change
    """
    __tablename__ = "stock_levels"
    __table_args__ = (
        db.UniqueConstraint("product_id", "store_id", name="uq_stock_levels_product_store"),
        db.CheckConstraint("reserved >= 0", name="ck_stock_levels_reserved_nonneg"),
        db.CheckConstraint("stock >= reserved", name="ck_stock_levels_available_nonneg"),
        db.CheckConstraint("low_stock_threshold >= 0", name="ck_stock_levels_threshold_nonneg"),
        db.Index("ix_stock_levels_store_low", "store_id", "is_low_stock"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    stock = db.Column(db.Integer, nullable=False, default=0)
    reserved = db.Column(db.Integer, nullable=False, default=0)
    low_stock_threshold = db.Column(db.Integer, nullable=False, default=5)
    is_low_stock = db.Column(db.Boolean, nullable=False, default=True)

    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    product = db.relationship("Product", backref=db.backref("stock_levels", lazy=True))
    store = db.relationship("Store")

    @property
    def available(self) -> int:
        return self.stock - self.reserved

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "store_id": self.store_id,
            "stock": self.stock,
            "reserved": self.reserved,
            "available": self.available,
            "low_stock_threshold": self.low_stock_threshold,
            "is_low_stock": self.is_low_stock,
            "updated_at": to_utc_z(self.updated_at),
        }


class InventoryReservation(db.Model):
    """
    A hold on stock pending sale completion.

    Status moves out of HELD exactly once: to COMMITTED (stock decremented)
    or RELEASED (hold dropped).
    """
    __tablename__ = "inventory_reservations"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_reservations_quantity_positive"),
        db.Index("ix_reservations_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)

    # HELD, COMMITTED, RELEASED
    status = db.Column(db.String(16), nullable=False, default="HELD", index=True)

    # Linked once the owning sale is persisted
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
