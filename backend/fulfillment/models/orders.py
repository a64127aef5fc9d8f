from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Order(db.Model):
    """
    Customer order.

    STATUS: only services/order_lifecycle.py writes `status` (and the
    timestamps stamped alongside it). Checkout creates orders at 'paid'.

    ITEMS: OrderItem rows are a snapshot taken at checkout and are never
    re-derived from live product data. They are what must be scanned and
    shipped.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("payment_reference", name="uq_orders_payment_reference"),
        db.Index("ix_orders_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    total_amount_cents = db.Column(db.Integer, nullable=False, default=0)

    # Customer details are opaque to the fulfillment core
    customer_name = db.Column(db.String(255), nullable=False)
    customer_phone = db.Column(db.String(32), nullable=False)
    customer_email = db.Column(db.String(255), nullable=True)
    shipping_address = db.Column(db.Text, nullable=True)

    # Payment gateway confirmation; one order per captured payment
    payment_reference = db.Column(db.String(128), nullable=True)

    # Lifecycle stamps
    packed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Shipping: courier (company + tracking id) or manual (in-store / hand delivery)
    shipping_mode = db.Column(db.String(16), nullable=True)
    shipping_company = db.Column(db.String(120), nullable=True)
    tracking_id = db.Column(db.String(120), nullable=True)

    cancellation_reason = db.Column(db.String(255), nullable=True)

    # Set when a stock decrement failed after the order was already created
    stock_reconciliation_required = db.Column(db.Boolean, nullable=False, default=False, index=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        order_by="OrderItem.position",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} status={self.status!r}>"

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
            "total_amount_cents": self.total_amount_cents,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "customer_email": self.customer_email,
            "shipping_address": self.shipping_address,
            "payment_reference": self.payment_reference,
            "packed_at": to_utc_z(self.packed_at),
            "shipped_at": to_utc_z(self.shipped_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "shipping_mode": self.shipping_mode,
            "shipping_company": self.shipping_company,
            "tracking_id": self.tracking_id,
            "cancellation_reason": self.cancellation_reason,
            "stock_reconciliation_required": self.stock_reconciliation_required,
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """Immutable line item snapshot captured at checkout."""
    __tablename__ = "order_items"
    __table_args__ = (
        db.UniqueConstraint("order_id", "product_id", name="uq_order_items_order_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    # Sequence within the order (0-based); drives "next item to scan"
    position = db.Column(db.Integer, nullable=False)

    name = db.Column(db.String(255), nullable=False)
    price_cents = db.Column(db.Integer, nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    barcode = db.Column(db.String(64), nullable=True)

    @property
    def item_key(self) -> str:
        """Identifier used in packing scan progress maps."""
        return str(self.product_id)

    @property
    def line_total_cents(self) -> int:
        return self.price_cents * self.quantity

    def to_dict(self) -> dict:
        return {
            "item_key": self.item_key,
            "product_id": self.product_id,
            "position": self.position,
            "name": self.name,
            "price_cents": self.price_cents,
            "quantity": self.quantity,
            "barcode": self.barcode,
            "line_total_cents": self.line_total_cents,
        }
