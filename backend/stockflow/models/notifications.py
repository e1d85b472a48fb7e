from __future__ import annotations

from ..extensions import db
from stockflow.time_utils import to_utc_z

NOTIFY_LOW_STOCK = "LowStock"
NOTIFY_OUT_OF_STOCK = "OutOfStock"
NOTIFY_PRICE_CHANGE = "PriceChange"
NOTIFY_SALE = "Sale"
NOTIFY_SYSTEM = "System"
NOTIFICATION_TYPES = (
    NOTIFY_LOW_STOCK,
    NOTIFY_OUT_OF_STOCK,
    NOTIFY_PRICE_CHANGE,
    NOTIFY_SALE,
    NOTIFY_SYSTEM,
)


class Notification(db.Model):
    """
    Alert produced as a side effect of stock or sale operations.

    Only the read flag is ever mutated after insert.
    """
    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("ix_notifications_read_created", "read", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    type = db.Column(db.String(16), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    read = db.Column(db.Boolean, nullable=False, default=False)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)
    variant_name = db.Column(db.String(120), nullable=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "read": self.read,
            "product_id": self.product_id,
            "variant_name": self.variant_name,
            "sale_id": self.sale_id,
            "date": to_utc_z(self.created_at),
        }
