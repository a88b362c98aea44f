import json
import sqlalchemy as sa

from campusmarket.extensions import db
from campusmarket.utils.clock import utc_now


DELIVERY_METHODS = ("in_person", "ticket_transfer", "barcode_upload", "mail")


class Listing(db.Model):
    __tablename__ = "listings"

    id = db.Column(db.Integer, primary_key=True)

    # Identity-provider subject of the seller
    seller_id = db.Column(db.String(64), nullable=False, index=True)

    title = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(24), nullable=False, default="active", server_default="active", index=True)
    condition = db.Column(db.String(24), nullable=True)
    campus_location = db.Column(db.String(100), nullable=True)

    # Sale pricing
    price_cents = db.Column(db.Integer, nullable=True)

    # Rental pricing
    is_rental = db.Column(db.Boolean, nullable=False, default=False, server_default=sa.text("false"))
    rental_day_price_cents = db.Column(db.Integer, nullable=True)
    rental_deposit_cents = db.Column(db.Integer, nullable=True)
    rental_min_days = db.Column(db.Integer, nullable=True)
    rental_max_days = db.Column(db.Integer, nullable=True)

    quantity = db.Column(db.Integer, nullable=False, default=1, server_default="1")
    delivery_methods_json = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def is_active(self) -> bool:
        return (self.status or "").strip().lower() == "active"

    def delivery_methods(self) -> list[str]:
        raw = self.delivery_methods_json
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
        except Exception:
            return []
        if not isinstance(parsed, list):
            return []
        return [str(m) for m in parsed if str(m) in DELIVERY_METHODS]

    def to_dict(self):
        return {
            "id": int(self.id),
            "seller_id": self.seller_id or "",
            "title": self.title or "",
            "description": self.description or "",
            "status": self.status or "",
            "condition": self.condition or "",
            "campus_location": self.campus_location or "",
            "price_cents": int(self.price_cents) if self.price_cents is not None else None,
            "is_rental": bool(self.is_rental),
            "rental_day_price_cents": int(self.rental_day_price_cents) if self.rental_day_price_cents is not None else None,
            "rental_deposit_cents": int(self.rental_deposit_cents) if self.rental_deposit_cents is not None else None,
            "rental_min_days": int(self.rental_min_days) if self.rental_min_days is not None else None,
            "rental_max_days": int(self.rental_max_days) if self.rental_max_days is not None else None,
            "quantity": int(self.quantity or 1),
            "delivery_methods": self.delivery_methods(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
