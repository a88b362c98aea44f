from campusmarket.extensions import db
from campusmarket.utils.clock import utc_now


class Order(db.Model):
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_auto_release_due", "state", "auto_release_at"),
        db.Index("ix_orders_listing_buyer", "listing_id", "buyer_id"),
    )

    id = db.Column(db.Integer, primary_key=True)

    listing_id = db.Column(db.Integer, db.ForeignKey("listings.id"), nullable=False, index=True)
    buyer_id = db.Column(db.String(64), nullable=False, index=True)
    seller_id = db.Column(db.String(64), nullable=False, index=True)

    # buy | rent
    type = db.Column(db.String(8), nullable=False, default="buy", server_default="buy")
    quantity = db.Column(db.Integer, nullable=False, default=1, server_default="1")
    rental_days = db.Column(db.Integer, nullable=True)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0, server_default="0")
    deposit_cents = db.Column(db.Integer, nullable=True)
    fees_cents = db.Column(db.Integer, nullable=False, default=0, server_default="0")
    total_cents = db.Column(db.Integer, nullable=False, default=0, server_default="0")
    currency = db.Column(db.String(8), nullable=False, default="usd", server_default="usd")

    state = db.Column(db.String(32), nullable=False, default="initiated", server_default="initiated", index=True)
    delivery_method = db.Column(db.String(32), nullable=True)

    stripe_payment_intent_id = db.Column(db.String(255), nullable=True, unique=True)

    delivery_proof_path = db.Column(db.String(1024), nullable=True)
    delivery_notes = db.Column(db.Text, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    auto_release_at = db.Column(db.DateTime, nullable=True)
    confirmed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    cancel_reason = db.Column(db.String(240), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_by = db.Column(db.String(64), nullable=True)

    def money_is_consistent(self) -> bool:
        expected = int(self.subtotal_cents or 0) + int(self.deposit_cents or 0) + int(self.fees_cents or 0)
        return int(self.total_cents or 0) == expected

    def to_dict(self):
        return {
            "id": int(self.id),
            "listing_id": int(self.listing_id),
            "buyer_id": self.buyer_id or "",
            "seller_id": self.seller_id or "",
            "type": self.type or "buy",
            "quantity": int(self.quantity or 1),
            "rental_days": int(self.rental_days) if self.rental_days is not None else None,
            "subtotal_cents": int(self.subtotal_cents or 0),
            "deposit_cents": int(self.deposit_cents) if self.deposit_cents is not None else None,
            "fees_cents": int(self.fees_cents or 0),
            "total_cents": int(self.total_cents or 0),
            "currency": self.currency or "usd",
            "state": self.state or "",
            "delivery_method": self.delivery_method or "",
            "stripe_payment_intent_id": self.stripe_payment_intent_id,
            "delivery_proof_path": self.delivery_proof_path,
            "delivery_notes": self.delivery_notes,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "auto_release_at": self.auto_release_at.isoformat() if self.auto_release_at else None,
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "cancel_reason": self.cancel_reason or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "updated_by": self.updated_by or "",
        }
