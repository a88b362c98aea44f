import sqlalchemy as sa

from campusmarket.extensions import db
from campusmarket.utils.clock import utc_now


class Thread(db.Model):
    __tablename__ = "threads"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    buyer_id = db.Column(db.String(64), nullable=False, index=True)
    seller_id = db.Column(db.String(64), nullable=False, index=True)
    is_anonymous = db.Column(db.Boolean, nullable=False, default=True, server_default=sa.text("true"))
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "buyer_id": self.buyer_id or "",
            "seller_id": self.seller_id or "",
            "is_anonymous": bool(self.is_anonymous),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
