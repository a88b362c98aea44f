import json

from sqlalchemy import event

from campusmarket.extensions import db
from campusmarket.utils.clock import utc_now


class OrderEvent(db.Model):
    __tablename__ = "order_events"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    type = db.Column(db.String(48), nullable=False, index=True)
    actor = db.Column(db.String(64), nullable=False, default="system")
    from_state = db.Column(db.String(32), nullable=True)
    to_state = db.Column(db.String(32), nullable=True)
    data_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now, index=True)

    def data_dict(self) -> dict:
        raw = self.data_json
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, dict):
                return parsed
        except Exception:
            pass
        return {"raw": str(raw)}

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "type": self.type or "",
            "actor": self.actor or "",
            "from_state": self.from_state,
            "to_state": self.to_state,
            "data": self.data_dict(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@event.listens_for(OrderEvent, "before_update")
def _refuse_event_update(mapper, connection, target):
    raise RuntimeError(f"order_events are append-only (event {target.id})")


@event.listens_for(OrderEvent, "before_delete")
def _refuse_event_delete(mapper, connection, target):
    raise RuntimeError(f"order_events are append-only (event {target.id})")
