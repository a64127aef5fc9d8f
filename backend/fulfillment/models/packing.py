from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


ACTIVE_SESSION_STATUS = "in_progress"


class PackingSession(db.Model):
    """
    Resumable packing run for one order.

    scan_progress maps OrderItem.item_key -> scanned count. The dict is
    always replaced, never mutated in place, so the JSON column change is
    picked up on flush.

    At most one 'in_progress' session exists per order (partial unique
    index). version_id turns concurrent progress writes into a conflict
    instead of a silent overwrite.
    """
    __tablename__ = "packing_sessions"
    __table_args__ = (
        db.Index(
            "uq_packing_sessions_active_order",
            "order_id",
            unique=True,
            sqlite_where=db.text("status = 'in_progress'"),
            postgresql_where=db.text("status = 'in_progress'"),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default=ACTIVE_SESSION_STATUS, index=True)
    scan_progress = db.Column(db.JSON, nullable=False, default=dict)

    admin_email = db.Column(db.String(255), nullable=True)

    started_at = db.Column(db.DateTime(timezone=True), nullable=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    packing_duration_minutes = db.Column(db.Integer, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", backref=db.backref("packing_sessions", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE_SESSION_STATUS

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "status": self.status,
            "scan_progress": dict(self.scan_progress or {}),
            "admin_email": self.admin_email,
            "started_at": to_utc_z(self.started_at),
            "completed_at": to_utc_z(self.completed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "packing_duration_minutes": self.packing_duration_minutes,
            "version_id": self.version_id,
        }
