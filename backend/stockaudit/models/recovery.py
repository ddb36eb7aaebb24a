from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class RecoveryTicket(db.Model):
    """
    Loss-recovery (chargeback) case for a sustained stock shortage.

    LIFECYCLE:
        PENDING -> APPROVED -> IN_PROGRESS -> RECOVERED
        PENDING -> REJECTED
        PENDING | APPROVED | IN_PROGRESS -> CANCELLED

    Status only changes through recovery_service transitions, which apply a
    conditional UPDATE on the status column. Tickets are never deleted.

    total_amount is quantity * unit_price at creation (and on PENDING edits).
    recovered_amount is what was actually collected and may differ.
    """
    __tablename__ = "recovery_tickets"
    __table_args__ = (
        db.Index("ix_recovery_tickets_store_status", "store_id", "status"),
        db.Index("ix_recovery_tickets_created_at", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)

    # Denormalized product identity as seen at audit time
    product_name = db.Column(db.String(255), nullable=True)
    barcode = db.Column(db.String(64), nullable=True, index=True)

    # Amounts in minor currency units
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.BigInteger, nullable=False, default=0)
    total_amount = db.Column(db.BigInteger, nullable=False, default=0)
    recovered_amount = db.Column(db.BigInteger, nullable=True)

    # PENDING, APPROVED, IN_PROGRESS, RECOVERED, REJECTED, CANCELLED
    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)

    reason = db.Column(db.Text, nullable=False)
    notes = db.Column(db.Text, nullable=True)

    # User attribution for accountability
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    approved_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    rejected_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    cancelled_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    assigned_to_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    # Timestamps for each lifecycle stage
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    in_progress_at = db.Column(db.DateTime(timezone=True), nullable=True)
    recovered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    rejection_reason = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    store = db.relationship("Store")
    product = db.relationship("Product")
    created_by = db.relationship("User", foreign_keys=[created_by_user_id])
    assigned_to = db.relationship("User", foreign_keys=[assigned_to_user_id])
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "store_code": self.store.code if self.store else None,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "barcode": self.barcode,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "total_amount": self.total_amount,
            "recovered_amount": self.recovered_amount,
            "status": self.status,
            "reason": self.reason,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "approved_by_user_id": self.approved_by_user_id,
            "rejected_by_user_id": self.rejected_by_user_id,
            "cancelled_by_user_id": self.cancelled_by_user_id,
            "assigned_to_user_id": self.assigned_to_user_id,
            "rejection_reason": self.rejection_reason,
            "created_at": to_utc_z(self.created_at),
            "submitted_at": to_utc_z(self.submitted_at),
            "approved_at": to_utc_z(self.approved_at),
            "rejected_at": to_utc_z(self.rejected_at),
            "in_progress_at": to_utc_z(self.in_progress_at),
            "recovered_at": to_utc_z(self.recovered_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class RecoveryHistoryEntry(db.Model):
    """Append-only audit trail: one row per transition or assignment."""
    __tablename__ = "recovery_history"
    __table_args__ = (
        db.Index("ix_recovery_history_ticket", "ticket_id", "changed_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(db.Integer, db.ForeignKey("recovery_tickets.id"), nullable=False)
    changed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    previous_status = db.Column(db.String(16), nullable=True)
    new_status = db.Column(db.String(16), nullable=False)
    notes = db.Column(db.Text, nullable=True)

    changed_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    ticket = db.relationship("RecoveryTicket", backref=db.backref("history", lazy=True, order_by="RecoveryHistoryEntry.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "changed_by_user_id": self.changed_by_user_id,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "notes": self.notes,
            "changed_at": to_utc_z(self.changed_at),
        }
