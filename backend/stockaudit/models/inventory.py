from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Product(db.Model):
    """
    Product catalog entry.

    Barcodes are chain-wide: a barcode read from an archived snapshot line
    resolves to exactly one product. Products without a barcode can only be
    matched by name and are never resolved automatically.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("barcode", name="uq_products_barcode"),
        db.Index("ix_products_name", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    barcode = db.Column(db.String(64), nullable=True)
    sp = db.Column(db.String(64), nullable=True)

    # Retail price in minor currency units
    price = db.Column(db.BigInteger, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Product id={self.id} barcode={self.barcode!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "barcode": self.barcode,
            "sp": self.sp,
            "price": self.price,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
