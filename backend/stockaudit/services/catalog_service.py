# Overview: Barcode to product-id resolution against the product catalog.

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable

from ..extensions import db
from ..models import Product


class ProductCatalog(ABC):
    @abstractmethod
    def resolve_product_ids(self, barcodes: Iterable[str]) -> dict[str, int]:
        """
        Batch lookup keyed by the barcodes exactly as passed in. Unknown
        barcodes are simply absent from the result; they never fail the batch.
        """


class DatabaseProductCatalog(ProductCatalog):
    # SQLite caps bound parameters per statement
    CHUNK_SIZE = 500

    def resolve_product_ids(self, barcodes: Iterable[str]) -> dict[str, int]:
        # Archived barcodes may carry stray whitespace; match on the trimmed value
        requested: dict[str, set[str]] = {}
        for barcode in barcodes:
            if barcode and barcode.strip():
                requested.setdefault(barcode.strip(), set()).add(barcode)

        wanted = sorted(requested)
        resolved: dict[str, int] = {}

        for start in range(0, len(wanted), self.CHUNK_SIZE):
            chunk = wanted[start:start + self.CHUNK_SIZE]
            rows = (
                db.session.query(Product.barcode, Product.id)
                .filter(Product.barcode.in_(chunk))
                .all()
            )
            for barcode, product_id in rows:
                for original in requested[barcode]:
                    resolved[original] = product_id

        return resolved
