# Overview: HTTP client for the point-of-sale catalog used as the cross-offset reconciliation signal.

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

import httpx

logger = logging.getLogger(__name__)

# POS product search accepts a comma-separated list of codes
CODE_CHUNK_SIZE = 20
PAGE_SIZE = 100


class PosReconciliationError(Exception):
    """Raised when the POS service rejects a request."""
    pass


@dataclass(frozen=True)
class ProductMeta:
    category_id: int | None
    base_price: int | float | None


@dataclass
class ReconciliationOutcome:
    """
    Answer of the reconciliation signal.

    matched_pairs items: {"missing_index", "over_index", "missing_barcode", "over_barcode"}
    where the indexes refer to the lists passed to analyze_against_pos.
    """
    success: bool
    matched_pairs: list[dict] = field(default_factory=list)
    error: str | None = None


def match_offsets(missing_items: Sequence, over_items: Sequence, meta: dict[str, ProductMeta]) -> list[dict]:
    """
    Pair shortages with overages of look-alike products.

    Two products look alike when the POS catalog puts them in the same
    category at the same base price (typical barcode mix-up at checkout).
    Each shortage takes the first unused overage; each overage is used once.
    Items without catalog metadata never match.

    Pairing deliberately ignores store_code and may pair a barcode with
    itself (short in one shift, over in another).
    """
    used_over: set[int] = set()
    pairs: list[dict] = []

    for m_idx, missing in enumerate(missing_items):
        if getattr(missing, "is_offset", False):
            continue
        meta_missing = meta.get(missing.barcode) if missing.barcode else None
        if meta_missing is None:
            continue

        for o_idx, over in enumerate(over_items):
            if o_idx in used_over or getattr(over, "is_offset", False):
                continue
            meta_over = meta.get(over.barcode) if over.barcode else None
            if meta_over is None:
                continue
            if (meta_over.category_id == meta_missing.category_id
                    and meta_over.base_price == meta_missing.base_price):
                used_over.add(o_idx)
                pairs.append({
                    "missing_index": m_idx,
                    "over_index": o_idx,
                    "missing_barcode": missing.barcode,
                    "over_barcode": over.barcode,
                })
                break

    return pairs


class PosReconciliationClient:
    """
    Reconciliation signal backed by the POS public API.

    Authenticates with OAuth client credentials, looks up category and base
    price for every barcode involved, then pairs look-alike shortages and
    overages with match_offsets().
    """

    def __init__(
        self,
        *,
        token_url: str,
        api_url: str,
        retailer: str,
        client_id: str,
        client_secret: str,
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.token_url = token_url
        self.api_url = api_url.rstrip("/")
        self.retailer = retailer
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_config(cls, config, *, transport: httpx.BaseTransport | None = None) -> "PosReconciliationClient":
        return cls(
            token_url=config.get("POS_TOKEN_URL", ""),
            api_url=config.get("POS_API_URL", ""),
            retailer=config.get("POS_RETAILER", ""),
            client_id=config.get("POS_CLIENT_ID", ""),
            client_secret=config.get("POS_CLIENT_SECRET", ""),
            timeout=float(config.get("POS_TIMEOUT_SECONDS", 15.0)),
            transport=transport,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.retailer and self.client_id and self.client_secret)

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, transport=self._transport)

    def _get_token(self, client: httpx.Client) -> str:
        response = client.post(
            self.token_url,
            data={
                "scopes": "PublicApi.Access",
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
        )
        if response.status_code != 200:
            logger.error("POS token request failed: status=%s body=%s", response.status_code, response.text[:200])
            raise PosReconciliationError(f"POS auth failed ({response.status_code})")

        token = response.json().get("access_token")
        if not token:
            raise PosReconciliationError("Token response missing access_token")
        return token

    def fetch_product_meta(self, client: httpx.Client, token: str, barcodes: Sequence[str]) -> dict[str, ProductMeta]:
        headers = {"Authorization": f"Bearer {token}", "Retailer": self.retailer}
        meta: dict[str, ProductMeta] = {}

        for start in range(0, len(barcodes), CODE_CHUNK_SIZE):
            chunk = barcodes[start:start + CODE_CHUNK_SIZE]
            response = client.get(
                f"{self.api_url}/products",
                params={"code": ",".join(chunk), "pageSize": PAGE_SIZE},
                headers=headers,
            )
            if response.status_code != 200:
                # One bad chunk only loses matches for its codes
                logger.warning("POS product lookup failed for chunk at %d: status=%s", start, response.status_code)
                continue

            for product in response.json().get("data") or []:
                entry = ProductMeta(
                    category_id=product.get("categoryId"),
                    base_price=product.get("basePrice"),
                )
                if product.get("code"):
                    meta[product["code"]] = entry
                if product.get("barCode"):
                    meta[product["barCode"]] = entry

        return meta

    def analyze_against_pos(self, missing_items: Sequence, over_items: Sequence) -> ReconciliationOutcome:
        if not self.is_configured:
            return ReconciliationOutcome(success=False, error="POS reconciliation is not configured")

        barcodes = sorted({i.barcode for i in [*missing_items, *over_items] if i.barcode})
        logger.info(
            "Reconciling %d missing / %d over item(s) against POS (%d barcode(s))",
            len(missing_items), len(over_items), len(barcodes),
        )

        try:
            with self._client() as client:
                token = self._get_token(client)
                meta = self.fetch_product_meta(client, token, barcodes)
        except (httpx.HTTPError, PosReconciliationError, ValueError) as exc:
            return ReconciliationOutcome(success=False, error=f"POS reconciliation failed: {exc}")

        pairs = match_offsets(missing_items, over_items, meta)
        logger.info("POS reconciliation matched %d offset pair(s)", len(pairs))
        return ReconciliationOutcome(success=True, matched_pairs=pairs)
