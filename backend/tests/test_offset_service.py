"""
Cross-offset analysis tests: signal handling and the POS-backed signal.
"""

import httpx
import pytest

from stockaudit.services.offset_service import analyze_cross_offsets
from stockaudit.services.pos_client import (
    PosReconciliationClient,
    ProductMeta,
    ReconciliationOutcome,
    match_offsets,
)
from stockaudit.services.scan_service import MissingProductRecord, SurplusRecord


def _missing(barcode, diff=-2, store="BEE"):
    return MissingProductRecord(
        product_name=f"Product {barcode}", barcode=barcode, store_code=store, shift=1,
        system_stock=10, actual_stock=10 + diff, diff=diff, date="2026-01-05",
        consecutive_missing_days=3,
    )


def _over(barcode, diff=2, store="BEE"):
    return SurplusRecord(
        product_name=f"Product {barcode}", barcode=barcode, store_code=store, shift=1,
        system_stock=10, actual_stock=10 + diff, diff=diff, date="2026-01-05",
    )


class FakeSignal:
    def __init__(self, outcome=None, exc=None):
        self.outcome = outcome
        self.exc = exc
        self.calls = 0

    def analyze_against_pos(self, missing_items, over_items):
        self.calls += 1
        if self.exc:
            raise self.exc
        return self.outcome


def test_matched_pair_marks_copy_not_input():
    missing = [_missing("A"), _missing("B")]
    over = [_over("C")]
    signal = FakeSignal(ReconciliationOutcome(success=True, matched_pairs=[
        {"missing_index": 1, "over_index": 0, "missing_barcode": "B", "over_barcode": "C"},
    ]))

    analysis = analyze_cross_offsets(missing, over, signal)

    assert analysis.success is True
    assert analysis.matched_count == 1
    assert analysis.matched_pairs == [{"store_code": "BEE", "missing": "B", "over": "C"}]
    assert analysis.analyzed_missing[1].is_offset is True
    assert analysis.analyzed_missing[1].offset_with_barcode == "C"
    assert analysis.analyzed_missing[0].is_offset is False
    # Caller's records are untouched
    assert missing[1].is_offset is False
    assert missing[1].offset_with_barcode is None


def test_no_overages_skips_the_signal():
    signal = FakeSignal(ReconciliationOutcome(success=True))

    analysis = analyze_cross_offsets([_missing("A")], [], signal)

    assert signal.calls == 0
    assert analysis.success is True
    assert analysis.matched_count == 0
    assert len(analysis.analyzed_missing) == 1


def test_failed_signal_returns_unchanged_records():
    signal = FakeSignal(ReconciliationOutcome(success=False, error="POS down"))

    analysis = analyze_cross_offsets([_missing("A")], [_over("C")], signal)

    assert analysis.success is False
    assert analysis.error == "POS down"
    assert analysis.matched_count == 0
    assert analysis.analyzed_missing[0].is_offset is False


def test_raising_signal_degrades_gracefully():
    signal = FakeSignal(exc=RuntimeError("boom"))

    analysis = analyze_cross_offsets([_missing("A")], [_over("C")], signal)

    assert analysis.success is False
    assert "boom" in analysis.error
    assert [r.barcode for r in analysis.analyzed_missing] == ["A"]


def test_malformed_and_duplicate_pairs_are_ignored():
    signal = FakeSignal(ReconciliationOutcome(success=True, matched_pairs=[
        {"missing_index": 5, "over_index": 0},
        {"missing_index": 0, "over_index": 0, "missing_barcode": "WRONG"},
        "garbage",
        {"missing_index": 0, "over_index": 0},
        {"missing_index": 1, "over_index": 0},
    ]))

    analysis = analyze_cross_offsets([_missing("A"), _missing("B")], [_over("C")], signal)

    assert analysis.matched_count == 1
    assert analysis.analyzed_missing[0].offset_with_barcode == "C"
    assert analysis.analyzed_missing[1].is_offset is False


def test_match_offsets_pairs_same_category_and_price():
    meta = {
        "A": ProductMeta(category_id=1, base_price=10000),
        "B": ProductMeta(category_id=2, base_price=10000),
        "C": ProductMeta(category_id=1, base_price=10000),
        "D": ProductMeta(category_id=1, base_price=10000),
    }

    pairs = match_offsets(
        [_missing("A"), _missing("B"), _missing("Z")],
        [_over("C"), _over("D")],
        meta,
    )

    assert pairs == [{"missing_index": 0, "over_index": 0, "missing_barcode": "A", "over_barcode": "C"}]


def _pos_transport(products, *, token_status=200, product_status=200, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if request.url.path.endswith("/connect/token"):
            if token_status != 200:
                return httpx.Response(token_status, text="denied")
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        if request.url.path.endswith("/products"):
            if product_status != 200:
                return httpx.Response(product_status, text="error")
            codes = request.url.params["code"].split(",")
            return httpx.Response(200, json={"data": [p for p in products if p["code"] in codes]})
        return httpx.Response(404)
    return httpx.MockTransport(handler)


def _client(transport, **overrides):
    config = {
        "POS_TOKEN_URL": "https://id.pos.test/connect/token",
        "POS_API_URL": "https://api.pos.test",
        "POS_RETAILER": "shop",
        "POS_CLIENT_ID": "id",
        "POS_CLIENT_SECRET": "secret",
        "POS_TIMEOUT_SECONDS": 5,
    }
    config.update(overrides)
    return PosReconciliationClient.from_config(config, transport=transport)


def test_pos_client_matches_look_alike_products():
    seen = []
    products = [
        {"code": "A", "categoryId": 7, "basePrice": 25000},
        {"code": "C", "categoryId": 7, "basePrice": 25000},
    ]
    client = _client(_pos_transport(products, seen=seen))

    analysis = analyze_cross_offsets([_missing("A")], [_over("C")], client)

    assert analysis.success is True
    assert analysis.matched_pairs == [{"store_code": "BEE", "missing": "A", "over": "C"}]
    product_request = seen[-1]
    assert product_request.headers["Authorization"] == "Bearer tok"
    assert product_request.headers["Retailer"] == "shop"


def test_pos_client_chunks_product_lookups():
    seen = []
    missing = [_missing(f"M{i:02d}") for i in range(25)]
    client = _client(_pos_transport([], seen=seen))

    outcome = client.analyze_against_pos(missing, [_over("O")])

    assert outcome.success is True
    product_requests = [r for r in seen if r.url.path.endswith("/products")]
    assert len(product_requests) == 2


def test_pos_client_auth_failure_is_reported():
    client = _client(_pos_transport([], token_status=401))

    analysis = analyze_cross_offsets([_missing("A")], [_over("C")], client)

    assert analysis.success is False
    assert "401" in analysis.error


def test_pos_client_lookup_failure_only_loses_matches():
    client = _client(_pos_transport([], product_status=500))

    outcome = client.analyze_against_pos([_missing("A")], [_over("C")])

    assert outcome.success is True
    assert outcome.matched_pairs == []


def test_unconfigured_pos_client_reports_not_configured():
    client = _client(_pos_transport([]), POS_CLIENT_SECRET="")

    outcome = client.analyze_against_pos([_missing("A")], [_over("C")])

    assert outcome.success is False
    assert "not configured" in outcome.error


def test_transport_error_is_reported():
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    client = _client(httpx.MockTransport(handler))

    outcome = client.analyze_against_pos([_missing("A")], [_over("C")])

    assert outcome.success is False
    assert "unreachable" in outcome.error


@pytest.mark.parametrize("pairs", [None, []])
def test_successful_signal_without_pairs(pairs):
    signal = FakeSignal(ReconciliationOutcome(success=True, matched_pairs=pairs))

    analysis = analyze_cross_offsets([_missing("A")], [_over("C")], signal)

    assert analysis.success is True
    assert analysis.matched_count == 0
