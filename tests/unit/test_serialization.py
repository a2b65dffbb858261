"""
Unit tests for shared/serialization_utils.py.
"""

from __future__ import annotations

import json

from hexbytes import HexBytes

from core.ledger import fold_merchant_revenue
from shared.serialization_utils import to_json
from shared.types import BlockRange, BucketedSeries, BucketPoint, Granularity, PlatformSnapshot
from tests.helpers import SUBSCRIBER_A, SUBSCRIBER_B, minted, payment


class TestLedgerJSONEncoder:
    def test_unsafe_integers_become_strings(self):
        data = json.loads(to_json({"small": 2**53 - 1, "big": 2**256 - 1, "neg": -(2**60)}))
        assert data["small"] == 2**53 - 1
        assert data["big"] == str(2**256 - 1)
        assert data["neg"] == str(-(2**60))

    def test_bools_untouched(self):
        assert json.loads(to_json({"flag": True})) == {"flag": True}

    def test_hexbytes(self):
        assert json.loads(to_json(HexBytes(b"\xab\xcd"))) == "0xabcd"

    def test_event_carries_kind(self):
        data = json.loads(to_json(minted(expires_at=2**64 - 1)))
        assert data["kind"] == "SubscriptionMinted"
        assert data["subscriber"] == SUBSCRIBER_A
        assert data["expires_at"] == str(2**64 - 1)

    def test_sets_sorted(self):
        revenue = fold_merchant_revenue(
            [payment(subscriber=SUBSCRIBER_B, block=1), payment(block=2)]
        )
        data = json.loads(to_json(revenue))
        assert data["subscribers"] == sorted([SUBSCRIBER_A.lower(), SUBSCRIBER_B.lower()])

    def test_nested_snapshot(self):
        snapshot = PlatformSnapshot(
            block_range=BlockRange(1, 2), reference_time=5, total_volume=10**30
        )
        data = json.loads(to_json(snapshot))
        assert data["block_range"] == {"from_block": 1, "to_block": 2}
        assert data["total_volume"] == str(10**30)

    def test_series_enum_values(self):
        series = BucketedSeries(
            granularity=Granularity.WEEKLY,
            points=[BucketPoint(label="2024-W01", timestamp=1_704_067_200, value=3, count=3)],
        )
        data = json.loads(to_json(series, indent=2))
        assert data["granularity"] == "weekly"
        assert data["points"][0]["label"] == "2024-W01"
