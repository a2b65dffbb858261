"""
Unit tests for core/ledger.py (folding engine).

Covers the consistency properties of the subscription fold (idempotence,
order insensitivity, monotonic renewal, burn precedence, block-order
example), revenue additivity, rates, token distribution and user history.
"""

from __future__ import annotations

import itertools
import random

from core.ledger import (
    active_subscriber_count,
    build_user_history,
    churn_rate,
    dedupe_events,
    fold_merchant_revenue,
    fold_subscription,
    fold_subscriptions,
    renewal_rate,
    token_distribution,
)
from tests.helpers import (
    NATIVE,
    SUBSCRIBER_A,
    SUBSCRIBER_B,
    TOKEN_USDC,
    burned,
    expired,
    minted,
    payment,
    renewed,
)

# ---------------------------------------------------------------------------
# Fixture event sets
# ---------------------------------------------------------------------------

# Block 15 burn sits between the mint (10) and the renewal (20)
EXAMPLE = [
    minted(expires_at=100, renewal_count=0, block=10),
    renewed(new_expires_at=200, renewal_count=1, block=20),
    burned(block=15),
]


def _state(events, subscriber=SUBSCRIBER_A, merchant_id=1):
    return fold_subscription(events, subscriber, merchant_id)


# ===========================================================================
# Subscription fold
# ===========================================================================


class TestExampleScenario:
    def test_block_order_governs_result(self):
        state = _state(EXAMPLE)
        assert state.expires_at == 200
        assert state.renewal_count == 1
        assert state.burned is False
        assert state.is_active(150) is True
        assert state.is_active(200) is False
        assert state.last_order_key == (20, 0)
        assert state.minted_at_block == 10


class TestFoldProperties:
    def test_idempotent_under_replay(self):
        once = _state(EXAMPLE)
        twice = _state(EXAMPLE + EXAMPLE)
        assert once == twice

    def test_order_insensitive(self):
        expected = _state(EXAMPLE)
        for permutation in itertools.permutations(EXAMPLE):
            assert _state(list(permutation)) == expected

    def test_order_insensitive_larger_shuffle(self):
        events = [minted(block=1, expires_at=10)] + [
            renewed(block=b, new_expires_at=10 + b, renewal_count=b) for b in range(2, 30)
        ]
        events.append(burned(block=17, log_index=1))
        expected = _state(events)
        rng = random.Random(42)
        for _ in range(20):
            shuffled = events[:]
            rng.shuffle(shuffled)
            assert _state(shuffled) == expected

    def test_monotonic_renewal_takes_last_event_verbatim(self):
        events = [
            minted(expires_at=100, renewal_count=0, block=1),
            renewed(new_expires_at=300, renewal_count=5, block=2),
            renewed(new_expires_at=250, renewal_count=2, block=3),
        ]
        state = _state(events)
        # last event wins even if its values look "smaller"
        assert state.expires_at == 250
        assert state.renewal_count == 2

    def test_burn_after_everything_is_never_active(self):
        events = [
            minted(expires_at=10**12, block=1),
            renewed(new_expires_at=10**13, block=2),
            burned(block=3),
        ]
        state = _state(events)
        assert state.burned is True
        assert state.expires_at is None
        for now in (0, 1, 10**12, 10**18):
            assert state.is_active(now) is False

    def test_log_index_breaks_same_block_ties(self):
        events = [
            burned(block=5, log_index=2),
            minted(expires_at=500, block=5, log_index=1),
        ]
        assert _state(events).burned is True

    def test_remint_after_burn_is_active(self):
        events = [
            minted(expires_at=100, block=1),
            burned(block=2),
            minted(expires_at=900, block=3),
        ]
        state = _state(events)
        assert state.is_active(500)
        assert state.minted_at_block == 3

    def test_unordered_events_excluded_and_counted(self):
        events = [minted(expires_at=100, block=1), burned(block=None, log_index=None)]
        fold = fold_subscriptions(events)
        assert fold.unordered == 1
        assert fold.states[(SUBSCRIBER_A.lower(), 1)].is_active(50)

    def test_expired_event_is_informational(self):
        state = _state([minted(expires_at=100, block=1), expired(block=2)])
        assert state.expires_at == 100

    def test_pairs_folded_independently(self):
        events = [
            minted(subscriber=SUBSCRIBER_A, merchant_id=1, block=1),
            minted(subscriber=SUBSCRIBER_B, merchant_id=1, block=2),
            minted(subscriber=SUBSCRIBER_A, merchant_id=2, block=3),
            burned(subscriber=SUBSCRIBER_A, merchant_id=2, block=4),
        ]
        fold = fold_subscriptions(events)
        assert len(fold.states) == 3
        assert len(fold.for_merchant(1)) == 2
        assert {s.merchant_id for s in fold.for_subscriber(SUBSCRIBER_A.lower())} == {1, 2}

    def test_last_payment_tracked(self):
        events = [
            minted(block=1),
            payment(block=1, log_index=1, amount=10),
            payment(block=9, log_index=0, amount=20),
        ]
        assert _state(events).last_payment.amount == 20

    def test_pair_without_lifecycle_events_is_absent(self):
        assert _state([payment()]) is None
        assert _state([]) is None


class TestDedupe:
    def test_first_occurrence_wins(self):
        a = payment(block=1, amount=10)
        replay = payment(block=1, amount=10)
        assert dedupe_events([a, replay]) == [a]

    def test_same_position_different_kind_kept(self):
        assert len(dedupe_events([minted(block=1, log_index=0), burned(block=1, log_index=0)])) == 2


# ===========================================================================
# Revenue
# ===========================================================================


class TestMerchantRevenue:
    def test_revenue_is_net_of_fees(self):
        events = [
            payment(amount=1_000, platform_fee=50, block=1),
            payment(amount=2_000, platform_fee=100, block=2, subscriber=SUBSCRIBER_B),
            payment(amount=500, platform_fee=0, block=3),
        ]
        revenue = fold_merchant_revenue(events, merchant_id=1)
        assert revenue.total_revenue == 3_350
        assert revenue.gross_volume == 3_500
        assert revenue.platform_fees == 150
        assert revenue.payment_count == 3
        assert revenue.subscribers == {SUBSCRIBER_A.lower(), SUBSCRIBER_B.lower()}

    def test_other_merchants_excluded(self):
        events = [payment(merchant_id=1, block=1), payment(merchant_id=2, block=2)]
        assert fold_merchant_revenue(events, merchant_id=2).payment_count == 1
        assert fold_merchant_revenue(events).payment_count == 2

    def test_additive_over_disjoint_sets(self):
        e1 = [payment(block=b, amount=b * 7, platform_fee=b) for b in range(1, 6)]
        e2 = [payment(block=b, amount=b * 11, platform_fee=b * 2) for b in range(10, 14)]
        both = fold_merchant_revenue(e1 + e2)
        assert both.total_revenue == (
            fold_merchant_revenue(e1).total_revenue + fold_merchant_revenue(e2).total_revenue
        )
        assert both.gross_volume == (
            fold_merchant_revenue(e1).gross_volume + fold_merchant_revenue(e2).gross_volume
        )

    def test_uint256_amounts_do_not_overflow(self):
        big = 2**256 - 1
        revenue = fold_merchant_revenue(
            [payment(amount=big, platform_fee=0, block=1), payment(amount=big, platform_fee=0, block=2)]
        )
        assert revenue.total_revenue == 2 * big

    def test_fee_above_amount_clamps_to_zero(self):
        revenue = fold_merchant_revenue([payment(amount=10, platform_fee=20)])
        assert revenue.total_revenue == 0
        assert revenue.platform_fees == 20

    def test_unordered_payments_still_counted(self):
        revenue = fold_merchant_revenue([payment(block=None, log_index=None, tx="")])
        assert revenue.payment_count == 1


# ===========================================================================
# Rates and counts
# ===========================================================================


class TestRates:
    def test_renewal_rate_zero_without_mints(self):
        assert renewal_rate(5, 0) == 0.0

    def test_renewal_rate_percentage(self):
        assert renewal_rate(1, 4) == 25.0

    def test_churn_rate(self):
        fold = fold_subscriptions(
            [
                minted(subscriber=SUBSCRIBER_A, expires_at=1_000, block=1),
                minted(subscriber=SUBSCRIBER_B, expires_at=50, block=2),
            ]
        )
        assert churn_rate(fold.states.values(), reference_time=100) == 50.0
        assert churn_rate([], reference_time=100) == 0.0

    def test_active_subscriber_count_dedupes_subscribers(self):
        fold = fold_subscriptions(
            [
                minted(subscriber=SUBSCRIBER_A, merchant_id=1, expires_at=1_000, block=1),
                minted(subscriber=SUBSCRIBER_A, merchant_id=2, expires_at=1_000, block=2),
                minted(subscriber=SUBSCRIBER_B, merchant_id=1, expires_at=10, block=3),
            ]
        )
        states = list(fold.states.values())
        assert active_subscriber_count(states, 100) == 1
        assert active_subscriber_count(states, 5, merchant_id=1) == 2


# ===========================================================================
# Token distribution
# ===========================================================================


class TestTokenDistribution:
    def test_percentages_floor_to_two_decimals(self):
        events = [
            payment(token=NATIVE, amount=1, block=1),
            payment(token=TOKEN_USDC, amount=1, block=2),
            payment(token="0x" + "88" * 20, amount=1, block=3),
        ]
        rows = token_distribution(fold_merchant_revenue(events), {TOKEN_USDC: "USDC"})
        assert [row.percentage for row in rows] == [33.33, 33.33, 33.33]
        symbols = {row.token: row.symbol for row in rows}
        assert symbols[NATIVE] == "ETH"
        assert symbols[TOKEN_USDC.lower()] == "USDC"
        assert symbols["0x" + "88" * 20] == "UNKNOWN"

    def test_sorted_by_volume_with_limit(self):
        events = [
            payment(token=NATIVE, amount=10, block=1),
            payment(token=TOKEN_USDC, amount=30, block=2),
            payment(token=TOKEN_USDC, amount=60, block=3),
        ]
        rows = token_distribution(fold_merchant_revenue(events), limit=1)
        assert len(rows) == 1
        assert rows[0].token == TOKEN_USDC.lower()
        assert rows[0].volume == 90
        assert rows[0].transactions == 2
        assert rows[0].percentage == 90.0

    def test_empty(self):
        assert token_distribution(fold_merchant_revenue([])) == []


# ===========================================================================
# User history
# ===========================================================================


class TestUserHistory:
    def test_history_per_merchant(self):
        events = [
            minted(merchant_id=2, expires_at=1_000, block=5),
            payment(merchant_id=2, amount=300, block=5, log_index=1),
            payment(merchant_id=2, amount=300, block=8, log_index=1),
            minted(merchant_id=1, expires_at=50, block=3),
            payment(merchant_id=1, amount=100, block=3, log_index=1),
            minted(subscriber=SUBSCRIBER_B, merchant_id=1, block=4),
        ]
        history = build_user_history(events, SUBSCRIBER_A, reference_time=100)
        assert [entry.merchant_id for entry in history] == [1, 2]
        assert history[0].amount == 100
        assert history[0].is_active is False
        assert history[1].amount == 600
        assert history[1].start_block == 5
        assert history[1].is_active is True

    def test_unknown_user_has_no_history(self):
        assert build_user_history(EXAMPLE, SUBSCRIBER_B, reference_time=0) == []
