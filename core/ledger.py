"""
Folding engine: pure reductions from event sets to point-in-time aggregates.

Every function here is deterministic in its inputs. Reference time is
always passed in, never read from the wall clock, and nothing raises on
odd data: missing events read as zero or absent.

Ordering model:
    Subscription state is folded in (block_number, log_index) order with a
    stable sort, so the result depends on block order, never on arrival
    order or event type. Events without an order key cannot be placed and
    are excluded from state folds (and counted). Order-independent sums
    (revenue, subscriber sets) still include them.

Usage:
    from core.ledger import fold_subscriptions, fold_merchant_revenue

    fold = fold_subscriptions(events)
    state = fold.states[(subscriber.lower(), merchant_id)]
    revenue = fold_merchant_revenue(events, merchant_id=1)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping

from shared.constants import (
    NATIVE_TOKEN_ADDRESS,
    NATIVE_TOKEN_SYMBOL,
    PERCENT,
    UNKNOWN_TOKEN_SYMBOL,
)
from shared.types import (
    LIFECYCLE_KINDS,
    DomainEvent,
    EventKind,
    MerchantRevenue,
    PaymentReceived,
    SubscriptionBurned,
    SubscriptionHistoryEntry,
    SubscriptionMinted,
    SubscriptionRenewed,
    SubscriptionState,
    TokenVolume,
    order_sort_key,
)

PairKey = tuple[str, int]  # (lowercase subscriber, merchant_id)


@dataclass
class SubscriptionFold:
    states: dict[PairKey, SubscriptionState] = field(default_factory=dict)
    unordered: int = 0  # lifecycle events skipped for lack of an order key

    def for_merchant(self, merchant_id: int) -> list[SubscriptionState]:
        return [s for (_, mid), s in self.states.items() if mid == merchant_id]

    def for_subscriber(self, subscriber: str) -> list[SubscriptionState]:
        wanted = subscriber.lower()
        return [s for (sub, _), s in self.states.items() if sub == wanted]


# ============================================================================
# Deduplication / selection
# ============================================================================


def dedupe_events(events: Iterable[DomainEvent]) -> list[DomainEvent]:
    """Drop replayed copies (same identity); first occurrence wins."""
    seen: set = set()
    unique: list[DomainEvent] = []
    for event in events:
        identity = event.identity
        if identity in seen:
            continue
        seen.add(identity)
        unique.append(event)
    return unique


def events_of(events: Iterable[DomainEvent], kind: EventKind) -> list[DomainEvent]:
    return [event for event in events if event.kind is kind]


def _pair_key(subscriber: str, merchant_id: int) -> PairKey:
    return (subscriber.lower(), merchant_id)


# ============================================================================
# Subscription state
# ============================================================================


def fold_subscriptions(events: Iterable[DomainEvent]) -> SubscriptionFold:
    """
    Fold Minted / Renewed / Burned events into per-pair SubscriptionState.

    For each (subscriber, merchant_id) pair, events are applied in order:
        Minted / Renewed -> expires_at and renewal_count taken verbatim from
                            the event (the event's count is authoritative)
        Burned           -> expires_at cleared; history is kept
    The latest ordered PaymentReceived for the pair becomes last_payment.
    """
    unique = dedupe_events(events)
    result = SubscriptionFold()

    grouped: dict[PairKey, list[DomainEvent]] = {}
    payments: dict[PairKey, PaymentReceived] = {}
    for event in unique:
        if event.kind in LIFECYCLE_KINDS:
            if event.order_key is None:
                result.unordered += 1
                continue
            grouped.setdefault(_pair_key(event.subscriber, event.merchant_id), []).append(event)
        elif isinstance(event, PaymentReceived) and event.order_key is not None:
            key = _pair_key(event.subscriber, event.merchant_id)
            current = payments.get(key)
            if current is None or order_sort_key(event) > order_sort_key(current):
                payments[key] = event

    for key, pair_events in grouped.items():
        pair_events.sort(key=order_sort_key)
        result.states[key] = _fold_pair(pair_events, payments.get(key))
    return result


def fold_subscription(
    events: Iterable[DomainEvent], subscriber: str, merchant_id: int
) -> SubscriptionState | None:
    """State of a single pair, or None if it has no ordered lifecycle events."""
    return fold_subscriptions(events).states.get(_pair_key(subscriber, merchant_id))


def _fold_pair(
    ordered: list[DomainEvent], last_payment: PaymentReceived | None
) -> SubscriptionState:
    expires_at: int | None = None
    renewal_count = 0
    minted_at_block: int | None = None
    burned = False

    for event in ordered:
        if isinstance(event, SubscriptionMinted):
            expires_at = event.expires_at
            renewal_count = event.renewal_count
            minted_at_block = event.block_number
            burned = False
        elif isinstance(event, SubscriptionRenewed):
            expires_at = event.new_expires_at
            renewal_count = event.renewal_count
            burned = False
        elif isinstance(event, SubscriptionBurned):
            expires_at = None
            burned = True

    last = ordered[-1]
    return SubscriptionState(
        subscriber=last.subscriber,
        merchant_id=last.merchant_id,
        expires_at=expires_at,
        renewal_count=renewal_count,
        minted_at_block=minted_at_block,
        last_order_key=last.order_key,
        burned=burned,
        last_payment=last_payment,
    )


def active_subscriber_count(
    states: Iterable[SubscriptionState], reference_time: int, merchant_id: int | None = None
) -> int:
    """Distinct subscribers holding at least one active subscription."""
    return len(
        {
            state.subscriber.lower()
            for state in states
            if (merchant_id is None or state.merchant_id == merchant_id)
            and state.is_active(reference_time)
        }
    )


def active_subscription_count(states: Iterable[SubscriptionState], reference_time: int) -> int:
    return sum(1 for state in states if state.is_active(reference_time))


# ============================================================================
# Revenue
# ============================================================================


def fold_merchant_revenue(
    events: Iterable[DomainEvent], merchant_id: int | None = None
) -> MerchantRevenue:
    """
    Linear scan of PaymentReceived events (optionally for one merchant).

    Revenue is sum(amount - platform_fee) as an unbounded int. Each
    subscriber enters the set once; every payment counts toward the sums.
    """
    revenue = MerchantRevenue(merchant_id=merchant_id)
    for event in dedupe_events(events):
        if not isinstance(event, PaymentReceived):
            continue
        if merchant_id is not None and event.merchant_id != merchant_id:
            continue
        revenue.total_revenue += event.net_amount
        revenue.gross_volume += event.amount
        revenue.platform_fees += event.platform_fee
        revenue.payment_count += 1
        revenue.subscribers.add(event.subscriber.lower())
        token = event.payment_token.lower()
        revenue.token_volumes[token] = revenue.token_volumes.get(token, 0) + event.amount
        revenue.token_transactions[token] = revenue.token_transactions.get(token, 0) + 1
    return revenue


# ============================================================================
# Rates
# ============================================================================


def renewal_rate(renewals: int, mints: int) -> float:
    """renewals / mints as a percentage; 0.0 when there are no mints."""
    if mints <= 0:
        return 0.0
    return renewals / mints * PERCENT


def churn_rate(states: Iterable[SubscriptionState], reference_time: int) -> float:
    """Percentage of folded subscriptions not active at reference_time."""
    states = list(states)
    if not states:
        return 0.0
    inactive = sum(1 for state in states if not state.is_active(reference_time))
    return inactive / len(states) * PERCENT


# ============================================================================
# Token distribution
# ============================================================================


def token_distribution(
    revenue: MerchantRevenue,
    symbols: Mapping[str, str] | None = None,
    limit: int | None = None,
) -> list[TokenVolume]:
    """
    Per-token gross volume, sorted by volume descending.

    percentage is floor(volume * 10000 / total) / 100, i.e. floored to two
    decimals so shares never sum above 100.
    """
    symbols = {address.lower(): symbol for address, symbol in (symbols or {}).items()}
    total = sum(revenue.token_volumes.values())
    rows = []
    for token, volume in revenue.token_volumes.items():
        symbol = symbols.get(token)
        if symbol is None:
            symbol = NATIVE_TOKEN_SYMBOL if token == NATIVE_TOKEN_ADDRESS else UNKNOWN_TOKEN_SYMBOL
        percentage = (volume * 10_000 // total) / 100 if total > 0 else 0.0
        rows.append(
            TokenVolume(
                token=token,
                symbol=symbol,
                volume=volume,
                transactions=revenue.token_transactions.get(token, 0),
                percentage=percentage,
            )
        )
    rows.sort(key=lambda row: (-row.volume, row.token))
    return rows[:limit] if limit is not None else rows


# ============================================================================
# User history
# ============================================================================


def build_user_history(
    events: Iterable[DomainEvent], subscriber: str, reference_time: int
) -> list[SubscriptionHistoryEntry]:
    """
    One entry per merchant the subscriber holds (or held) a subscription with.

    State comes from the subscription fold; amount is the sum of the
    subscriber's payments to that merchant.
    """
    events = dedupe_events(events)
    wanted = subscriber.lower()
    paid: dict[int, int] = {}
    for event in events:
        if isinstance(event, PaymentReceived) and event.subscriber.lower() == wanted:
            paid[event.merchant_id] = paid.get(event.merchant_id, 0) + event.amount

    history = [
        SubscriptionHistoryEntry(
            merchant_id=state.merchant_id,
            start_block=state.minted_at_block,
            expires_at=state.expires_at,
            amount=paid.get(state.merchant_id, 0),
            renewal_count=state.renewal_count,
            is_active=state.is_active(reference_time),
        )
        for state in fold_subscriptions(events).for_subscriber(subscriber)
    ]
    history.sort(
        key=lambda entry: (
            entry.start_block is None,
            entry.start_block or 0,
            entry.merchant_id,
        )
    )
    return history
