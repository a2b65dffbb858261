"""
Shared data types for the subscription ledger.

Centralized dataclasses and enums used across all modules: the closed
DomainEvent variant family, filters and block ranges, folded aggregates and
analytics snapshots. All token amounts are plain ints (uint256 safe).
"""

from __future__ import annotations

from collections.abc import Hashable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

from shared.errors import InvalidFilter, InvalidRange

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class EventKind(Enum):
    MERCHANT_REGISTERED = "MerchantRegistered"
    MERCHANT_WITHDRAWAL = "MerchantWithdrawal"
    PAYMENT_RECEIVED = "PaymentReceived"
    SUBSCRIPTION_MINTED = "SubscriptionMinted"
    SUBSCRIPTION_RENEWED = "SubscriptionRenewed"
    SUBSCRIPTION_BURNED = "SubscriptionBurned"
    SUBSCRIPTION_EXPIRED = "SubscriptionExpired"


class Granularity(Enum):
    DAILY = "daily"  # YYYY-MM-DD
    WEEKLY = "weekly"  # YYYY-Www (ISO week)
    MONTHLY = "monthly"  # YYYY-MM


class SeriesMetric(Enum):
    REVENUE = "revenue"  # sum(amount - platform_fee) per bucket
    VOLUME = "volume"  # sum(amount) per bucket
    SUBSCRIBER_GROWTH = "subscriber_growth"  # cumulative mint count
    RENEWALS = "renewals"  # renewal count per bucket


class MonitorKind(Enum):
    PAYMENT = "payment"
    LIFECYCLE = "lifecycle"
    MERCHANT = "merchant"
    MULTI = "multi"


class SnapshotScope(Enum):
    PLATFORM = "platform"
    MERCHANT = "merchant"
    USER = "user"


class ErrorPolicy(Enum):
    RAISE = "raise"
    ZERO_FALLBACK = "zero_fallback"  # legacy: log and return an empty snapshot


# Indexed (topic) fields per event kind, in topic order. Only these can be
# constrained by an EventFilter.
INDEXED_FIELDS: dict[EventKind, tuple[str, ...]] = {
    EventKind.MERCHANT_REGISTERED: ("merchant_id", "owner"),
    EventKind.MERCHANT_WITHDRAWAL: ("merchant_id", "token"),
    EventKind.PAYMENT_RECEIVED: ("subscriber", "merchant_id", "payment_token"),
    EventKind.SUBSCRIPTION_MINTED: ("subscriber", "merchant_id"),
    EventKind.SUBSCRIPTION_RENEWED: ("subscriber", "merchant_id"),
    EventKind.SUBSCRIPTION_BURNED: ("subscriber", "merchant_id"),
    EventKind.SUBSCRIPTION_EXPIRED: ("subscriber", "merchant_id"),
}

LIFECYCLE_KINDS = frozenset(
    {
        EventKind.SUBSCRIPTION_MINTED,
        EventKind.SUBSCRIPTION_RENEWED,
        EventKind.SUBSCRIPTION_BURNED,
    }
)


# ---------------------------------------------------------------------------
# Domain events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DomainEvent:
    """
    Decoded on-chain event with provenance.

    (block_number, log_index) orders events from the same source; an event
    missing either half is unordered.
    """

    kind: ClassVar[EventKind]

    address: str
    block_number: int | None
    tx_hash: str
    log_index: int | None

    @property
    def order_key(self) -> tuple[int, int] | None:
        if self.block_number is None or self.log_index is None:
            return None
        return (self.block_number, self.log_index)

    @property
    def identity(self) -> Hashable:
        """Replay-stable identity used for deduplication."""
        if self.order_key is None or not self.tx_hash:
            return self
        return (self.kind, self.tx_hash.lower(), self.log_index)


def order_sort_key(event: DomainEvent) -> tuple[int, int, int]:
    """Sort key placing ordered events by (block, log index), unordered last."""
    key = event.order_key
    if key is None:
        return (1, 0, 0)
    return (0, key[0], key[1])


@dataclass(frozen=True)
class MerchantRegistered(DomainEvent):
    kind = EventKind.MERCHANT_REGISTERED

    merchant_id: int
    owner: str
    payout_address: str


@dataclass(frozen=True)
class MerchantWithdrawal(DomainEvent):
    kind = EventKind.MERCHANT_WITHDRAWAL

    merchant_id: int
    token: str
    amount: int
    payout_address: str


@dataclass(frozen=True)
class PaymentReceived(DomainEvent):
    kind = EventKind.PAYMENT_RECEIVED

    subscriber: str
    merchant_id: int
    payment_token: str
    amount: int
    platform_fee: int
    period: int  # subscription period in seconds

    @property
    def net_amount(self) -> int:
        """Merchant share of the payment (never negative)."""
        return max(self.amount - self.platform_fee, 0)


@dataclass(frozen=True)
class SubscriptionMinted(DomainEvent):
    kind = EventKind.SUBSCRIPTION_MINTED

    subscriber: str
    merchant_id: int
    expires_at: int
    renewal_count: int


@dataclass(frozen=True)
class SubscriptionRenewed(DomainEvent):
    kind = EventKind.SUBSCRIPTION_RENEWED

    subscriber: str
    merchant_id: int
    new_expires_at: int
    renewal_count: int


@dataclass(frozen=True)
class SubscriptionBurned(DomainEvent):
    kind = EventKind.SUBSCRIPTION_BURNED

    subscriber: str
    merchant_id: int


@dataclass(frozen=True)
class SubscriptionExpired(DomainEvent):
    kind = EventKind.SUBSCRIPTION_EXPIRED

    subscriber: str
    merchant_id: int


# ---------------------------------------------------------------------------
# Query types
# ---------------------------------------------------------------------------


def _normalize_arg(value: Any) -> Any:
    if isinstance(value, str):
        return value.lower()
    return value


@dataclass(frozen=True)
class EventFilter:
    """Predicate over event kind, source address and indexed field values."""

    kind: EventKind
    address: str | None = None
    args: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        indexed = INDEXED_FIELDS[self.kind]
        constrained = {k: v for k, v in self.args.items() if v is not None}
        unknown = sorted(set(constrained) - set(indexed))
        if unknown:
            raise InvalidFilter(
                f"{self.kind.value} does not index {', '.join(unknown)} "
                f"(indexed: {', '.join(indexed)})"
            )
        object.__setattr__(self, "args", constrained)

    def matches(self, event: DomainEvent) -> bool:
        if event.kind is not self.kind:
            return False
        if self.address and event.address.lower() != self.address.lower():
            return False
        for name, expected in self.args.items():
            if _normalize_arg(getattr(event, name)) != _normalize_arg(expected):
                return False
        return True


@dataclass(frozen=True)
class BlockRange:
    """Inclusive block range; None bounds mean earliest / latest."""

    from_block: int | None = None
    to_block: int | None = None

    def __post_init__(self) -> None:
        for bound in (self.from_block, self.to_block):
            if bound is not None and bound < 0:
                raise InvalidRange(f"Negative block bound in {self}")
        if (
            self.from_block is not None
            and self.to_block is not None
            and self.from_block > self.to_block
        ):
            raise InvalidRange(
                f"from_block {self.from_block} is after to_block {self.to_block}"
            )

    def __str__(self) -> str:
        start = "earliest" if self.from_block is None else str(self.from_block)
        end = "latest" if self.to_block is None else str(self.to_block)
        return f"[{start}, {end}]"


FULL_HISTORY = BlockRange()


# ---------------------------------------------------------------------------
# Folded aggregates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SubscriptionState:
    subscriber: str
    merchant_id: int
    expires_at: int | None  # None after a burn (conceptually -inf)
    renewal_count: int
    minted_at_block: int | None
    last_order_key: tuple[int, int] | None
    burned: bool
    last_payment: PaymentReceived | None = None

    def is_active(self, reference_time: int) -> bool:
        return self.expires_at is not None and self.expires_at > reference_time


@dataclass(frozen=True)
class TokenVolume:
    token: str
    symbol: str
    volume: int
    transactions: int
    percentage: float  # share of total volume, floored to 2 decimals


@dataclass
class MerchantRevenue:
    merchant_id: int | None  # None = all merchants
    total_revenue: int = 0  # sum(amount - platform_fee)
    gross_volume: int = 0
    platform_fees: int = 0
    payment_count: int = 0
    subscribers: set[str] = field(default_factory=set)
    token_volumes: dict[str, int] = field(default_factory=dict)
    token_transactions: dict[str, int] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Series
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BucketPoint:
    label: str
    timestamp: int  # bucket start, unix seconds UTC
    value: int
    count: int  # events that fell into the bucket


@dataclass
class BucketedSeries:
    granularity: Granularity
    points: list[BucketPoint] = field(default_factory=list)
    unresolvable: int = 0  # events dropped for lack of a block timestamp
    cumulative: bool = False

    @property
    def bucketed_count(self) -> int:
        return sum(point.count for point in self.points)


# ---------------------------------------------------------------------------
# Analytics snapshots
# ---------------------------------------------------------------------------


@dataclass
class PlatformSnapshot:
    block_range: BlockRange
    reference_time: int
    total_merchants: int = 0
    active_merchants: int = 0  # merchants with at least one payment
    total_subscribers: int = 0
    active_subscriptions: int = 0
    total_volume: int = 0
    total_platform_fees: int = 0
    average_subscription_price: int = 0
    total_renewals: int = 0
    total_payments: int = 0


@dataclass(frozen=True)
class SubscriptionHistoryEntry:
    merchant_id: int
    start_block: int | None
    expires_at: int | None
    amount: int  # total paid by the user to this merchant
    renewal_count: int
    is_active: bool


@dataclass
class MerchantSnapshot:
    merchant_id: int
    block_range: BlockRange
    reference_time: int
    total_revenue: int = 0
    total_subscribers: int = 0
    active_subscribers: int = 0
    average_subscription_value: int = 0
    churn_rate: float = 0.0
    renewal_rate: float = 0.0
    top_payment_tokens: list[TokenVolume] = field(default_factory=list)
    revenue_over_time: BucketedSeries | None = None


@dataclass
class UserSnapshot:
    address: str
    block_range: BlockRange
    reference_time: int
    total_spent: int = 0
    active_subscriptions: int = 0
    total_subscriptions: int = 0
    average_spend: int = 0
    history: list[SubscriptionHistoryEntry] = field(default_factory=list)
