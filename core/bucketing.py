"""
Calendar-bucketed series.

Groups events by the wall-clock time of their containing block (events
carry no timestamp of their own) and emits buckets sorted by bucket start.

Labels:
    daily   -> "YYYY-MM-DD"
    weekly  -> "YYYY-Www"   (ISO year and ISO week, zero-padded)
    monthly -> "YYYY-MM"

Events whose block timestamp is unknown are counted in `unresolvable`
and never placed in a bucket, so for any input
    series.bucketed_count + series.unresolvable == len(events)

Usage:
    from core.bucketing import metric_series

    timestamps = await resolver.resolve_many(e.block_number for e in events)
    series = metric_series(events, timestamps, Granularity.WEEKLY, SeriesMetric.REVENUE)
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Callable, Iterable, Mapping

from shared.types import (
    BucketedSeries,
    BucketPoint,
    DomainEvent,
    EventKind,
    Granularity,
    PaymentReceived,
    SeriesMetric,
)

ValueFn = Callable[[DomainEvent], int]


def _utc_start(day: date) -> int:
    return int(datetime(day.year, day.month, day.day, tzinfo=timezone.utc).timestamp())


def bucket_key(timestamp: int, granularity: Granularity) -> tuple[str, int]:
    """(label, bucket start as unix seconds UTC) for a block timestamp."""
    day = datetime.fromtimestamp(timestamp, tz=timezone.utc).date()
    if granularity is Granularity.DAILY:
        return day.isoformat(), _utc_start(day)
    if granularity is Granularity.WEEKLY:
        iso_year, iso_week, iso_weekday = day.isocalendar()
        monday = day - timedelta(days=iso_weekday - 1)
        return f"{iso_year}-W{iso_week:02d}", _utc_start(monday)
    if granularity is Granularity.MONTHLY:
        return f"{day.year}-{day.month:02d}", _utc_start(day.replace(day=1))
    raise ValueError(f"Unsupported granularity: {granularity}")


def _count_one(_: DomainEvent) -> int:
    return 1


def aggregate_series(
    events: Iterable[DomainEvent],
    timestamps: Mapping[int, int],
    granularity: Granularity,
    value_fn: ValueFn = _count_one,
    cumulative: bool = False,
) -> BucketedSeries:
    """
    Bucket events by block timestamp.

    Args:
        events: Events to place (all of them count toward completeness).
        timestamps: block_number -> unix timestamp; missing blocks make
                    their events unresolvable.
        value_fn: Per-event contribution to the bucket value.
        cumulative: Emit the running total across sorted buckets.
    """
    series = BucketedSeries(granularity=granularity, cumulative=cumulative)
    buckets: dict[str, list[int]] = {}  # label -> [start, value, count]
    for event in events:
        timestamp = timestamps.get(event.block_number) if event.block_number is not None else None
        if timestamp is None:
            series.unresolvable += 1
            continue
        label, start = bucket_key(timestamp, granularity)
        bucket = buckets.setdefault(label, [start, 0, 0])
        bucket[1] += value_fn(event)
        bucket[2] += 1

    running = 0
    for label, (start, value, count) in sorted(buckets.items(), key=lambda item: item[1][0]):
        if cumulative:
            running += value
            value = running
        series.points.append(BucketPoint(label=label, timestamp=start, value=value, count=count))
    return series


# ---------------------------------------------------------------------------
# Named metrics
# ---------------------------------------------------------------------------

# metric -> (event kind it reads, per-event value, cumulative)
METRICS: dict[SeriesMetric, tuple[EventKind, ValueFn, bool]] = {
    SeriesMetric.REVENUE: (
        EventKind.PAYMENT_RECEIVED,
        lambda e: e.net_amount if isinstance(e, PaymentReceived) else 0,
        False,
    ),
    SeriesMetric.VOLUME: (
        EventKind.PAYMENT_RECEIVED,
        lambda e: e.amount if isinstance(e, PaymentReceived) else 0,
        False,
    ),
    SeriesMetric.SUBSCRIBER_GROWTH: (EventKind.SUBSCRIPTION_MINTED, _count_one, True),
    SeriesMetric.RENEWALS: (EventKind.SUBSCRIPTION_RENEWED, _count_one, False),
}


def metric_kind(metric: SeriesMetric) -> EventKind:
    return METRICS[metric][0]


def metric_series(
    events: Iterable[DomainEvent],
    timestamps: Mapping[int, int],
    granularity: Granularity,
    metric: SeriesMetric,
) -> BucketedSeries:
    """Series for a named metric over the events of its kind."""
    kind, value_fn, cumulative = METRICS[metric]
    selected = [event for event in events if event.kind is kind]
    return aggregate_series(selected, timestamps, granularity, value_fn, cumulative)
