"""
Analytics facade: platform, merchant and user snapshots plus series.

Each call issues its event queries concurrently over one BlockRange, folds
the results with core.ledger and buckets with core.bucketing. If any
sub-query (or timestamp lookup) fails, the call raises a single
AnalyticsError carrying scope, range and the first underlying cause
rather than returning a partially-populated snapshot.

ErrorPolicy.ZERO_FALLBACK restores the legacy behaviour (log a warning and
return an empty snapshot). It is opt-in via config/analytics.json.

Usage:
    from core.analytics import AnalyticsService

    analytics = AnalyticsService(source, resolver)
    snapshot = await analytics.merchant_snapshot(1, reference_time=int(time.time()))
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Mapping

from config.loader import get_config
from core.bucketing import metric_kind, metric_series
from core.ledger import (
    active_subscriber_count,
    active_subscription_count,
    build_user_history,
    churn_rate,
    fold_merchant_revenue,
    fold_subscriptions,
    renewal_rate,
    token_distribution,
)
from data.block_clock import BlockTimestampResolver
from data.event_source import EventSource
from ledger_logging.logger_manager import setup_module_logger
from shared.constants import DEFAULT_TOP_TOKENS_LIMIT
from shared.errors import AnalyticsError
from shared.types import (
    FULL_HISTORY,
    BlockRange,
    BucketedSeries,
    DomainEvent,
    ErrorPolicy,
    EventFilter,
    EventKind,
    Granularity,
    MerchantSnapshot,
    PlatformSnapshot,
    SeriesMetric,
    SnapshotScope,
    UserSnapshot,
)


class AnalyticsService:
    """Composes event queries, folds and bucketing into metric snapshots."""

    def __init__(
        self,
        source: EventSource,
        resolver: BlockTimestampResolver,
        token_symbols: Mapping[str, str] | None = None,
        error_policy: ErrorPolicy | None = None,
        default_granularity: Granularity | None = None,
        top_tokens_limit: int | None = None,
    ) -> None:
        self._source = source
        self._resolver = resolver
        self._token_symbols = dict(token_symbols or {})

        settings = get_config().get_analytics_config()
        self._error_policy = error_policy or ErrorPolicy(settings.get("error_policy", "raise"))
        self._default_granularity = default_granularity or Granularity(
            settings.get("default_granularity", Granularity.MONTHLY.value)
        )
        self._top_tokens_limit = (
            top_tokens_limit
            if top_tokens_limit is not None
            else settings.get("top_tokens_limit", DEFAULT_TOP_TOKENS_LIMIT)
        )

        self._logger = setup_module_logger(
            "analytics", "analytics.log", module_folder="Analytics_Logs"
        )
        if self._error_policy is ErrorPolicy.ZERO_FALLBACK:
            self._logger.warning("Analytics running with zero_fallback error policy")

    @property
    def error_policy(self) -> ErrorPolicy:
        return self._error_policy

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def platform_snapshot(
        self, reference_time: int, block_range: BlockRange = FULL_HISTORY
    ) -> PlatformSnapshot:
        """Platform-wide totals over block_range."""
        scope = SnapshotScope.PLATFORM.value
        try:
            registrations, payments, mints, renewals, burns = await self._gather(
                scope,
                block_range,
                self._query(EventKind.MERCHANT_REGISTERED, block_range),
                self._query(EventKind.PAYMENT_RECEIVED, block_range),
                self._query(EventKind.SUBSCRIPTION_MINTED, block_range),
                self._query(EventKind.SUBSCRIPTION_RENEWED, block_range),
                self._query(EventKind.SUBSCRIPTION_BURNED, block_range),
            )
        except AnalyticsError as exc:
            self._fallback_or_raise(exc)
            return PlatformSnapshot(block_range=block_range, reference_time=reference_time)

        revenue = fold_merchant_revenue(payments)
        fold = fold_subscriptions([*mints, *renewals, *burns, *payments])
        states = list(fold.states.values())
        return PlatformSnapshot(
            block_range=block_range,
            reference_time=reference_time,
            total_merchants=len({e.merchant_id for e in registrations}),
            active_merchants=len({e.merchant_id for e in payments}),
            total_subscribers=len(revenue.subscribers),
            active_subscriptions=active_subscription_count(states, reference_time),
            total_volume=revenue.gross_volume,
            total_platform_fees=revenue.platform_fees,
            average_subscription_price=(
                revenue.gross_volume // revenue.payment_count if revenue.payment_count else 0
            ),
            total_renewals=len(renewals),
            total_payments=revenue.payment_count,
        )

    async def merchant_snapshot(
        self,
        merchant_id: int,
        reference_time: int,
        block_range: BlockRange = FULL_HISTORY,
        granularity: Granularity | None = None,
    ) -> MerchantSnapshot:
        """Revenue, subscribers, churn, renewals and token mix for one merchant."""
        scope = f"{SnapshotScope.MERCHANT.value}({merchant_id})"
        granularity = granularity or self._default_granularity
        args = {"merchant_id": merchant_id}
        try:
            payments, mints, renewals, burns = await self._gather(
                scope,
                block_range,
                self._query(EventKind.PAYMENT_RECEIVED, block_range, args),
                self._query(EventKind.SUBSCRIPTION_MINTED, block_range, args),
                self._query(EventKind.SUBSCRIPTION_RENEWED, block_range, args),
                self._query(EventKind.SUBSCRIPTION_BURNED, block_range, args),
            )
            revenue_over_time = await self._series_from(
                scope, block_range, payments, granularity, SeriesMetric.REVENUE
            )
        except AnalyticsError as exc:
            self._fallback_or_raise(exc)
            return MerchantSnapshot(
                merchant_id=merchant_id, block_range=block_range, reference_time=reference_time
            )

        revenue = fold_merchant_revenue(payments, merchant_id)
        fold = fold_subscriptions([*mints, *renewals, *burns, *payments])
        states = fold.for_merchant(merchant_id)
        return MerchantSnapshot(
            merchant_id=merchant_id,
            block_range=block_range,
            reference_time=reference_time,
            total_revenue=revenue.total_revenue,
            total_subscribers=len(revenue.subscribers),
            active_subscribers=active_subscriber_count(states, reference_time, merchant_id),
            average_subscription_value=(
                revenue.total_revenue // revenue.payment_count if revenue.payment_count else 0
            ),
            churn_rate=churn_rate(states, reference_time),
            renewal_rate=renewal_rate(len(renewals), len(mints)),
            top_payment_tokens=token_distribution(
                revenue, self._token_symbols, self._top_tokens_limit
            ),
            revenue_over_time=revenue_over_time,
        )

    async def user_snapshot(
        self, address: str, reference_time: int, block_range: BlockRange = FULL_HISTORY
    ) -> UserSnapshot:
        """Spend and reconstructed subscription history for one subscriber."""
        scope = f"{SnapshotScope.USER.value}({address})"
        args = {"subscriber": address}
        try:
            payments, mints, renewals, burns = await self._gather(
                scope,
                block_range,
                self._query(EventKind.PAYMENT_RECEIVED, block_range, args),
                self._query(EventKind.SUBSCRIPTION_MINTED, block_range, args),
                self._query(EventKind.SUBSCRIPTION_RENEWED, block_range, args),
                self._query(EventKind.SUBSCRIPTION_BURNED, block_range, args),
            )
        except AnalyticsError as exc:
            self._fallback_or_raise(exc)
            return UserSnapshot(address=address, block_range=block_range, reference_time=reference_time)

        spent = fold_merchant_revenue(payments)
        history = build_user_history(
            [*mints, *renewals, *burns, *payments], address, reference_time
        )
        return UserSnapshot(
            address=address,
            block_range=block_range,
            reference_time=reference_time,
            total_spent=spent.gross_volume,
            active_subscriptions=sum(1 for entry in history if entry.is_active),
            total_subscriptions=len(history),
            average_spend=spent.gross_volume // len(history) if history else 0,
            history=history,
        )

    # ------------------------------------------------------------------
    # Series
    # ------------------------------------------------------------------

    async def series(
        self,
        metric: SeriesMetric,
        granularity: Granularity | None = None,
        merchant_id: int | None = None,
        block_range: BlockRange = FULL_HISTORY,
    ) -> BucketedSeries:
        """Time-bucketed series for a metric, optionally for one merchant."""
        granularity = granularity or self._default_granularity
        scope = f"series({metric.value}, merchant={merchant_id})"
        args = {"merchant_id": merchant_id} if merchant_id is not None else {}
        try:
            (events,) = await self._gather(
                scope, block_range, self._query(metric_kind(metric), block_range, args)
            )
            return await self._series_from(scope, block_range, events, granularity, metric)
        except AnalyticsError as exc:
            self._fallback_or_raise(exc)
            return BucketedSeries(granularity=granularity)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _query(
        self, kind: EventKind, block_range: BlockRange, args: Mapping[str, Any] | None = None
    ) -> Awaitable[list[DomainEvent]]:
        return self._source.query(EventFilter(kind, args=dict(args or {})), block_range)

    async def _gather(
        self, scope: str, block_range: BlockRange, *queries: Awaitable[Any]
    ) -> list[Any]:
        """Run sub-queries concurrently; first failure (in call order) wins."""
        results = await asyncio.gather(*queries, return_exceptions=True)
        for result in results:
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                raise AnalyticsError(scope, block_range, result) from result
        return list(results)

    async def _series_from(
        self,
        scope: str,
        block_range: BlockRange,
        events: list[DomainEvent],
        granularity: Granularity,
        metric: SeriesMetric,
    ) -> BucketedSeries:
        try:
            timestamps = await self._resolver.resolve_many(e.block_number for e in events)
        except Exception as exc:
            raise AnalyticsError(scope, block_range, exc) from exc
        series = metric_series(events, timestamps, granularity, metric)
        if series.unresolvable:
            self._logger.warning(
                "%s: %d event(s) without a block timestamp left out of the series",
                scope,
                series.unresolvable,
            )
        return series

    def _fallback_or_raise(self, exc: AnalyticsError) -> None:
        if self._error_policy is not ErrorPolicy.ZERO_FALLBACK:
            self._logger.error("%s", exc, extra=_log_fields(exc))
            raise exc
        self._logger.warning(
            "%s; returning empty result (zero_fallback policy)", exc, extra=_log_fields(exc)
        )


def _log_fields(exc: AnalyticsError) -> dict[str, Any]:
    return {"scope": exc.scope, "error": repr(exc.cause)}
