"""
SubscriptionLedger: the caller-facing SDK object.

Wires one EventSource to a MonitorRegistry (live), an AnalyticsService
(historical) and an EventCache shared by reference. Monitor presets build
filter bindings from a handler map:

    PAYMENT    PaymentReceived
    LIFECYCLE  SubscriptionMinted / Renewed / Burned / Expired
    MERCHANT   MerchantRegistered / MerchantWithdrawal
    MULTI      any kinds, or explicit MonitorBindings

Usage:
    from core.sdk import SubscriptionLedger

    ledger = SubscriptionLedger.from_config(chain_id=11155111)
    handle = ledger.monitor(MonitorKind.PAYMENT, {EventKind.PAYMENT_RECEIVED: on_payment},
                            merchant_id=1)
    snapshot = await ledger.get_snapshot(SnapshotScope.MERCHANT, 1)
    await ledger.close()
"""

from __future__ import annotations

import itertools
import time
from typing import Any, Hashable, Mapping, Sequence

from web3 import AsyncHTTPProvider, AsyncWeb3

from config.loader import DEFAULT_CHAIN_ID, get_config
from core.analytics import AnalyticsService
from core.event_cache import EventCache
from core.monitor_registry import EventCallback, MonitorBinding, MonitorHandle, MonitorRegistry
from data.block_clock import BlockTimestampResolver
from data.event_source import EventSource, Web3EventSource
from ledger_logging.logger_manager import setup_module_logger
from shared.constants import CONTRACT_SUBSCRIPTION_MANAGER, CONTRACT_SUBSCRIPTION_NFT
from shared.errors import InvalidFilter
from shared.types import (
    FULL_HISTORY,
    BlockRange,
    BucketedSeries,
    DomainEvent,
    EventFilter,
    EventKind,
    Granularity,
    MerchantSnapshot,
    MonitorKind,
    PlatformSnapshot,
    SeriesMetric,
    SnapshotScope,
    UserSnapshot,
)

# Event kinds each preset may bind
PRESET_KINDS: dict[MonitorKind, frozenset[EventKind]] = {
    MonitorKind.PAYMENT: frozenset({EventKind.PAYMENT_RECEIVED}),
    MonitorKind.LIFECYCLE: frozenset(
        {
            EventKind.SUBSCRIPTION_MINTED,
            EventKind.SUBSCRIPTION_RENEWED,
            EventKind.SUBSCRIPTION_BURNED,
            EventKind.SUBSCRIPTION_EXPIRED,
        }
    ),
    MonitorKind.MERCHANT: frozenset(
        {EventKind.MERCHANT_REGISTERED, EventKind.MERCHANT_WITHDRAWAL}
    ),
    MonitorKind.MULTI: frozenset(EventKind),
}

Handlers = Mapping[EventKind, EventCallback] | Sequence[MonitorBinding]


class SubscriptionLedger:
    """Event-sourced subscription ledger over one event source."""

    def __init__(
        self,
        source: EventSource,
        cache: EventCache | None = None,
        resolver: BlockTimestampResolver | None = None,
        analytics: AnalyticsService | None = None,
        token_symbols: Mapping[str, str] | None = None,
    ) -> None:
        self._source = source
        self._cache = cache if cache is not None else EventCache()
        self._resolver = resolver or BlockTimestampResolver(source)
        self._analytics = analytics or AnalyticsService(
            source, self._resolver, token_symbols=token_symbols
        )
        self._registry = MonitorRegistry(source)
        self._multi_ids = itertools.count(1)
        self._logger = setup_module_logger("sdk", "sdk.log", module_folder="SDK_Logs")

    @classmethod
    def from_config(cls, chain_id: int = DEFAULT_CHAIN_ID) -> SubscriptionLedger:
        """Build a ledger over AsyncWeb3(AsyncHTTPProvider) from config/chains/<id>.json."""
        cfg = get_config()
        contracts = {
            name: cfg.get_contract_address(name, chain_id)
            for name in (CONTRACT_SUBSCRIPTION_MANAGER, CONTRACT_SUBSCRIPTION_NFT)
        }
        w3 = AsyncWeb3(AsyncHTTPProvider(cfg.get_rpc_url(chain_id)))
        source = Web3EventSource(
            w3,
            contracts,
            start_block=cfg.get_chain_config(chain_id).get("deployment_block", 0),
        )
        return cls(source, token_symbols=cfg.get_token_symbols(chain_id))

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def cache(self) -> EventCache:
        return self._cache

    @property
    def source(self) -> EventSource:
        return self._source

    @property
    def registry(self) -> MonitorRegistry:
        return self._registry

    @property
    def analytics(self) -> AnalyticsService:
        return self._analytics

    # ------------------------------------------------------------------
    # Live monitoring
    # ------------------------------------------------------------------

    def monitor(
        self,
        kind: MonitorKind,
        handlers: Handlers,
        subscriber: str | None = None,
        merchant_id: int | None = None,
        name: str | None = None,
        cache_key: Hashable | None = None,
    ) -> MonitorHandle:
        """
        Register a live monitor.

        Args:
            kind: Preset deciding which event kinds may be bound.
            handlers: EventKind -> callback, or (MULTI only) explicit bindings.
            subscriber / merchant_id: Indexed-field constraints applied to every
                binding (kinds that do not index the field raise InvalidFilter).
            name: Registry name. Defaults to "<kind>-<subscriber|all>-<merchant|all>";
                MULTI monitors get a unique "multi-<n>".
            cache_key: When set, every delivered event is appended to the
                cache under this key before the handler runs.

        Returns:
            The live MonitorHandle. A live handle with the same name is
            stopped first.
        """
        bindings = self._build_bindings(kind, handlers, subscriber, merchant_id)
        if cache_key is not None:
            bindings = [
                MonitorBinding(b.event_filter, self._caching(cache_key, b.callback))
                for b in bindings
            ]
        if name is None:
            if kind is MonitorKind.MULTI:
                name = f"{kind.value}-{next(self._multi_ids)}"
            else:
                merchant = merchant_id if merchant_id is not None else "all"
                who = subscriber.lower() if subscriber else "all"
                name = f"{kind.value}-{who}-{merchant}"
        return self._registry.register(name, bindings)

    def stop_monitor(self, handle: MonitorHandle | str) -> bool:
        return self._registry.stop(handle)

    def stop_all_monitors(self) -> None:
        """Stop every live monitor. The cache is left intact."""
        self._registry.stop_all()

    def _build_bindings(
        self,
        kind: MonitorKind,
        handlers: Handlers,
        subscriber: str | None,
        merchant_id: int | None,
    ) -> list[MonitorBinding]:
        if not isinstance(handlers, Mapping):
            if kind is not MonitorKind.MULTI:
                raise InvalidFilter(f"{kind.value} monitors take an EventKind -> callback map")
            return list(handlers)

        allowed = PRESET_KINDS[kind]
        args = {"subscriber": subscriber, "merchant_id": merchant_id}
        bindings = []
        for event_kind, callback in handlers.items():
            if callback is None:
                continue
            if event_kind not in allowed:
                raise InvalidFilter(f"{kind.value} monitors cannot bind {event_kind.value}")
            bindings.append(MonitorBinding(EventFilter(event_kind, args=args), callback))
        if not bindings:
            raise InvalidFilter(f"{kind.value} monitor registered without handlers")
        return bindings

    def _caching(self, cache_key: Hashable, callback: EventCallback) -> EventCallback:
        def _cache_then_call(event: DomainEvent) -> Any:
            self._cache.append(cache_key, [event])
            return callback(event)

        return _cache_then_call

    # ------------------------------------------------------------------
    # Historical queries
    # ------------------------------------------------------------------

    async def get_snapshot(
        self,
        scope: SnapshotScope,
        target: int | str | None = None,
        block_range: BlockRange | None = None,
        reference_time: int | None = None,
        granularity: Granularity | None = None,
    ) -> PlatformSnapshot | MerchantSnapshot | UserSnapshot:
        """
        Snapshot for the platform, a merchant (target = merchant id) or a user
        (target = address). reference_time defaults to now.
        """
        block_range = block_range or FULL_HISTORY
        if reference_time is None:
            reference_time = int(time.time())

        if scope is SnapshotScope.PLATFORM:
            return await self._analytics.platform_snapshot(reference_time, block_range)
        if target is None:
            raise InvalidFilter(f"{scope.value} snapshot needs a target")
        if scope is SnapshotScope.MERCHANT:
            return await self._analytics.merchant_snapshot(
                int(target), reference_time, block_range, granularity
            )
        return await self._analytics.user_snapshot(str(target), reference_time, block_range)

    async def get_series(
        self,
        metric: SeriesMetric,
        granularity: Granularity | None = None,
        merchant_id: int | None = None,
        block_range: BlockRange | None = None,
    ) -> BucketedSeries:
        return await self._analytics.series(
            metric, granularity, merchant_id, block_range or FULL_HISTORY
        )

    async def backfill(
        self,
        event_filter: EventFilter,
        block_range: BlockRange = FULL_HISTORY,
        cache_key: Hashable | None = None,
    ) -> list[DomainEvent]:
        """Historical events for a filter, optionally appended to the cache."""
        events = await self._source.query(event_filter, block_range)
        if cache_key is not None and events:
            self._cache.append(cache_key, events)
        self._logger.info(
            "Backfilled %d %s event(s) over %s", len(events), event_filter.kind.value, block_range
        )
        return events

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Stop all monitors and wait for in-flight callbacks."""
        self._registry.stop_all()
        await self._registry.drain()
        close = getattr(self._source, "close", None)
        if close is not None:
            await close()
