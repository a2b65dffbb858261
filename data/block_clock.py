"""
Batched, cached block-timestamp resolution.

Bucketing needs the wall-clock time of each event's block. Looking that up
once per event is one round trip per event; this resolver fetches each
distinct block once, with bounded concurrency, and keeps results in an LRU
(OrderedDict) so repeated series over the same range stay local.

Usage:
    from data.block_clock import BlockTimestampResolver

    resolver = BlockTimestampResolver(source)
    timestamps = await resolver.resolve_many(e.block_number for e in events)
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from typing import Iterable

from config.loader import get_config
from data.event_source import EventSource
from ledger_logging.logger_manager import setup_module_logger
from shared.constants import DEFAULT_TIMESTAMP_CACHE_ENTRIES, DEFAULT_TIMESTAMP_CONCURRENCY
from shared.errors import UnresolvableTimestamp


class BlockTimestampResolver:
    """Block number -> unix timestamp, cached with LRU eviction."""

    def __init__(
        self,
        source: EventSource,
        max_entries: int | None = None,
        concurrency: int | None = None,
    ) -> None:
        self._source = source
        cfg = get_config()
        if max_entries is None:
            max_entries = (
                cfg.get_cache_config()
                .get("block_timestamps", {})
                .get("max_entries", DEFAULT_TIMESTAMP_CACHE_ENTRIES)
            )
        if concurrency is None:
            concurrency = (
                cfg.get_timing_config()
                .get("event_source", {})
                .get("timestamp_concurrency", DEFAULT_TIMESTAMP_CONCURRENCY)
            )
        self._max_entries = max_entries
        self._concurrency = max(1, concurrency)
        self._cache: OrderedDict[int, int] = OrderedDict()
        self._logger = setup_module_logger(
            "block_clock", "block_clock.log", module_folder="Event_Source_Logs"
        )

    async def resolve(self, block_number: int, strict: bool = False) -> int | None:
        """
        Timestamp of one block, or None if the source cannot derive it.

        Raises:
            UnresolvableTimestamp: strict is set and the block is unknown.
        """
        resolved = await self.resolve_many([block_number])
        timestamp = resolved.get(block_number)
        if timestamp is None and strict:
            raise UnresolvableTimestamp(block_number)
        return timestamp

    async def resolve_many(self, block_numbers: Iterable[int | None]) -> dict[int, int]:
        """
        Resolve a batch of block numbers.

        Each distinct block is fetched at most once. Blocks whose timestamp
        cannot be derived (None input, unknown block) are omitted from the
        result. SourceUnavailable from the source propagates.
        """
        wanted = {n for n in block_numbers if n is not None}
        result: dict[int, int] = {}
        misses: list[int] = []
        for number in sorted(wanted):
            if number in self._cache:
                self._cache.move_to_end(number)
                result[number] = self._cache[number]
            else:
                misses.append(number)

        if not misses:
            return result

        semaphore = asyncio.Semaphore(self._concurrency)

        async def _fetch(number: int) -> int | None:
            async with semaphore:
                return await self._source.block_timestamp(number)

        fetched = await asyncio.gather(*(_fetch(n) for n in misses))
        unknown = 0
        for number, timestamp in zip(misses, fetched):
            if timestamp is None:
                unknown += 1
                continue
            result[number] = timestamp
            self._store(number, timestamp)

        self._logger.debug(
            "Resolved %d block(s): %d cached, %d fetched, %d unknown",
            len(wanted),
            len(wanted) - len(misses),
            len(misses) - unknown,
            unknown,
        )
        return result

    def _store(self, block_number: int, timestamp: int) -> None:
        self._cache[block_number] = timestamp
        self._cache.move_to_end(block_number)
        while len(self._cache) > self._max_entries:
            self._cache.popitem(last=False)

    def clear(self) -> None:
        self._cache.clear()

    @property
    def cache_size(self) -> int:
        return len(self._cache)
