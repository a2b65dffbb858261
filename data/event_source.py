"""
Event source adapter: the boundary to the remote event log.

Defines the EventSource protocol consumed by the core (historical query,
live subscribe/cancel, block timestamps) and Web3EventSource, its
implementation over web3.AsyncWeb3:

- Historical queries are split into eth_getLogs windows of
  max_block_range blocks and returned sorted by (block_number, log_index).
- Live subscriptions are per-filter asyncio polling tasks. Each tick reads
  [cursor, head - confirmation_blocks], so delivered events are at least
  confirmation_blocks deep.
- Transport failures surface as SourceUnavailable (retryable).

Usage:
    from web3 import AsyncWeb3, AsyncHTTPProvider
    from data.event_source import Web3EventSource

    w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
    source = Web3EventSource(w3, contracts)
    events = await source.query(EventFilter(EventKind.PAYMENT_RECEIVED))
    token = source.subscribe(event_filter, on_batch)
    source.cancel(token)
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol

from web3 import AsyncWeb3, Web3
from web3.exceptions import BlockNotFound

from config.loader import get_config
from data.event_codec import build_topics, decode_logs
from ledger_logging.logger_manager import setup_module_logger
from shared.constants import (
    CONTRACT_SUBSCRIPTION_MANAGER,
    CONTRACT_SUBSCRIPTION_NFT,
    DEFAULT_CONFIRMATION_BLOCKS,
    DEFAULT_MAX_BLOCK_RANGE,
    DEFAULT_POLL_INTERVAL_SECONDS,
)
from shared.errors import InvalidFilter, SourceUnavailable
from shared.types import (
    FULL_HISTORY,
    BlockRange,
    DomainEvent,
    EventFilter,
    EventKind,
    order_sort_key,
)

OnBatch = Callable[[list[DomainEvent]], Any]

# Which deployed contract emits each event kind
_EMITTER: dict[EventKind, str] = {
    EventKind.MERCHANT_REGISTERED: CONTRACT_SUBSCRIPTION_MANAGER,
    EventKind.MERCHANT_WITHDRAWAL: CONTRACT_SUBSCRIPTION_MANAGER,
    EventKind.PAYMENT_RECEIVED: CONTRACT_SUBSCRIPTION_MANAGER,
    EventKind.SUBSCRIPTION_MINTED: CONTRACT_SUBSCRIPTION_NFT,
    EventKind.SUBSCRIPTION_RENEWED: CONTRACT_SUBSCRIPTION_NFT,
    EventKind.SUBSCRIPTION_BURNED: CONTRACT_SUBSCRIPTION_NFT,
    EventKind.SUBSCRIPTION_EXPIRED: CONTRACT_SUBSCRIPTION_NFT,
}


@dataclass(frozen=True)
class SubscriptionToken:
    """Cancellation token for one live adapter subscription."""

    token_id: int
    event_filter: EventFilter


class EventSource(Protocol):
    """Interface the core consumes from the remote event log."""

    async def query(
        self, event_filter: EventFilter, block_range: BlockRange = FULL_HISTORY
    ) -> list[DomainEvent]: ...

    def subscribe(self, event_filter: EventFilter, on_batch: OnBatch) -> SubscriptionToken: ...

    def cancel(self, token: SubscriptionToken) -> None: ...

    async def block_timestamp(self, block_number: int) -> int | None: ...


class Web3EventSource:
    """
    EventSource over an AsyncWeb3 HTTP connection.

    Accepts an AsyncWeb3 instance via dependency injection so one connection
    can be shared with other clients. Timing parameters default to
    config/timing.json when not passed explicitly.
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        contracts: Mapping[str, str],
        poll_interval: float | None = None,
        confirmation_blocks: int | None = None,
        max_block_range: int | None = None,
        start_block: int = 0,
    ) -> None:
        self._w3 = w3
        self._contracts = {
            name: Web3.to_checksum_address(address) for name, address in contracts.items()
        }

        timing = get_config().get_timing_config().get("event_source", {})
        self._poll_interval = (
            poll_interval
            if poll_interval is not None
            else timing.get("poll_interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS)
        )
        self._confirmations = (
            confirmation_blocks
            if confirmation_blocks is not None
            else timing.get("confirmation_blocks", DEFAULT_CONFIRMATION_BLOCKS)
        )
        self._max_block_range = (
            max_block_range
            if max_block_range is not None
            else timing.get("max_block_range", DEFAULT_MAX_BLOCK_RANGE)
        )
        self._start_block = start_block

        self._token_ids = itertools.count(1)
        self._tasks: dict[int, asyncio.Task] = {}
        self.decode_failures = 0

        self._logger = setup_module_logger(
            "event_source", "event_source.log", module_folder="Event_Source_Logs"
        )

    # ------------------------------------------------------------------
    # Historical queries
    # ------------------------------------------------------------------

    async def query(
        self, event_filter: EventFilter, block_range: BlockRange = FULL_HISTORY
    ) -> list[DomainEvent]:
        """
        Fetch events matching a filter over an inclusive block range.

        Returns events sorted by (block_number, log_index) ascending.

        Raises:
            SourceUnavailable: RPC failure on any window.
        """
        from_block = (
            block_range.from_block if block_range.from_block is not None else self._start_block
        )
        to_block = (
            block_range.to_block if block_range.to_block is not None else await self._head_block()
        )
        if from_block > to_block:
            return []

        address = self._address_for(event_filter)
        topics = build_topics(event_filter)

        raw_logs: list[Any] = []
        for window_start in range(from_block, to_block + 1, self._max_block_range):
            window_end = min(window_start + self._max_block_range - 1, to_block)
            raw_logs.extend(await self._get_logs(address, topics, window_start, window_end))

        result = decode_logs(raw_logs)
        if result.failures:
            self.decode_failures += result.failures
            self._logger.warning(
                "%d undecodable log(s) skipped for %s over %s",
                result.failures,
                event_filter.kind.value,
                block_range,
            )

        events = [event for event in result.events if event_filter.matches(event)]
        events.sort(key=order_sort_key)
        return events

    async def block_timestamp(self, block_number: int) -> int | None:
        """Unix timestamp of a block, or None if the node does not know it."""
        try:
            block = await self._w3.eth.get_block(block_number)
        except BlockNotFound:
            return None
        except Exception as e:
            self._logger.error("get_block(%d) failed: %s", block_number, e)
            raise SourceUnavailable(f"get_block({block_number}) failed: {e}") from e
        timestamp = block.get("timestamp") if block is not None else None
        return int(timestamp) if timestamp is not None else None

    # ------------------------------------------------------------------
    # Live subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, event_filter: EventFilter, on_batch: OnBatch) -> SubscriptionToken:
        """
        Start polling for new events matching event_filter.

        Must be called from a running event loop. on_batch receives each
        non-empty batch, ordered by (block_number, log_index).

        Raises:
            InvalidFilter: no contract address configured for the filter's
                event kind. Topic encoding errors also surface here rather
                than inside the poll loop.
        """
        self._address_for(event_filter)
        build_topics(event_filter)

        token = SubscriptionToken(next(self._token_ids), event_filter)
        task = asyncio.get_running_loop().create_task(
            self._poll_loop(token, on_batch), name=f"event-poll-{token.token_id}"
        )
        self._tasks[token.token_id] = task
        self._logger.info(
            "Subscription %d started for %s (args=%s)",
            token.token_id,
            event_filter.kind.value,
            dict(event_filter.args),
        )
        return token

    def cancel(self, token: SubscriptionToken) -> None:
        """Stop a live subscription. Safe to call more than once."""
        task = self._tasks.pop(token.token_id, None)
        if task is None:
            return
        task.cancel()
        self._logger.info("Subscription %d cancelled", token.token_id)

    @property
    def active_subscriptions(self) -> int:
        return len(self._tasks)

    async def close(self) -> None:
        """Cancel every live subscription and wait for the poll tasks to exit."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _poll_loop(self, token: SubscriptionToken, on_batch: OnBatch) -> None:
        """Poll confirmed blocks and deliver new matching events until cancelled."""
        cursor: int | None = None
        while token.token_id in self._tasks:
            try:
                confirmed = await self._head_block() - self._confirmations
                if cursor is None:
                    # Only events observed after subscription are delivered
                    cursor = max(confirmed + 1, 0)
                elif confirmed >= cursor:
                    events = await self.query(token.event_filter, BlockRange(cursor, confirmed))
                    cursor = confirmed + 1
                    if events and token.token_id in self._tasks:
                        on_batch(events)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.warning(
                    "Subscription %d poll failed: %s. Retrying in %.1fs",
                    token.token_id,
                    e,
                    self._poll_interval,
                )
            await asyncio.sleep(self._poll_interval)

    # ------------------------------------------------------------------
    # RPC helpers
    # ------------------------------------------------------------------

    async def _head_block(self) -> int:
        try:
            return int(await self._w3.eth.block_number)
        except Exception as e:
            self._logger.error("eth_blockNumber failed: %s", e)
            raise SourceUnavailable(f"eth_blockNumber failed: {e}") from e

    async def _get_logs(
        self, address: str, topics: list[str | None], from_block: int, to_block: int
    ) -> list[Any]:
        params = {
            "address": address,
            "topics": topics,
            "fromBlock": from_block,
            "toBlock": to_block,
        }
        try:
            return list(await self._w3.eth.get_logs(params))
        except Exception as e:
            self._logger.error("eth_getLogs [%d, %d] failed: %s", from_block, to_block, e)
            raise SourceUnavailable(f"eth_getLogs [{from_block}, {to_block}] failed: {e}") from e

    def _address_for(self, event_filter: EventFilter) -> str:
        if event_filter.address:
            return Web3.to_checksum_address(event_filter.address)
        contract = _EMITTER[event_filter.kind]
        address = self._contracts.get(contract)
        if not address:
            raise InvalidFilter(
                f"No '{contract}' address configured for {event_filter.kind.value}"
            )
        return address
