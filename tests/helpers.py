"""
Test helpers for the subscription ledger suite.

Event builders, raw-log builders (ABI-encoded with eth_abi) and an
in-memory EventSource shared by the unit tests.
"""

from __future__ import annotations

import itertools
from typing import Any

from eth_abi import encode
from web3 import Web3

from data.event_source import SubscriptionToken
from shared.errors import SourceUnavailable
from shared.types import (
    FULL_HISTORY,
    BlockRange,
    DomainEvent,
    EventFilter,
    EventKind,
    MerchantRegistered,
    MerchantWithdrawal,
    PaymentReceived,
    SubscriptionBurned,
    SubscriptionExpired,
    SubscriptionMinted,
    SubscriptionRenewed,
    order_sort_key,
)

# ---------------------------------------------------------------------------
# Sample addresses
# ---------------------------------------------------------------------------

MANAGER_ADDRESS = Web3.to_checksum_address("0x" + "11" * 20)
NFT_ADDRESS = Web3.to_checksum_address("0x" + "22" * 20)
SUBSCRIBER_A = "0xd8dA6BF26964aF9D7eEd9e03E53415D37aA96045"
SUBSCRIBER_B = Web3.to_checksum_address("0x" + "33" * 20)
OWNER = Web3.to_checksum_address("0x" + "44" * 20)
PAYOUT = Web3.to_checksum_address("0x" + "55" * 20)
TOKEN_USDC = Web3.to_checksum_address("0x" + "66" * 20)
NATIVE = "0x0000000000000000000000000000000000000000"

CONTRACTS = {"subscription_manager": MANAGER_ADDRESS, "subscription_nft": NFT_ADDRESS}


def tx_hash(block: int | None, log_index: int | None) -> str:
    """Deterministic fake transaction hash for a log position."""
    return "0x" + f"{block or 0:032x}{log_index or 0:032x}"


# ---------------------------------------------------------------------------
# DomainEvent builders
# ---------------------------------------------------------------------------


def _provenance(address: str, block: int | None, log_index: int | None, tx: str | None) -> dict:
    return {
        "address": address,
        "block_number": block,
        "log_index": log_index,
        "tx_hash": tx if tx is not None else tx_hash(block, log_index),
    }


def minted(subscriber=SUBSCRIBER_A, merchant_id=1, expires_at=100, renewal_count=0,
           block=10, log_index=0, tx=None) -> SubscriptionMinted:
    return SubscriptionMinted(
        subscriber=subscriber, merchant_id=merchant_id, expires_at=expires_at,
        renewal_count=renewal_count, **_provenance(NFT_ADDRESS, block, log_index, tx),
    )


def renewed(subscriber=SUBSCRIBER_A, merchant_id=1, new_expires_at=200, renewal_count=1,
            block=20, log_index=0, tx=None) -> SubscriptionRenewed:
    return SubscriptionRenewed(
        subscriber=subscriber, merchant_id=merchant_id, new_expires_at=new_expires_at,
        renewal_count=renewal_count, **_provenance(NFT_ADDRESS, block, log_index, tx),
    )


def burned(subscriber=SUBSCRIBER_A, merchant_id=1, block=15, log_index=0, tx=None):
    return SubscriptionBurned(
        subscriber=subscriber, merchant_id=merchant_id,
        **_provenance(NFT_ADDRESS, block, log_index, tx),
    )


def expired(subscriber=SUBSCRIBER_A, merchant_id=1, block=30, log_index=0, tx=None):
    return SubscriptionExpired(
        subscriber=subscriber, merchant_id=merchant_id,
        **_provenance(NFT_ADDRESS, block, log_index, tx),
    )


def payment(subscriber=SUBSCRIBER_A, merchant_id=1, amount=1_000, platform_fee=50,
            token=NATIVE, period=2_592_000, block=10, log_index=1, tx=None) -> PaymentReceived:
    return PaymentReceived(
        subscriber=subscriber, merchant_id=merchant_id, payment_token=token, amount=amount,
        platform_fee=platform_fee, period=period,
        **_provenance(MANAGER_ADDRESS, block, log_index, tx),
    )


def registered(merchant_id=1, owner=OWNER, payout=PAYOUT, block=1, log_index=0, tx=None):
    return MerchantRegistered(
        merchant_id=merchant_id, owner=owner, payout_address=payout,
        **_provenance(MANAGER_ADDRESS, block, log_index, tx),
    )


def withdrawal(merchant_id=1, token=NATIVE, amount=500, payout=PAYOUT, block=50,
               log_index=0, tx=None):
    return MerchantWithdrawal(
        merchant_id=merchant_id, token=token, amount=amount, payout_address=payout,
        **_provenance(MANAGER_ADDRESS, block, log_index, tx),
    )


# ---------------------------------------------------------------------------
# Raw log builder (eth_getLogs shape)
# ---------------------------------------------------------------------------


def raw_log(
    signature: str,
    indexed: list[tuple[str, Any]],
    data: list[tuple[str, Any]],
    block: int | None = 10,
    log_index: int | None = 0,
    address: str = NFT_ADDRESS,
) -> dict[str, Any]:
    """Build an eth_getLogs entry with hex-string fields, as a node returns them."""
    topics = [Web3.to_hex(Web3.keccak(text=signature))]
    topics += ["0x" + encode([abi_type], [value]).hex() for abi_type, value in indexed]
    payload = encode([t for t, _ in data], [v for _, v in data]) if data else b""
    return {
        "address": address,
        "topics": topics,
        "data": "0x" + payload.hex(),
        "blockNumber": hex(block) if block is not None else None,
        "transactionHash": tx_hash(block, log_index),
        "logIndex": hex(log_index) if log_index is not None else None,
    }


def raw_minted(subscriber=SUBSCRIBER_A, merchant_id=1, expires_at=100, renewal_count=0,
               block=10, log_index=0) -> dict[str, Any]:
    return raw_log(
        "SubscriptionMinted(address,uint256,uint64,uint32)",
        [("address", subscriber), ("uint256", merchant_id)],
        [("uint64", expires_at), ("uint32", renewal_count)],
        block=block,
        log_index=log_index,
    )


def raw_payment(subscriber=SUBSCRIBER_A, merchant_id=1, token=NATIVE, amount=1_000,
                platform_fee=50, period=2_592_000, block=10, log_index=1) -> dict[str, Any]:
    return raw_log(
        "PaymentReceived(address,uint256,address,uint256,uint256,uint64)",
        [("address", subscriber), ("uint256", merchant_id), ("address", token)],
        [("uint256", amount), ("uint256", platform_fee), ("uint64", period)],
        block=block,
        log_index=log_index,
        address=MANAGER_ADDRESS,
    )


# ---------------------------------------------------------------------------
# In-memory event source
# ---------------------------------------------------------------------------


class FakeEventSource:
    """
    EventSource backed by a list of events.

    - query() filters and sorts like the real adapter; kinds listed in
      fail_kinds raise SourceUnavailable.
    - subscribe() records the callback; deliver() pushes a batch to one
      token regardless of cancellation (simulating an in-flight batch),
      push() delivers to every live subscription whose filter matches.
    """

    def __init__(self, events: list[DomainEvent] | None = None,
                 timestamps: dict[int, int] | None = None) -> None:
        self.events = list(events or [])
        self.timestamps = dict(timestamps or {})
        self.fail_kinds: set[EventKind] = set()
        self.fail_timestamps = False
        self.fail_subscribe_after: int | None = None
        self.subscriptions: dict[int, tuple[EventFilter, Any]] = {}
        self.cancelled: list[int] = []
        self.queries: list[tuple[EventFilter, BlockRange]] = []
        self.timestamp_calls: list[int] = []
        self._ids = itertools.count(1)

    async def query(self, event_filter: EventFilter,
                    block_range: BlockRange = FULL_HISTORY) -> list[DomainEvent]:
        self.queries.append((event_filter, block_range))
        if event_filter.kind in self.fail_kinds:
            raise SourceUnavailable(f"{event_filter.kind.value} query failed")
        selected = [
            e for e in self.events
            if event_filter.matches(e) and _in_range(e, block_range)
        ]
        return sorted(selected, key=order_sort_key)

    def subscribe(self, event_filter: EventFilter, on_batch) -> SubscriptionToken:
        if self.fail_subscribe_after is not None and len(self.subscriptions) >= self.fail_subscribe_after:
            raise SourceUnavailable("subscribe failed")
        token = SubscriptionToken(next(self._ids), event_filter)
        self.subscriptions[token.token_id] = (event_filter, on_batch)
        return token

    def cancel(self, token: SubscriptionToken) -> None:
        self.cancelled.append(token.token_id)

    async def block_timestamp(self, block_number: int) -> int | None:
        self.timestamp_calls.append(block_number)
        if self.fail_timestamps:
            raise SourceUnavailable("get_block failed")
        return self.timestamps.get(block_number)

    @property
    def live_tokens(self) -> list[int]:
        return [t for t in self.subscriptions if t not in self.cancelled]

    def deliver(self, token_id: int, events: list[DomainEvent]) -> None:
        _, on_batch = self.subscriptions[token_id]
        on_batch(events)

    def push(self, events: list[DomainEvent]) -> None:
        for token_id in self.live_tokens:
            event_filter, on_batch = self.subscriptions[token_id]
            batch = [e for e in events if event_filter.matches(e)]
            if batch:
                on_batch(batch)


def _in_range(event: DomainEvent, block_range: BlockRange) -> bool:
    if event.block_number is None:
        return block_range.from_block is None and block_range.to_block is None
    if block_range.from_block is not None and event.block_number < block_range.from_block:
        return False
    if block_range.to_block is not None and event.block_number > block_range.to_block:
        return False
    return True
