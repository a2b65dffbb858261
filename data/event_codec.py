"""
Event codec for the SubscriptionManager and SubscriptionNFT contracts.

Maps raw Ethereum log records (eth_getLogs / eth_subscribe shape, with
either hex strings or HexBytes) onto the closed DomainEvent family in
shared/types.py, and encodes EventFilters into eth_getLogs topic lists.

Decoding is exhaustive: every topic0 is either one of the known signatures
or a DecodeFailure. Nothing is ever decoded into a "closest" event type.

Usage:
    from data.event_codec import decode_log, decode_logs, build_topics

    event = decode_log(raw_log)
    result = decode_logs(raw_logs)   # DecodeResult(events, failures)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from eth_abi.abi import decode as abi_decode
from eth_abi.abi import encode as abi_encode
from web3 import Web3

from ledger_logging.logger_manager import setup_module_logger
from shared.constants import (
    SIG_MERCHANT_REGISTERED,
    SIG_MERCHANT_WITHDRAWAL,
    SIG_PAYMENT_RECEIVED,
    SIG_SUBSCRIPTION_BURNED,
    SIG_SUBSCRIPTION_EXPIRED,
    SIG_SUBSCRIPTION_MINTED,
    SIG_SUBSCRIPTION_RENEWED,
)
from shared.errors import DecodeFailure
from shared.types import (
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
)

_logger = setup_module_logger("event_codec", "event_codec.log", module_folder="Event_Source_Logs")


def _topic_hash(signature: str) -> str:
    return Web3.to_hex(Web3.keccak(text=signature)).lower()


@dataclass(frozen=True)
class EventSpec:
    """ABI layout of one event: indexed topics and non-indexed data words."""

    kind: EventKind
    signature: str
    event_cls: Callable[..., DomainEvent]
    indexed: tuple[tuple[str, str], ...]  # (field, abi type) in topic order
    data: tuple[tuple[str, str], ...]  # (field, abi type) in data order
    topic0: str = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "topic0", _topic_hash(self.signature))


# Field names follow shared/types.py; ABI names noted where they differ.
EVENT_SPECS: tuple[EventSpec, ...] = (
    EventSpec(
        EventKind.MERCHANT_REGISTERED,
        SIG_MERCHANT_REGISTERED,
        MerchantRegistered,
        indexed=(("merchant_id", "uint256"), ("owner", "address")),
        data=(("payout_address", "address"),),
    ),
    EventSpec(
        EventKind.MERCHANT_WITHDRAWAL,
        SIG_MERCHANT_WITHDRAWAL,
        MerchantWithdrawal,
        indexed=(("merchant_id", "uint256"), ("token", "address")),
        data=(("amount", "uint256"), ("payout_address", "address")),  # ABI: to
    ),
    EventSpec(
        EventKind.PAYMENT_RECEIVED,
        SIG_PAYMENT_RECEIVED,
        PaymentReceived,
        indexed=(
            ("subscriber", "address"),  # ABI: user
            ("merchant_id", "uint256"),
            ("payment_token", "address"),
        ),
        data=(("amount", "uint256"), ("platform_fee", "uint256"), ("period", "uint64")),
    ),
    EventSpec(
        EventKind.SUBSCRIPTION_MINTED,
        SIG_SUBSCRIPTION_MINTED,
        SubscriptionMinted,
        indexed=(("subscriber", "address"), ("merchant_id", "uint256")),
        data=(("expires_at", "uint64"), ("renewal_count", "uint32")),
    ),
    EventSpec(
        EventKind.SUBSCRIPTION_RENEWED,
        SIG_SUBSCRIPTION_RENEWED,
        SubscriptionRenewed,
        indexed=(("subscriber", "address"), ("merchant_id", "uint256")),
        data=(("new_expires_at", "uint64"), ("renewal_count", "uint32")),
    ),
    EventSpec(
        EventKind.SUBSCRIPTION_BURNED,
        SIG_SUBSCRIPTION_BURNED,
        SubscriptionBurned,
        indexed=(("subscriber", "address"), ("merchant_id", "uint256")),
        data=(),
    ),
    EventSpec(
        EventKind.SUBSCRIPTION_EXPIRED,
        SIG_SUBSCRIPTION_EXPIRED,
        SubscriptionExpired,
        indexed=(("subscriber", "address"), ("merchant_id", "uint256")),
        data=(),
    ),
)

# O(1) routing tables
SPEC_BY_TOPIC: dict[str, EventSpec] = {spec.topic0: spec for spec in EVENT_SPECS}
SPEC_BY_KIND: dict[EventKind, EventSpec] = {spec.kind: spec for spec in EVENT_SPECS}


@dataclass
class DecodeResult:
    events: list[DomainEvent] = field(default_factory=list)
    failures: int = 0


# ============================================================================
# Normalization helpers
# ============================================================================


def _hex_str(value: Any) -> str:
    """Normalize bytes / HexBytes / hex str to a lowercase 0x-prefixed string."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, str):
        value = value.lower()
        return value if value.startswith("0x") else "0x" + value
    raise DecodeFailure(f"Expected hex value, got {type(value).__name__}")


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        try:
            return bytes.fromhex(value[2:] if value.startswith("0x") else value)
        except ValueError as exc:
            raise DecodeFailure(f"Malformed hex payload: {value[:20]}...") from exc
    raise DecodeFailure(f"Expected bytes or hex payload, got {type(value).__name__}")


def _quantity(value: Any) -> int | None:
    """Block numbers / log indexes arrive as int or hex quantity; None if pending."""
    if value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 16) if value.startswith("0x") else int(value)
        except ValueError as exc:
            raise DecodeFailure(f"Malformed quantity: {value}") from exc
    raise DecodeFailure(f"Unsupported quantity type {type(value).__name__}")


def _address(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        value = "0x" + bytes(value).hex()[-40:]
    try:
        return Web3.to_checksum_address(value)
    except (ValueError, TypeError) as exc:
        raise DecodeFailure(f"Malformed address: {value!r}") from exc


# ============================================================================
# Decoding
# ============================================================================


def decode_log(raw: Any) -> DomainEvent:
    """
    Decode a raw log entry into a typed DomainEvent.

    Args:
        raw: Log dict (or web3 AttributeDict) with 'address', 'topics',
             'data', 'blockNumber', 'transactionHash', 'logIndex'.

    Raises:
        DecodeFailure: unknown topic0, wrong topic count, or malformed data.
    """
    topics = raw.get("topics") or []
    if not topics:
        raise DecodeFailure("Log has no topics (anonymous event)", raw)

    topic0 = _hex_str(topics[0])
    spec = SPEC_BY_TOPIC.get(topic0)
    if spec is None:
        raise DecodeFailure(f"Unknown event topic {topic0}", raw)

    if len(topics) != len(spec.indexed) + 1:
        raise DecodeFailure(
            f"{spec.kind.value} expects {len(spec.indexed)} indexed topics, got {len(topics) - 1}",
            raw,
        )

    values: dict[str, Any] = {}
    try:
        for (name, abi_type), topic in zip(spec.indexed, topics[1:], strict=True):
            values[name] = abi_decode([abi_type], _as_bytes(topic))[0]
        if spec.data:
            decoded = abi_decode([t for _, t in spec.data], _as_bytes(raw.get("data") or "0x"))
            for (name, _), value in zip(spec.data, decoded, strict=True):
                values[name] = value
    except DecodeFailure:
        raise
    except Exception as exc:
        raise DecodeFailure(f"Failed to decode {spec.kind.value}: {exc}", raw) from exc

    for name, abi_type in spec.indexed + spec.data:
        if abi_type == "address":
            values[name] = _address(values[name])

    tx_hash = raw.get("transactionHash")
    return spec.event_cls(
        address=_address(raw.get("address") or "0x" + "00" * 20),
        block_number=_quantity(raw.get("blockNumber")),
        tx_hash=_hex_str(tx_hash) if tx_hash is not None else "",
        log_index=_quantity(raw.get("logIndex")),
        **values,
    )


def decode_logs(raws: list[Any]) -> DecodeResult:
    """Decode a batch, skipping and counting records that fail to decode."""
    result = DecodeResult()
    for raw in raws:
        try:
            result.events.append(decode_log(raw))
        except DecodeFailure as exc:
            result.failures += 1
            _logger.warning("Skipping undecodable log: %s", exc)
    return result


# ============================================================================
# Filter encoding
# ============================================================================


def build_topics(event_filter: EventFilter) -> list[str | None]:
    """
    Encode an EventFilter as an eth_getLogs topic list.

    Returns [topic0, t1, ...] with None wildcards for unconstrained indexed
    fields; trailing wildcards are trimmed.
    """
    spec = SPEC_BY_KIND[event_filter.kind]
    topics: list[str | None] = [spec.topic0]
    for name, abi_type in spec.indexed:
        value = event_filter.args.get(name)
        if value is None:
            topics.append(None)
            continue
        if abi_type == "address":
            value = Web3.to_checksum_address(value)
        topics.append("0x" + abi_encode([abi_type], [value]).hex())
    while topics and topics[-1] is None:
        topics.pop()
    return topics
