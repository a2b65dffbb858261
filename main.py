"""
Subscription Ledger: main entrypoint.

Single-process asyncio runner:
    1. Backfill: platform (and optionally merchant) snapshot over full history
    2. Monitors: live payment, lifecycle and merchant monitors that log
              each confirmed event and keep it in the event cache

Runs until SIGINT / SIGTERM, then stops every monitor and closes the source.

Usage:
    python main.py                        # Sepolia, all merchants
    LEDGER_CHAIN_ID=8453 LEDGER_MERCHANT_ID=1 python main.py
"""

from __future__ import annotations

import asyncio
import signal
import sys
import time

from dotenv import load_dotenv

from config.loader import DEFAULT_CHAIN_ID, get_config, get_env_var
from config.validate import ConfigValidationError, validate_all_configs
from ledger_logging.logger_manager import create_module_log_directories, setup_module_logger
from shared.serialization_utils import to_json
from shared.types import DomainEvent, EventKind, MonitorKind, SnapshotScope

# ---------------------------------------------------------------------------
# Module logger
# ---------------------------------------------------------------------------
create_module_log_directories()
_logger = setup_module_logger("main", "main.log", module_folder="Main_Logs")


def _log_banner(chain_id: int, chain_name: str, rpc_url: str, merchant_id: int | None) -> None:
    """Log a concise startup summary."""
    _logger.info("=" * 60)
    _logger.info("Subscription Ledger starting")
    _logger.info("=" * 60)
    _logger.info("  chain           : %s (%d)", chain_name, chain_id)
    _logger.info(
        "  rpc             : %s...%s", rpc_url[:25], rpc_url[-6:] if len(rpc_url) > 31 else ""
    )
    _logger.info("  merchant filter : %s", merchant_id if merchant_id is not None else "(all)")
    _logger.info("=" * 60)


def _log_event(event: DomainEvent) -> None:
    _logger.info(
        "[%s] block=%s tx=%s %s",
        event.kind.value,
        event.block_number,
        event.tx_hash,
        to_json(event),
    )


# ---------------------------------------------------------------------------
# Main async entry
# ---------------------------------------------------------------------------


async def _run() -> None:
    """Wire the ledger, log a backfilled snapshot and run live monitors."""
    # ------------------------------------------------------------------
    # 1. Load environment and validate configuration
    # ------------------------------------------------------------------
    load_dotenv()

    chain_id: int = get_env_var("LEDGER_CHAIN_ID", DEFAULT_CHAIN_ID, int)
    merchant_env: int = get_env_var("LEDGER_MERCHANT_ID", -1, int)
    merchant_id = merchant_env if merchant_env >= 0 else None

    try:
        validate_all_configs(chain_id)
    except ConfigValidationError as exc:
        _logger.critical("Config validation failed:\n%s", exc)
        sys.exit(1)

    cfg = get_config()
    chain_name = cfg.get_chain_config(chain_id).get("name", str(chain_id))
    _log_banner(chain_id, chain_name, cfg.get_rpc_url(chain_id), merchant_id)

    # ------------------------------------------------------------------
    # 2. Build the ledger (AsyncWeb3 over HTTP)
    # ------------------------------------------------------------------
    from core.sdk import SubscriptionLedger
    from shared.errors import AnalyticsError

    ledger = SubscriptionLedger.from_config(chain_id)

    # ------------------------------------------------------------------
    # 3. Backfill snapshots
    # ------------------------------------------------------------------
    now = int(time.time())
    try:
        platform = await ledger.get_snapshot(SnapshotScope.PLATFORM, reference_time=now)
        _logger.info("Platform snapshot: %s", to_json(platform))
        if merchant_id is not None:
            merchant = await ledger.get_snapshot(
                SnapshotScope.MERCHANT, merchant_id, reference_time=now
            )
            _logger.info("Merchant %d snapshot: %s", merchant_id, to_json(merchant))
    except AnalyticsError as exc:
        _logger.error(
            "Backfill failed (%s, retryable=%s); continuing with live monitors",
            exc,
            exc.retryable,
        )

    # ------------------------------------------------------------------
    # 4. Live monitors
    # ------------------------------------------------------------------
    ledger.monitor(
        MonitorKind.PAYMENT,
        {EventKind.PAYMENT_RECEIVED: _log_event},
        merchant_id=merchant_id,
        cache_key="payments",
    )
    ledger.monitor(
        MonitorKind.LIFECYCLE,
        {
            EventKind.SUBSCRIPTION_MINTED: _log_event,
            EventKind.SUBSCRIPTION_RENEWED: _log_event,
            EventKind.SUBSCRIPTION_BURNED: _log_event,
            EventKind.SUBSCRIPTION_EXPIRED: _log_event,
        },
        merchant_id=merchant_id,
        cache_key="lifecycle",
    )
    ledger.monitor(
        MonitorKind.MERCHANT,
        {
            EventKind.MERCHANT_REGISTERED: _log_event,
            EventKind.MERCHANT_WITHDRAWAL: _log_event,
        },
        merchant_id=merchant_id,
        cache_key="merchant",
    )
    _logger.info("Live monitors running: %d", len(ledger.registry))

    # ------------------------------------------------------------------
    # 5. Signal handling for graceful shutdown
    # ------------------------------------------------------------------
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _handle_signal(sig: signal.Signals) -> None:
        _logger.info("Received %s, initiating graceful shutdown", sig.name)
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_signal, sig)

    try:
        await shutdown_event.wait()
    finally:
        _logger.info("Shutting down, stopping monitors")
        await ledger.close()
        _logger.info(
            "Shutdown complete (cached: payments=%d lifecycle=%d merchant=%d)",
            len(ledger.cache.get("payments")),
            len(ledger.cache.get("lifecycle")),
            len(ledger.cache.get("merchant")),
        )


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main() -> None:
    """Synchronous entry point."""
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        _logger.info("Interrupted by user")


if __name__ == "__main__":
    main()
