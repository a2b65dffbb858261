"""
Error taxonomy for the subscription ledger.

Transport failures are retryable (SourceUnavailable); caller mistakes are
not (InvalidRange, InvalidFilter). Decode and timestamp failures are raised
per record and counted by the code that skips them.
"""

from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    """Base class for all ledger errors."""

    retryable: bool = False


class SourceUnavailable(LedgerError):
    """The event source could not answer (RPC down, timeout, rate limit)."""

    retryable = True


class InvalidRange(LedgerError, ValueError):
    """Block range is malformed (from_block > to_block or negative bound)."""


class InvalidFilter(LedgerError, ValueError):
    """Event filter constrains a field the event kind does not index."""


class DecodeFailure(LedgerError):
    """A raw log record could not be mapped to a known DomainEvent."""

    def __init__(self, message: str, raw: Any = None) -> None:
        super().__init__(message)
        self.raw = raw


class UnresolvableTimestamp(LedgerError):
    """No wall-clock timestamp can be derived for a block."""

    def __init__(self, block_number: int | None) -> None:
        super().__init__(f"No timestamp available for block {block_number}")
        self.block_number = block_number


class AnalyticsError(LedgerError):
    """A composite analytics call failed; carries scope, range and cause."""

    def __init__(self, scope: str, block_range: Any, cause: BaseException) -> None:
        super().__init__(f"{scope} analytics failed over {block_range}: {cause}")
        self.scope = scope
        self.block_range = block_range
        self.cause = cause
        self.retryable = getattr(cause, "retryable", False)
