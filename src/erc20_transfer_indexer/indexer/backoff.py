"""Failure classification and backoff durations for the indexer loop."""

from __future__ import annotations

from erc20_transfer_indexer.chain.client import ProviderError, ProviderErrorKind

RATE_LIMITED_BACKOFF_SECONDS = 60.0
TRANSIENT_BACKOFF_SECONDS = 30.0
MAX_BACKOFF_SECONDS = 300.0


def classify_error(exc: BaseException) -> ProviderErrorKind:
    """Map a cycle failure to a backoff class.

    Only ``ProviderError`` carries a specific kind; ledger failures and any
    other exception are unclassified.
    """
    if isinstance(exc, ProviderError):
        return exc.kind
    return ProviderErrorKind.OTHER


def backoff_seconds(kind: ProviderErrorKind, idle_interval_seconds: float) -> float:
    """Backoff duration for a failure class, capped at five minutes."""
    if kind is ProviderErrorKind.RATE_LIMITED:
        delay = RATE_LIMITED_BACKOFF_SECONDS
    elif kind is ProviderErrorKind.TRANSIENT:
        delay = TRANSIENT_BACKOFF_SECONDS
    else:
        delay = 2 * idle_interval_seconds
    return min(delay, MAX_BACKOFF_SECONDS)
