"""Error taxonomy for reconciliation: input defects, sink failures, invariant violations."""

from __future__ import annotations


class ReconError(Exception):
    """Base class for reconciliation errors."""


class InvalidOrderError(ReconError, ValueError):
    """Order fails eligibility or sanity checks. The order is skipped, never applied."""

    def __init__(self, order_id: str, reason: str) -> None:
        super().__init__(f"Order {order_id}: {reason}")
        self.order_id = order_id
        self.reason = reason


class TradeSinkError(ReconError):
    """Persistence failed. The partition is rolled back and may be retried."""


class InvariantViolation(ReconError, RuntimeError):
    """A quantity or status invariant broke. Programming error; never corrected."""


class ReconciliationError(ReconError):
    """One or more partitions failed to persist during a run.

    ``failures`` maps symbol -> error message. ``trades`` holds the trades of
    the partitions that did commit.
    """

    def __init__(self, user_id: str, failures: dict[str, str], trades: list | None = None) -> None:
        symbols = ", ".join(sorted(failures))
        super().__init__(f"Reconciliation for user {user_id} failed for: {symbols}")
        self.user_id = user_id
        self.failures = failures
        self.trades = trades or []
