"""
Reconciliation run: unconsumed orders for a user -> trades, one partition per symbol.

Each (user, symbol) partition is processed inside one store transaction and
under a process-local lock, so a partition has at most one active writer and
either commits all its trades and order links or none of them. Partitions
are independent: one failing does not stop the others, and the run reports
failures at the end so the caller can retry.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, ContextManager, Iterator, Protocol

from config.recon_rules import ReconRules
from recon_core.contracts import Order, PartitionResult, SkippedOrder, Trade, TradeSink
from recon_core.errors import ReconciliationError, TradeSinkError
from recon_core.position_tracker import PositionTracker

logger = logging.getLogger("recon.runner")

EventCallback = Callable[[str, dict], None]


class PartitionSession(TradeSink, Protocol):
    def fetch_unconsumed_orders(self, user_id: str, symbol: str | None = None) -> list[Order]:
        ...


class PartitionStore(Protocol):
    def fetch_unconsumed_orders(self, user_id: str, symbol: str | None = None) -> list[Order]:
        ...

    def partition(self, user_id: str, symbol: str) -> ContextManager[PartitionSession]:
        ...


class PartitionLocks:
    """One lock per (user, symbol). Single writer per partition within a process.

    Entries are reference counted and dropped once no thread holds or waits
    on them.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # key -> [lock, holders and waiters]
        self._locks: dict[tuple[str, str], list[Any]] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, user_id: str, symbol: str) -> Iterator[None]:
        key = (user_id, symbol)
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


_PROCESS_LOCKS = PartitionLocks()


@dataclass
class RunResult:
    """Outcome of reconciling one user."""

    user_id: str
    partitions: list[PartitionResult] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def trades(self) -> list[Trade]:
        out: list[Trade] = []
        for p in self.partitions:
            out.extend(p.trades)
        return out

    @property
    def skipped(self) -> list[SkippedOrder]:
        out: list[SkippedOrder] = []
        for p in self.partitions:
            out.extend(p.skipped)
        return out

    @property
    def ok(self) -> bool:
        return not self.failures


class Reconciler:
    """
    Run the Position Tracker over every symbol with unconsumed orders.

    ``max_workers`` > 1 processes different symbols on worker threads; fills
    within a symbol are always applied sequentially.
    """

    def __init__(
        self,
        store: PartitionStore,
        rules: ReconRules | None = None,
        *,
        max_workers: int = 1,
        on_event: EventCallback | None = None,
        locks: PartitionLocks | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self._store = store
        self._rules = rules or ReconRules()
        self._max_workers = max_workers
        self._on_event = on_event
        self._event_lock = threading.Lock()
        self._locks = locks or _PROCESS_LOCKS

    def _emit(self, event_type: str, payload: dict) -> None:
        if self._on_event is None:
            return
        with self._event_lock:
            self._on_event(event_type, payload)

    def _emit_kw(self, event_type: str, **payload: Any) -> None:
        self._emit(event_type, payload)

    def reconcile_partition(self, user_id: str, symbol: str) -> PartitionResult:
        """Process one (user, symbol). Orders and open trade are re-read under the lock.

        Lifecycle events are published only after the partition commits; a
        rolled-back pass publishes none of them.
        """
        with self._locks.hold(user_id, symbol):
            with self._store.partition(user_id, symbol) as session:
                orders = session.fetch_unconsumed_orders(user_id, symbol)
                open_trade = session.fetch_open_trade(user_id, symbol)
                result = PositionTracker(session, self._rules).process(user_id, symbol, orders, open_trade)
            for event_type, payload in result.events:
                self._emit(event_type, payload)
        return result

    def run(self, user_id: str) -> RunResult:
        """Reconcile *user_id*. Partition failures are collected, not raised."""
        pending = self._store.fetch_unconsumed_orders(user_id)
        symbols = sorted({o.symbol for o in pending})
        self._emit_kw("run_start", user_id=user_id, orders=len(pending), symbols=symbols)
        logger.info("Reconciling user %s: %d unconsumed orders across %d symbols", user_id, len(pending), len(symbols))

        result = RunResult(user_id=user_id)
        if self._max_workers == 1 or len(symbols) <= 1:
            outcomes = [self._attempt(user_id, s) for s in symbols]
        else:
            with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="recon") as pool:
                futures = [pool.submit(self._attempt, user_id, s) for s in symbols]
                outcomes = [f.result() for f in futures]

        for symbol, outcome in zip(symbols, outcomes):
            if isinstance(outcome, PartitionResult):
                result.partitions.append(outcome)
            else:
                result.failures[symbol] = outcome

        closed = sum(len(p.closed) for p in result.partitions)
        opened = sum(len(p.open) for p in result.partitions)
        logger.info(
            "User %s reconciled: %d closed, %d open, %d skipped, %d failed partitions",
            user_id, closed, opened, len(result.skipped), len(result.failures),
        )
        self._emit_kw(
            "run_complete",
            user_id=user_id,
            closed=closed,
            open=opened,
            skipped=len(result.skipped),
            failed=sorted(result.failures),
        )
        return result

    def _attempt(self, user_id: str, symbol: str) -> PartitionResult | str:
        """Process one partition; a persistence failure is returned as its message."""
        try:
            return self.reconcile_partition(user_id, symbol)
        except TradeSinkError as exc:
            logger.error("Partition %s/%s rolled back: %s", user_id, symbol, exc)
            self._emit_kw("partition_failed", user_id=user_id, symbol=symbol, error=str(exc))
            return str(exc)

    def reconcile(self, user_id: str) -> list[Trade]:
        """Reconcile *user_id* and return the trades created or changed.

        Raises ReconciliationError when any partition failed to persist; the
        error carries the trades of the partitions that committed.
        """
        result = self.run(user_id)
        if not result.ok:
            raise ReconciliationError(user_id, result.failures, result.trades)
        return result.trades


def reconcile(
    user_id: str,
    store: PartitionStore,
    rules: ReconRules | None = None,
    *,
    max_workers: int = 1,
    on_event: EventCallback | None = None,
) -> list[Trade]:
    """Single-call entry point: reconcile one user against *store*."""
    return Reconciler(store, rules, max_workers=max_workers, on_event=on_event).reconcile(user_id)
