"""
Reconciliation runs: order source -> position tracker -> trade sink, per user.
"""

from reconcile.runner import PartitionLocks, Reconciler, RunResult, reconcile

__all__ = ["PartitionLocks", "Reconciler", "RunResult", "reconcile"]
