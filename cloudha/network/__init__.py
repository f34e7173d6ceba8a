"""Route and NIC reconciliation"""

from .reconcile import NetworkReconciler

__all__ = ["NetworkReconciler"]
