"""Reconciliation of internal results against official figures."""

from .comparator import Classification, ComparisonRow, ReconciliationComparator, percentage_difference

__all__ = ["Classification", "ComparisonRow", "ReconciliationComparator", "percentage_difference"]
