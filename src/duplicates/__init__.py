"""Duplicate detection and grouping of result submissions."""

from .detector import DuplicateDetector, DuplicateMatch
from .group import DuplicateGroup, GroupState

__all__ = ["DuplicateDetector", "DuplicateGroup", "DuplicateMatch", "GroupState"]
