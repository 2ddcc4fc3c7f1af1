"""Web dashboard exposing results, duplicate review and live updates."""

from .analytics import compute_overview
from .app import STATUS_ACTIONS, create_app

__all__ = ["STATUS_ACTIONS", "compute_overview", "create_app"]
