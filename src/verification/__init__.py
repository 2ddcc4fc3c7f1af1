"""Verification lifecycle for results and duplicate groups."""

from .service import VerificationService
from .state_machine import TERMINAL_STATES, TRANSITIONS, Action, next_status, require_reason

__all__ = ["Action", "TERMINAL_STATES", "TRANSITIONS", "VerificationService", "next_status", "require_reason"]
