"""Policy configuration for the results engine.

The duplicate-suspicion tolerance and the reconciliation thresholds are
product decisions rather than fixed constants, so they live in
:class:`EnginePolicy` and can be overridden from a YAML file.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, FrozenSet, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from results import Role

__all__ = ["CONFIG_ENV_VAR", "DEFAULT_CONFIG_PATH", "ConfigurationError", "EnginePolicy", "load_policy"]

LOGGER = logging.getLogger(__name__)

CONFIG_ENV_VAR = "RESULTS_ENGINE_CONFIG"
DEFAULT_CONFIG_PATH = Path("config") / "engine.yaml"


class ConfigurationError(ValueError):
    """Raised when a policy file cannot be loaded or fails validation."""


class EnginePolicy(BaseModel):
    """Tunable policy values shared by the engine components."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    duplicate_total_tolerance: float = Field(default=0.02, ge=0.0, le=1.0)
    conflicting_report_window_minutes: float = Field(default=60.0, ge=0.0)
    match_tolerance: float = Field(default=0.02, ge=0.0, le=1.0)
    minor_discrepancy_tolerance: float = Field(default=0.10, ge=0.0, le=1.0)
    reviewer_roles: FrozenSet[Role] = frozenset({Role.SUPERVISOR, Role.ADMIN})
    notification_page_size: int = Field(default=50, ge=1)
    recent_activity_limit: int = Field(default=10, ge=1)

    @model_validator(mode="after")
    def _check_thresholds(self) -> "EnginePolicy":
        if self.match_tolerance > self.minor_discrepancy_tolerance:
            raise ValueError("match_tolerance must not exceed minor_discrepancy_tolerance")
        return self

    def can_review(self, role: Role | str) -> bool:
        return Role(role) in self.reviewer_roles


def load_policy(path: Optional[Path | str] = None) -> EnginePolicy:
    """Load the engine policy from YAML, falling back to defaults.

    The file may either contain the policy keys at the top level or nest them
    under an ``engine`` key.
    """

    if path is None:
        path = os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH
    config_path = Path(path)
    if not config_path.exists():
        LOGGER.debug("No policy file at %s, using defaults", config_path)
        return EnginePolicy()

    try:
        payload: Any = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"{config_path}: invalid YAML ({exc})") from exc

    if payload is None:
        return EnginePolicy()
    if not isinstance(payload, dict):
        raise ConfigurationError(f"{config_path}: expected a mapping at the top level.")
    if isinstance(payload.get("engine"), dict):
        payload = payload["engine"]

    try:
        policy = EnginePolicy(**payload)
    except ValidationError as exc:
        raise ConfigurationError(f"{config_path}: {exc}") from exc
    LOGGER.info("Loaded engine policy from %s", config_path)
    return policy
