"""Engine policy configuration.

The :class:`engine.service.ResultsEngine` facade is imported from its module
directly because it depends on every other package.
"""

from .config import CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH, ConfigurationError, EnginePolicy, load_policy

__all__ = ["CONFIG_ENV_VAR", "DEFAULT_CONFIG_PATH", "ConfigurationError", "EnginePolicy", "load_policy"]
