"""
Tech-transfer scrape orchestration and extraction engine.
"""

from .config import Config, ConfigurationError, get_config, load_config, reload_config
from .types import EngineType, ErrorClassification, InstitutionClass

__version__ = "2.0.0"

__all__ = [
    "Config",
    "ConfigurationError",
    "get_config",
    "load_config",
    "reload_config",
    "EngineType",
    "ErrorClassification",
    "InstitutionClass",
]
