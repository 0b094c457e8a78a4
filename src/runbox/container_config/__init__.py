"""Container build plans: static tables, two-tier cache, and the resolver."""

from __future__ import annotations

from runbox.container_config._cache import CacheStats, ContainerConfigCache, cache_key
from runbox.container_config._languages import (
    KNOWN_LANGUAGE_CONFIGS,
    detect_packages,
    get_extension,
    get_static_config,
    is_known_language,
)
from runbox.container_config._resolver import (
    ContainerConfigResolver,
    ResolvedConfig,
    fallback_config,
    parse_config_response,
)

__all__ = [
    "KNOWN_LANGUAGE_CONFIGS",
    "CacheStats",
    "ContainerConfigCache",
    "ContainerConfigResolver",
    "ResolvedConfig",
    "cache_key",
    "detect_packages",
    "fallback_config",
    "get_extension",
    "get_static_config",
    "is_known_language",
    "parse_config_response",
]
