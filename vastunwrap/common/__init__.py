"""
Common utilities and shared modules.
"""

from vastunwrap.common.cache import CacheKeys, ResolutionCache
from vastunwrap.common.config import Settings, get_settings
from vastunwrap.common.exceptions import UnwrapError
from vastunwrap.common.logger import get_logger, log_context, logger
from vastunwrap.common.vast import AdDocument, AdKind, TrackingSurface

__all__ = [
    "Settings",
    "get_settings",
    "logger",
    "get_logger",
    "log_context",
    "ResolutionCache",
    "CacheKeys",
    "UnwrapError",
    "AdDocument",
    "AdKind",
    "TrackingSurface",
]
