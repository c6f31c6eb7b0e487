"""Configuration module."""

from talkai.config.constants import RT, RealtimeConstants
from talkai.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings", "RealtimeConstants", "RT"]
