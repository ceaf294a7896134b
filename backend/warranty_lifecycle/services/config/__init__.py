"""
Configuration Services

Category/key settings for the lifecycle engine, stored in system_config.
"""

from .system_config import (
    ConfigurationProvider,
    SystemConfigService,
    StaticConfigProvider,
    CONFIG_DEFAULTS,
    default_value,
)

__all__ = [
    'ConfigurationProvider',
    'SystemConfigService',
    'StaticConfigProvider',
    'CONFIG_DEFAULTS',
    'default_value',
]
