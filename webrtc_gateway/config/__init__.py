"""
Configuration for the WebRTC Gateway.

Operational settings are loaded from YAML with environment overrides.
"""

from .internal_config import (
    DEFAULT_CONFIG_PATH,
    GatewayConfig,
    IceConfig,
    LoggingConfig,
    MediaConfig,
    ServerConfig,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "GatewayConfig",
    "IceConfig",
    "LoggingConfig",
    "MediaConfig",
    "ServerConfig",
]
