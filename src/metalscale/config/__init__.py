"""Configuration module for metalscale.

This module contains configuration classes for the controller and inventory.
"""

from metalscale.config.config import (
    ConfigError,
    ControllerConfig,
    MachineConfig,
    PowerConfig,
    ReconcileConfig,
    ServerConfig,
    TLSConfig,
    load_config,
    load_machines,
)


__all__ = [
    "ConfigError",
    "ControllerConfig",
    "MachineConfig",
    "PowerConfig",
    "ReconcileConfig",
    "ServerConfig",
    "TLSConfig",
    "load_config",
    "load_machines",
]
