"""Configuration module for pcibisect.

This module contains configuration classes and YAML loading for passthrough bisection.
"""

from pcibisect.config.config import (
    BuildConfig,
    DeviceConfig,
    HarnessConfig,
    OracleConfig,
    PortForward,
    VMConfig,
)
from pcibisect.config.loader import create_harness_config, default_config_path, load_config


__all__ = [
    "BuildConfig",
    "DeviceConfig",
    "HarnessConfig",
    "OracleConfig",
    "PortForward",
    "VMConfig",
    "create_harness_config",
    "default_config_path",
    "load_config",
]
