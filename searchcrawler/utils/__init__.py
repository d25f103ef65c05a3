"""
Utility modules for the web crawler system.
"""

from .config import Config, ConfigManager, ConfigError, load_config

__all__ = ['Config', 'ConfigManager', 'ConfigError', 'load_config']
