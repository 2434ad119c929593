"""Configuration module for storymem."""

from storymem.config.loader import get_config_path, load_config, save_config
from storymem.config.schema import Config

__all__ = ["Config", "load_config", "save_config", "get_config_path"]
