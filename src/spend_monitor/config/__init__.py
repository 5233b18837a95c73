"""Configuration loading."""

from .settings import MonitorConfig, load_config

__all__ = ["MonitorConfig", "load_config"]
