"""Configuration management for atvbridge.

Loads and validates YAML-based configuration with Pydantic models.
Supports environment variable overrides.
"""

from atvbridge.config.settings import Settings, load_settings

__all__ = ["Settings", "load_settings"]
