"""Device session registry for atvbridge."""

from atvbridge.registry.registry import DeviceRegistry, SessionFactory

__all__ = ["DeviceRegistry", "SessionFactory"]
