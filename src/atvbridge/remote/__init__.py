"""Remote session providers for atvbridge.

The abstract RemoteSession is the only protocol surface the registry
sees. The androidtvremote2-backed implementation is imported lazily so
the registry and its tests do not need the library loaded.

Public API:
    RemoteSession -- Abstract base class
    AndroidTVRemoteSession -- Android TV Remote protocol v2 session
"""

from atvbridge.remote.base import CertificateBundle, RemoteSession, RemoteSessionError

__all__ = ["CertificateBundle", "RemoteSession", "RemoteSessionError", "AndroidTVRemoteSession"]


def __getattr__(name: str) -> type:
    """Lazy import for concrete implementations that require external deps."""
    if name == "AndroidTVRemoteSession":
        from atvbridge.remote.androidtv import AndroidTVRemoteSession
        return AndroidTVRemoteSession
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
