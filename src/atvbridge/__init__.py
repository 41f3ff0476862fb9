"""atvbridge -- HTTP bridge for Android TV remote-control sessions.

This package exposes REST endpoints that drive pairing, connection and
command sending against Android TV devices. The TV-side protocol is
handled by androidtvremote2; this package keeps track of which devices
are pairing or connected and sequences the handshake per device.
"""

__version__ = "0.1.0"
