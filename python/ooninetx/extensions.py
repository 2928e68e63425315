"""
Declares the data format extensions used by a measurement.

Corresponds to the ExtSpec type in netx/archival.
"""

from __future__ import annotations

from .model import Measurement


class ExtSpec:
    """Describes a data format extension."""

    def __init__(self, name: str, version: int):
        self.name = name
        self.version = version

    def add_to(self, measurement: Measurement):
        """Adds this extension to the measurement. Adding an extension
        with the same name again overwrites the previous version."""
        if measurement.extensions is None:
            measurement.extensions = {}
        measurement.extensions[self.name] = self.version

    def __repr__(self) -> str:
        return f"ExtSpec({self.name!r}, {self.version})"


# df-002-dnst.md
EXT_DNS = ExtSpec("dnst", 0)

# df-008-netevents.md
EXT_NETEVENTS = ExtSpec("netevents", 0)

# df-001-httpt.md
EXT_HTTP = ExtSpec("httpt", 0)

# df-005-tcpconnect.md
EXT_TCP_CONNECT = ExtSpec("tcpconnect", 0)

# df-006-tlshandshake.md
EXT_TLS_HANDSHAKE = ExtSpec("tlshandshake", 0)

ALL_EXTENSIONS = (
    EXT_DNS,
    EXT_NETEVENTS,
    EXT_HTTP,
    EXT_TCP_CONNECT,
    EXT_TLS_HANDSHAKE,
)


def register(measurement: Measurement, extension: ExtSpec):
    """Same as extension.add_to(measurement)."""
    extension.add_to(measurement)
