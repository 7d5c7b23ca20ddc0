"""Building blocks for network bandwidth measurement: timestamps, socket helpers and TCP/UDP stream handling."""

__version__ = "0.1.0"
__all__ = ["errors", "net", "ptime", "session", "states", "tcp", "udp", "util"]