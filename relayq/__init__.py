"""relayq: persistent job queue for chat notifications and automation triggers."""

__version__ = "0.1.0"
