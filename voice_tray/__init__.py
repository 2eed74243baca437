"""Voice Tray - local notification relay that speaks queued messages one at a time."""

__version__ = "0.2.0"
