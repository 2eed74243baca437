import time
from typing import Dict, Any, Optional

from .mqtt_client import DISCONNECTED, CONNECTED

IDLE = "idle"
SPEAKING = "speaking"
OFFLINE = "disconnected"


def indicator(snapshot: Dict[str, Any]) -> str:
    """Tray icon for a snapshot: disconnected wins over speaking, speaking over idle."""
    if snapshot.get("mqtt_enabled", True) and snapshot.get("mqtt_status") != CONNECTED:
        return OFFLINE
    if snapshot.get("is_speaking"):
        return SPEAKING
    return IDLE


class StatusAggregator:
    """
    Read-only view over the timeline and the MQTT connection.

    Both locks are held while reading so a snapshot never mixes a timeline
    from one instant with a connection state from another. Lock order is
    timeline first, connection second; nothing takes them the other way.
    """

    def __init__(self, tray, connection=None, fallback_broker: Optional[str] = None, server_port: int = None):
        self.tray = tray
        self.connection = connection
        self.fallback_broker = fallback_broker
        self.server_port = server_port

    def snapshot(self) -> Dict[str, Any]:
        timeline = self.tray.timeline
        with timeline.lock:
            counts = timeline.counts()
            if self.connection is not None:
                conn = self.connection.snapshot()
            else:
                conn = {"mqtt_status": DISCONNECTED, "mqtt_broker": self.fallback_broker}

        snap = {
            "total": counts["total"],
            "queued": counts["queued"],
            "is_speaking": counts["is_speaking"],
            "speaking_id": counts["speaking_id"],
            "mqtt_status": conn["mqtt_status"],
            "mqtt_broker": conn["mqtt_broker"],
            "mqtt_enabled": self.connection is not None,
            "server_port": self.server_port,
            "ts": time.time(),
        }
        snap["indicator"] = indicator(snap)
        return snap
