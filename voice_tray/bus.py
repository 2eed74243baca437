import json
import logging
import threading
import time

import zmq

logger = logging.getLogger(__name__)

STATE_TOPIC = b"voice.state"


# ZMQ state feed for tray renderers
class StateBus:
    def __init__(self, pub_addr: str, status, context=None):
        self.status = status
        self.ctx = context or zmq.Context.instance()
        self.pub = self.ctx.socket(zmq.PUB)
        self.pub.setsockopt(zmq.SNDHWM, 100)
        self.pub.setsockopt(zmq.LINGER, 0)
        self.pub.bind(pub_addr)
        # zmq sockets are not thread safe; producers, worker and MQTT thread all publish
        self._lock = threading.Lock()
        self._last = None
        logger.info(f"[OK] State bus PUB {STATE_TOPIC.decode()} @ {pub_addr}")

    def publish_state(self, *_args):
        """Publish the current snapshot if it differs from the last one sent"""
        with self._lock:
            snap = self.status.snapshot()
            key = (snap["total"], snap["queued"], snap["speaking_id"], snap["mqtt_status"], snap["mqtt_broker"])
            if key == self._last:
                return
            self._last = key
            message = {"state": snap["indicator"], "timestamp": time.time(), **snap}
            try:
                self.pub.send_multipart([STATE_TOPIC, json.dumps(message, ensure_ascii=False).encode("utf-8")])
            except zmq.ZMQError as e:
                logger.error(f"[ZMQ] Failed to publish state message: {e}")

    def close(self):
        with self._lock:
            self.pub.close()
