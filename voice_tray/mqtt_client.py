#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
MQTT ingress for Voice Tray

ConnectionManager owns one broker connection at a time:

    disconnected -> connecting -> connected
         ^              |             |
         +--- backoff --+-------------+   (handshake failure / drop)

A configuration change tears the current connection (or attempt) down and
reconnects immediately with the new settings. Every attempt builds a fresh
client from an explicit SessionPolicy: clean session, retained speak
messages ignored. A persistent session plus a retained speak message used
to replay the same utterance on every reconnect, forever.
"""

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from functools import partial
from typing import Callable, Optional

import paho.mqtt.client as mqtt

from . import __version__
from .config import MqttConfig
from .errors import ValidationError, TransientConnectionError
from .models import SOURCE_SUBSCRIPTION, utcnow

logger = logging.getLogger(__name__)

DISCONNECTED = "disconnected"
CONNECTING = "connecting"
CONNECTED = "connected"

AGENT_TOPIC = "voice/agent/{agent}/status"


@dataclass(frozen=True)
class SessionPolicy:
    """Passed to every connect attempt."""
    clean_session: bool = True
    accept_retained: bool = False


NON_PERSISTENT = SessionPolicy()


class Backoff:
    """Capped exponential retry delay: initial, initial*factor, ... up to maximum."""

    def __init__(self, initial: float = 1.0, maximum: float = 30.0, factor: float = 2.0):
        if initial <= 0 or maximum < initial or factor < 1:
            raise ValueError("backoff needs 0 < initial <= maximum and factor >= 1")
        self.initial = initial
        self.maximum = maximum
        self.factor = factor
        self._next = initial

    def next(self) -> float:
        delay = self._next
        self._next = min(self.maximum, self._next * self.factor)
        return delay

    def reset(self):
        self._next = self.initial


def paho_client_factory(client_id: str, policy: SessionPolicy):
    return mqtt.Client(
        mqtt.CallbackAPIVersion.VERSION2,
        client_id=client_id,
        clean_session=policy.clean_session,
        protocol=mqtt.MQTTv311,
    )


def _is_failure(reason_code) -> bool:
    flag = getattr(reason_code, "is_failure", None)
    if flag is not None:
        return bool(flag)
    return reason_code != 0


def _agent_topic(agent: str) -> str:
    safe = "".join("_" if c in "/+#" else c for c in agent)
    return AGENT_TOPIC.format(agent=safe)


class ConnectionManager:
    def __init__(self, tray, config: MqttConfig, client_id: str = "voice-tray", keepalive: int = 30,
                 connect_timeout: float = 10.0, backoff: Optional[Backoff] = None,
                 policy: SessionPolicy = NON_PERSISTENT, client_factory: Optional[Callable] = None,
                 on_state: Optional[Callable[[str], None]] = None, stable_after: float = 10.0):
        self.tray = tray
        self.client_id = client_id
        self.keepalive = keepalive
        self.connect_timeout = connect_timeout
        self.backoff = backoff or Backoff()
        self.policy = policy
        self.client_factory = client_factory or paho_client_factory
        self.on_state = on_state
        # a link must stay up this long before the backoff starts over
        self.stable_after = stable_after

        self._cond = threading.Condition()
        self._config = config
        self._pending_config: Optional[MqttConfig] = None
        self._state = DISCONNECTED
        self._attempt = 0
        self._connack: Optional[bool] = None
        self._connack_reason = ""
        self._link_lost = False
        self._stopped = False
        self._thread: Optional[threading.Thread] = None
        self.history = deque([DISCONNECTED], maxlen=100)

    # ===== observers =====
    @property
    def state(self) -> str:
        with self._cond:
            return self._state

    @property
    def config(self) -> MqttConfig:
        with self._cond:
            return self._pending_config or self._config

    @property
    def lock(self):
        return self._cond

    def snapshot(self):
        with self._cond:
            return {"mqtt_status": self._state, "mqtt_broker": (self._pending_config or self._config).address}

    def wait_for(self, state: str, timeout: float = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._state == state, timeout)

    # ===== control =====
    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        with self._cond:
            self._stopped = False
        self._thread = threading.Thread(target=self._run, name="voice-tray-mqtt", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        with self._cond:
            self._stopped = True
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def reconfigure(self, config: MqttConfig):
        """Swap in ``config`` as a whole and reconnect right away."""
        with self._cond:
            self._pending_config = config
            self._cond.notify_all()
        logger.info(f"[MQTT] Reconfigure requested -> {config.address} topic={config.topic_speak}")

    # ===== supervisor =====
    def _interrupted(self) -> bool:
        return self._stopped or self._pending_config is not None

    def _set_state(self, state: str):
        with self._cond:
            if state == self._state:
                return
            self._state = state
            self.history.append(state)
            self._cond.notify_all()
        logger.info(f"[MQTT] Status: {state}")
        if self.on_state is not None:
            try:
                self.on_state(state)
            except Exception:
                logger.exception("[MQTT] state listener failed")

    def _run(self):
        while True:
            with self._cond:
                if self._stopped:
                    break
                if self._pending_config is not None:
                    self._config = self._pending_config
                    self._pending_config = None
                    self.backoff.reset()
                config = self._config
                self._attempt += 1
                attempt = self._attempt
                self._connack = None
                self._connack_reason = ""
                self._link_lost = False

            try:
                self._session(attempt, config)
            except TransientConnectionError as e:
                logger.warning(f"[MQTT] {e}")
            self._set_state(DISCONNECTED)

            with self._cond:
                if self._stopped:
                    break
                if self._pending_config is not None:
                    continue
            delay = self.backoff.next()
            logger.info(f"[MQTT] Retrying in {delay:.1f}s")
            with self._cond:
                self._cond.wait_for(self._interrupted, delay)
        logger.info("[MQTT] Connection manager stopped")

    def _session(self, attempt: int, config: MqttConfig):
        """One connection, from handshake until it is lost or superseded."""
        self._set_state(CONNECTING)
        logger.info(f"[MQTT] Connecting to {config.address} (clean_session={self.policy.clean_session})")

        client = self.client_factory(self.client_id, self.policy)
        client.on_connect = partial(self._on_connect, attempt, config)
        client.on_disconnect = partial(self._on_disconnect, attempt)
        client.on_message = partial(self._on_message, attempt, config)
        client.connect_timeout = self.connect_timeout
        if config.credentials:
            logger.info(f"[MQTT] Using authentication for user '{config.username}'")
            client.username_pw_set(*config.credentials)
        client.will_set(config.topic_status, json.dumps({"status": "offline"}), qos=1, retain=True)

        try:
            client.connect(config.broker, config.port, keepalive=self.keepalive)
        except (OSError, ValueError) as e:
            raise TransientConnectionError(f"cannot reach {config.address}: {e}") from e

        client.loop_start()
        try:
            with self._cond:
                got_answer = self._cond.wait_for(
                    lambda: self._connack is not None or self._link_lost or self._interrupted(),
                    self.connect_timeout,
                )
                connack, reason = self._connack, self._connack_reason
            if not connack:
                if self._interrupted():
                    logger.info("[MQTT] Attempt superseded before handshake completed")
                    return
                if not got_answer:
                    raise TransientConnectionError(f"no CONNACK from {config.address} within {self.connect_timeout:.1f}s")
                raise TransientConnectionError(f"broker {config.address} refused connection: {reason or 'link lost'}")

            connected_at = time.monotonic()
            with self._cond:
                self._cond.wait_for(lambda: self._link_lost or self._interrupted())
                lost = self._link_lost and not self._interrupted()
            if time.monotonic() - connected_at >= self.stable_after:
                self.backoff.reset()
            if lost:
                raise TransientConnectionError(f"connection to {config.address} lost")
        finally:
            self._teardown(client)

    def _teardown(self, client):
        try:
            client.disconnect()
        except Exception as e:
            logger.debug(f"[MQTT] disconnect: {e}")
        client.loop_stop()

    # ===== paho callbacks (network thread) =====
    def _current(self, attempt: int) -> bool:
        with self._cond:
            return attempt == self._attempt and not self._link_lost

    def _on_connect(self, attempt, config, client, userdata, flags, reason_code, properties=None):
        if not self._current(attempt):
            return
        if _is_failure(reason_code):
            with self._cond:
                self._connack = False
                self._connack_reason = str(reason_code)
                self._cond.notify_all()
            return

        # subscribe on every connect, the clean session forgot the old one
        client.subscribe(config.topic_speak, qos=1)
        client.publish(config.topic_status, json.dumps({
            "status": "online",
            "version": __version__,
            "timestamp": utcnow().isoformat(),
        }), qos=1, retain=True)
        logger.info(f"[MQTT] Connected, subscribed to {config.topic_speak}")

        # state first: the supervisor only moves on once it sees the CONNACK
        self._set_state(CONNECTED)
        with self._cond:
            self._connack = True
            self._cond.notify_all()

    def _on_disconnect(self, attempt, client, userdata, flags, reason_code=None, properties=None):
        with self._cond:
            if attempt != self._attempt:
                return
            self._link_lost = True
            self._cond.notify_all()
        logger.info(f"[MQTT] Disconnected ({reason_code})")

    def _on_message(self, attempt, config, client, userdata, msg):
        if not self._current(attempt):
            return
        if not mqtt.topic_matches_sub(config.topic_speak, msg.topic):
            return
        if msg.retain and not self.policy.accept_retained:
            logger.info(f"[MQTT] Ignoring retained message on {msg.topic}")
            return

        try:
            payload = json.loads(msg.payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            logger.warning(f"[MQTT] Dropped malformed payload on {msg.topic}: {e}")
            return
        try:
            request = self.tray.submit(payload, SOURCE_SUBSCRIPTION)
        except ValidationError as e:
            logger.warning(f"[MQTT] Dropped invalid speak request on {msg.topic}: {e}")
            return

        if request.agent:
            client.publish(_agent_topic(request.agent), json.dumps({
                "last_message": request.text,
                "timestamp": request.received_at.isoformat(),
                "id": request.id,
            }), qos=1, retain=True)
