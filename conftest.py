import threading
import time
from types import SimpleNamespace

import pytest
from paho.mqtt.client import topic_matches_sub

from voice_tray.errors import PlaybackError
from voice_tray.models import SPEAKING
from voice_tray.service import VoiceTray


def wait_until(predicate, timeout=2.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeEngine:
    """Records utterances and how many ran at the same time."""

    name = "fake"

    def __init__(self, delay=0.0, fail_on=(), timeline=None):
        self.delay = delay
        self.fail_on = set(fail_on)
        self.timeline = timeline
        self.calls = []
        self.active = 0
        self.max_active = 0
        self.max_speaking_entries = 0
        self._lock = threading.Lock()

    def speak(self, text, voice, rate):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.timeline is not None:
                speaking = sum(1 for e in self.timeline.entries() if e["status"] == SPEAKING)
                self.max_speaking_entries = max(self.max_speaking_entries, speaking)
            if self.delay:
                time.sleep(self.delay)
            self.calls.append((text, voice, rate))
            if text in self.fail_on:
                raise PlaybackError(f"cannot say {text!r}")
        finally:
            with self._lock:
                self.active -= 1

    @property
    def texts(self):
        return [c[0] for c in self.calls]


class FakeBroker:
    """Just enough of an MQTT broker: retained messages, subscriptions, refusals."""

    def __init__(self):
        self.lock = threading.Lock()
        self.clients = []
        self.retained = {}
        self.published = []
        self.unreachable = False
        self.refuse = False
        self.silent = False

    def factory(self, client_id, policy):
        client = FakeClient(self, client_id, policy)
        with self.lock:
            self.clients.append(client)
        return client

    @property
    def current(self):
        with self.lock:
            return self.clients[-1]

    def publish(self, topic, payload, retain=False):
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        with self.lock:
            self.published.append((topic, payload, retain))
            if retain:
                self.retained[topic] = payload
            targets = [c for c in self.clients
                       if c.connected and any(topic_matches_sub(s, topic) for s in c.subscriptions)]
        for client in targets:
            client.deliver(topic, payload, retain=False)


class FakeClient:
    def __init__(self, broker, client_id, policy):
        self.broker = broker
        self.client_id = client_id
        self.clean_session = policy.clean_session
        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None
        self.connect_timeout = None
        self.credentials = None
        self.will = None
        self.host = None
        self.port = None
        self.subscriptions = []
        self.connected = False
        self.loop_running = False

    def username_pw_set(self, username, password=None):
        self.credentials = (username, password)

    def will_set(self, topic, payload=None, qos=0, retain=False):
        self.will = (topic, payload, retain)

    def connect(self, host, port=1883, keepalive=60):
        if self.broker.unreachable:
            raise ConnectionRefusedError(111, "Connection refused")
        self.host, self.port = host, port

    def loop_start(self):
        self.loop_running = True
        if self.broker.silent:
            return
        rc = 5 if self.broker.refuse else 0
        self.connected = rc == 0
        threading.Thread(target=self.on_connect, args=(self, None, {}, rc, None), daemon=True).start()

    def loop_stop(self):
        self.loop_running = False

    def subscribe(self, topic, qos=0):
        self.subscriptions.append(topic)
        with self.broker.lock:
            retained = list(self.broker.retained.items())
        for t, payload in retained:
            if topic_matches_sub(topic, t):
                self.deliver(t, payload, retain=True)

    def publish(self, topic, payload=None, qos=0, retain=False):
        self.broker.publish(topic, payload, retain)

    def disconnect(self):
        was_connected = self.connected
        self.connected = False
        if was_connected and self.on_disconnect:
            self.on_disconnect(self, None, {}, 0, None)

    def drop(self):
        """Transport error seen by the network thread."""
        self.connected = False
        self.on_disconnect(self, None, {}, 7, None)

    def deliver(self, topic, payload, retain=False):
        if self.connected and self.on_message:
            self.on_message(self, None, SimpleNamespace(topic=topic, payload=payload, retain=retain, qos=1))


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def tray(engine):
    tray = VoiceTray(engine)
    engine.timeline = tray.timeline
    tray.start()
    yield tray
    tray.stop()


@pytest.fixture
def broker():
    return FakeBroker()
