import json
from types import SimpleNamespace

import pytest
import requests

from voice_tray import notify
from voice_tray.config import MqttConfig, save_mqtt_config


class FakeResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body
        self.text = json.dumps(body)

    def json(self):
        return self._body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code}")


def test_build_payload_skips_unset_fields():
    assert notify.build_payload("hi") == {"text": "hi"}
    assert notify.build_payload("hi", "Daniel", "Main", 190) == {
        "text": "hi", "voice": "Daniel", "agent": "Main", "rate": 190,
    }


def test_http_send(monkeypatch, capsys):
    posted = []

    def fake_post(url, json=None, timeout=None):
        posted.append((url, json))
        return FakeResponse(200, {"id": 4, "status": "queued"})

    monkeypatch.setattr(notify.requests, "post", fake_post)
    assert notify.main(["Build finished", "--agent", "CI", "--url", "http://127.0.0.1:9999/"]) == 0
    assert posted == [("http://127.0.0.1:9999/speak", {"text": "Build finished", "agent": "CI"})]
    assert "queued #4" in capsys.readouterr().out


def test_http_rejection_exit_code(monkeypatch):
    monkeypatch.setattr(notify.requests, "post",
                        lambda url, json=None, timeout=None: FakeResponse(400, {"detail": "bad rate"}))
    assert notify.main(["hi", "--rate", "0"]) == 2


def test_unreachable_exit_code(monkeypatch):
    def refuse(url, json=None, timeout=None):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(notify.requests, "post", refuse)
    assert notify.main(["hi"]) == 1


def test_mqtt_send_uses_saved_config(monkeypatch, tmp_path):
    path = tmp_path / "config.json"
    save_mqtt_config(path, MqttConfig(broker="b.local", port=1884, topic_speak="alerts/speak",
                                      username="u", password="p"))
    monkeypatch.setenv("VOICE_TRAY_CONFIG", str(path))

    sent = []
    monkeypatch.setattr(notify.mqtt_publish, "single",
                        lambda topic, payload, **kw: sent.append(SimpleNamespace(topic=topic, payload=payload, **kw)))

    assert notify.main(["Deploy done", "--mqtt", "--voice", "Daniel"]) == 0
    msg = sent[0]
    assert msg.topic == "alerts/speak"
    assert json.loads(msg.payload) == {"text": "Deploy done", "voice": "Daniel"}
    assert (msg.hostname, msg.port, msg.qos) == ("b.local", 1884, 1)
    assert msg.auth == {"username": "u", "password": "p"}


def test_blank_message_is_an_error():
    with pytest.raises(SystemExit):
        notify.main(["   "])
