import json
import os
import threading
import time

import pytest

from voice_tray.config import (
    MqttConfig, ConfigStore, mqtt_config_from_dict, load_mqtt_config, save_mqtt_config,
    load_settings, get_config_with_fallback, PASSWORD_MASK,
)
from voice_tray.errors import ConfigError


def test_partial_dict_keeps_base_values():
    base = MqttConfig(broker="a.local", port=1884, topic_speak="x/speak")
    cfg = mqtt_config_from_dict({"port": 1999}, base=base)
    assert cfg == MqttConfig(broker="a.local", port=1999, topic_speak="x/speak")


def test_empty_credentials_become_none():
    cfg = mqtt_config_from_dict({"username": "", "password": ""})
    assert cfg.username is None and cfg.password is None
    assert cfg.credentials is None


def test_speak_topic_may_use_wildcards():
    assert mqtt_config_from_dict({"topic_speak": "voice/+/speak"}).topic_speak == "voice/+/speak"


@pytest.mark.parametrize("data", [
    {"port": 0},
    {"port": True},
    {"port": 1.5},
    {"broker": "   "},
    {"topic_speak": ""},
    {"topic_status": "voice/+"},
    {"username": 5},
    {"password": "x"},
    {"retain": True},
    "broker=x",
])
def test_invalid_config_is_rejected(data):
    with pytest.raises(ConfigError):
        mqtt_config_from_dict(data)


def test_save_then_load(tmp_path):
    path = tmp_path / "nested" / "config.json"
    cfg = MqttConfig(broker="10.0.0.2", username="u", password="p")
    save_mqtt_config(path, cfg)
    assert load_mqtt_config(path) == cfg
    assert not [p for p in path.parent.iterdir() if p.name.startswith(".config-")]


def test_missing_or_corrupt_file_gives_defaults(tmp_path):
    assert load_mqtt_config(tmp_path / "none.json") == MqttConfig()
    bad = tmp_path / "bad.json"
    bad.write_text("{nope")
    assert load_mqtt_config(bad) == MqttConfig()
    bad.write_text(json.dumps({"port": -1}))
    assert load_mqtt_config(bad) == MqttConfig()


def test_failed_write_leaves_previous_file(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    save_mqtt_config(path, MqttConfig(broker="first"))
    before = path.read_text()

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", broken_replace)
    with pytest.raises(ConfigError):
        save_mqtt_config(path, MqttConfig(broker="second"))
    assert path.read_text() == before
    assert [p.name for p in tmp_path.iterdir()] == ["config.json"]


def test_store_update_is_all_or_nothing(tmp_path):
    seen = []
    store = ConfigStore(tmp_path / "config.json", on_change=seen.append)
    assert store.active == MqttConfig()

    with pytest.raises(ConfigError):
        store.update({"broker": "new.local", "port": 0})
    assert store.active == MqttConfig()
    assert seen == []
    assert not (tmp_path / "config.json").exists()

    cfg = store.update({"broker": "new.local"})
    assert store.active == cfg
    assert seen == [cfg]
    # survives a restart
    assert ConfigStore(tmp_path / "config.json").active.broker == "new.local"


def test_masked_password_is_not_saved(tmp_path):
    store = ConfigStore(tmp_path / "config.json")
    store.update({"username": "u", "password": "real"})
    store.update({"password": PASSWORD_MASK, "broker": "b"})
    assert store.active.password == "real"
    assert store.active.to_dict(mask_password=True)["password"] == PASSWORD_MASK


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("VOICE_TRAY_PORT", "40000")
    monkeypatch.setenv("DEFAULT_RATE", "not-a-number")
    monkeypatch.setenv("MQTT_ENABLED", "false")
    monkeypatch.setenv("TTS_ENGINE", " LOG ")
    settings = load_settings()
    assert settings.http_port == 40000
    assert settings.default_rate == 220
    assert settings.mqtt_enabled is False
    assert settings.tts_engine == "log"


def test_required_value_missing(monkeypatch):
    monkeypatch.delenv("SOME_MISSING_KEY", raising=False)
    assert get_config_with_fallback("SOME_MISSING_KEY", "", required=True) is None
    assert get_config_with_fallback("SOME_MISSING_KEY", "x") == "x"


def test_overlapping_updates_reach_listener_in_save_order(tmp_path):
    applied = []

    def slow_listener(config):
        if config.broker == "a.local":
            time.sleep(0.2)
        applied.append(config.broker)

    store = ConfigStore(tmp_path / "config.json", on_change=slow_listener)
    first = threading.Thread(target=store.update, args=({"broker": "a.local"},))
    first.start()
    time.sleep(0.05)
    store.update({"broker": "b.local"})
    first.join(2)

    assert store.active.broker == "b.local"
    assert applied == ["a.local", "b.local"]
    assert ConfigStore(tmp_path / "config.json").active.broker == applied[-1]
