#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Voice Tray configuration

Two layers:
- process settings come from the environment (.env is loaded with python-dotenv)
- the MQTT connection lives in a JSON file so it can be edited at runtime
  (GET/PUT /config) and survive restarts
"""

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, asdict, replace
from pathlib import Path
from typing import Optional, Dict, Any

from dotenv import load_dotenv

from .errors import ConfigError

logger = logging.getLogger(__name__)

load_dotenv()


def get_config_with_fallback(key, default, required=False, validator=None):
    """Get configuration with fallback and validation"""
    value = os.environ.get(key, default)

    if required and not value:
        logger.error(f"[CONFIG] Required configuration missing: {key}")
        return None

    if validator and not validator(value):
        logger.error(f"[CONFIG] Invalid configuration for {key}: {value}")
        return None

    return value


def _is_int(value) -> bool:
    try:
        int(value)
        return True
    except (TypeError, ValueError):
        return False


def _is_float(value) -> bool:
    try:
        float(value)
        return True
    except (TypeError, ValueError):
        return False


def _int_setting(key: str, default: int) -> int:
    value = get_config_with_fallback(key, str(default), validator=_is_int)
    return int(value) if value is not None else default


def _float_setting(key: str, default: float) -> float:
    value = get_config_with_fallback(key, str(default), validator=_is_float)
    return float(value) if value is not None else default


def _flag_setting(key: str, default: bool) -> bool:
    value = get_config_with_fallback(key, "1" if default else "0")
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


# ===== Process settings =====
@dataclass(frozen=True)
class Settings:
    http_host: str = "127.0.0.1"
    http_port: int = 37779
    config_path: str = str(Path.home() / ".voice-tray" / "config.json")
    default_voice: str = "Samantha"
    default_rate: int = 220
    tts_engine: str = "auto"
    piper_voices_dir: str = "models/piper/voices"
    timeline_limit: int = 100
    mqtt_enabled: bool = True
    mqtt_client_id: str = "voice-tray"
    mqtt_keepalive: int = 30
    mqtt_connect_timeout: float = 10.0
    backoff_initial: float = 1.0
    backoff_max: float = 30.0
    backoff_factor: float = 2.0
    mqtt_stable_after: float = 10.0
    state_pub_addr: str = "tcp://127.0.0.1:37780"
    log_level: str = "INFO"


def load_settings() -> Settings:
    d = Settings()
    return Settings(
        http_host=get_config_with_fallback("VOICE_TRAY_HOST", d.http_host),
        http_port=_int_setting("VOICE_TRAY_PORT", d.http_port),
        config_path=os.path.expanduser(get_config_with_fallback("VOICE_TRAY_CONFIG", d.config_path)),
        default_voice=get_config_with_fallback("DEFAULT_VOICE", d.default_voice),
        default_rate=_int_setting("DEFAULT_RATE", d.default_rate),
        tts_engine=get_config_with_fallback("TTS_ENGINE", d.tts_engine).strip().lower(),
        piper_voices_dir=get_config_with_fallback("PIPER_VOICES_DIR", d.piper_voices_dir),
        timeline_limit=_int_setting("TIMELINE_LIMIT", d.timeline_limit),
        mqtt_enabled=_flag_setting("MQTT_ENABLED", d.mqtt_enabled),
        mqtt_client_id=get_config_with_fallback("MQTT_CLIENT_ID", d.mqtt_client_id),
        mqtt_keepalive=_int_setting("MQTT_KEEPALIVE", d.mqtt_keepalive),
        mqtt_connect_timeout=_float_setting("MQTT_CONNECT_TIMEOUT", d.mqtt_connect_timeout),
        backoff_initial=_float_setting("MQTT_BACKOFF_INITIAL", d.backoff_initial),
        backoff_max=_float_setting("MQTT_BACKOFF_MAX", d.backoff_max),
        backoff_factor=_float_setting("MQTT_BACKOFF_FACTOR", d.backoff_factor),
        mqtt_stable_after=_float_setting("MQTT_STABLE_AFTER", d.mqtt_stable_after),
        state_pub_addr=get_config_with_fallback("STATE_PUB_ADDR", d.state_pub_addr),
        log_level=get_config_with_fallback("LOG_LEVEL", d.log_level).upper(),
    )


# ===== MQTT config file =====
PASSWORD_MASK = "********"

@dataclass(frozen=True)
class MqttConfig:
    broker: str = "127.0.0.1"
    port: int = 1883
    topic_speak: str = "voice/speak"
    topic_status: str = "voice/status"
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def address(self) -> str:
        return f"{self.broker}:{self.port}"

    @property
    def credentials(self):
        if self.username:
            return self.username, self.password or ""
        return None

    def to_dict(self, mask_password: bool = False) -> Dict[str, Any]:
        data = asdict(self)
        if mask_password and data.get("password"):
            data["password"] = PASSWORD_MASK
        return data


_FIELDS = {"broker", "port", "topic_speak", "topic_status", "username", "password"}


def mqtt_config_from_dict(data: Any, base: Optional[MqttConfig] = None) -> MqttConfig:
    """
    Build a validated MqttConfig from a dict.

    Keys missing from ``data`` keep their value from ``base`` (or the
    defaults), so a partial PUT only changes what it names.

    Raises:
        ConfigError: unknown keys, wrong types or out-of-range values
    """
    if not isinstance(data, dict):
        raise ConfigError("configuration must be a JSON object")
    unknown = set(data) - _FIELDS
    if unknown:
        raise ConfigError(f"unknown configuration keys: {', '.join(sorted(unknown))}")

    cfg = replace(base or MqttConfig(), **data)

    if not isinstance(cfg.broker, str) or not cfg.broker.strip():
        raise ConfigError("'broker' must be a non-empty string")
    if isinstance(cfg.port, bool) or not isinstance(cfg.port, int) or not (1 <= cfg.port <= 65535):
        raise ConfigError("'port' must be an integer between 1 and 65535")
    for name in ("topic_speak", "topic_status"):
        topic = getattr(cfg, name)
        if not isinstance(topic, str) or not topic.strip():
            raise ConfigError(f"'{name}' must be a non-empty string")
    if "#" in cfg.topic_status or "+" in cfg.topic_status:
        raise ConfigError("'topic_status' must not contain wildcards")
    for name in ("username", "password"):
        value = getattr(cfg, name)
        if value is not None and not isinstance(value, str):
            raise ConfigError(f"'{name}' must be a string")
    if cfg.password and not cfg.username:
        raise ConfigError("'password' given without 'username'")

    return replace(cfg, broker=cfg.broker.strip(), username=cfg.username or None, password=cfg.password or None)


def load_mqtt_config(path) -> MqttConfig:
    """Load the MQTT config file, falling back to defaults"""
    path = Path(path)
    if not path.exists():
        return MqttConfig()
    try:
        with open(path, "r", encoding="utf-8") as f:
            return mqtt_config_from_dict(json.load(f))
    except (OSError, ValueError, ConfigError) as e:
        logger.error(f"[CONFIG] Failed to load {path}: {e} - using defaults")
        return MqttConfig()


def save_mqtt_config(path, config: MqttConfig) -> None:
    """
    Validate and persist ``config``.

    The file is replaced atomically; on any failure the previous file is
    left untouched.
    """
    config = mqtt_config_from_dict(config.to_dict())
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".config-", suffix=".json", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(config.to_dict(), f, indent=2)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
    except OSError as e:
        raise ConfigError(f"cannot write {path}: {e}") from e
    logger.info(f"[CONFIG] Saved MQTT config to {path} ({config.address})")


class ConfigStore:
    """
    The active MQTT config plus its file.

    ``update`` is all-or-nothing: validation and the write both have to
    succeed before the new config becomes active and listeners hear of it.
    """

    def __init__(self, path, on_change=None):
        self.path = Path(path)
        self.on_change = on_change
        self._lock = threading.RLock()
        self._active = load_mqtt_config(self.path)

    @property
    def active(self) -> MqttConfig:
        with self._lock:
            return self._active

    def update(self, changes: Dict[str, Any]) -> MqttConfig:
        if isinstance(changes, dict) and changes.get("password") == PASSWORD_MASK:
            # masked value echoed back from GET /config
            changes = {k: v for k, v in changes.items() if k != "password"}
        with self._lock:
            config = mqtt_config_from_dict(changes, base=self._active)
            save_mqtt_config(self.path, config)
            self._active = config
            # listeners see changes in the order they were saved
            if self.on_change is not None:
                self.on_change(config)
        return config
