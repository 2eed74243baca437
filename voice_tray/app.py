#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Voice Tray - local notification relay

Accepts short messages over HTTP (POST /speak) and MQTT (voice/speak) and
speaks them one at a time.

Configuration (.env):
VOICE_TRAY_HOST=127.0.0.1
VOICE_TRAY_PORT=37779
TTS_ENGINE=auto            # auto, say, espeak, sapi, piper, log
DEFAULT_VOICE=Samantha
DEFAULT_RATE=220
MQTT_ENABLED=1             # broker settings live in ~/.voice-tray/config.json
STATE_PUB_ADDR=tcp://127.0.0.1:37780
"""

import logging
import sys
import traceback

import uvicorn

from . import __version__
from .bus import StateBus
from .config import load_settings, ConfigStore
from .errors import ConfigError
from .http_api import create_app
from .mqtt_client import ConnectionManager, Backoff
from .service import VoiceTray
from .speech import create_engine
from .status import StatusAggregator

logger = logging.getLogger("voice_tray")


def build(settings):
    """Wire every component; nothing is started yet."""
    engine = create_engine(settings.tts_engine, settings.piper_voices_dir, settings.default_rate)
    tray = VoiceTray(engine, settings.default_voice, settings.default_rate, settings.timeline_limit)

    store = ConfigStore(settings.config_path)
    manager = None
    if settings.mqtt_enabled:
        manager = ConnectionManager(
            tray,
            store.active,
            client_id=settings.mqtt_client_id,
            keepalive=settings.mqtt_keepalive,
            connect_timeout=settings.mqtt_connect_timeout,
            backoff=Backoff(settings.backoff_initial, settings.backoff_max, settings.backoff_factor),
            stable_after=settings.mqtt_stable_after,
        )
        store.on_change = manager.reconfigure

    status = StatusAggregator(tray, manager, fallback_broker=store.active.address, server_port=settings.http_port)
    if manager is None:
        store.on_change = lambda cfg: setattr(status, "fallback_broker", cfg.address)

    bus = None
    if settings.state_pub_addr:
        bus = StateBus(settings.state_pub_addr, status)
        tray.add_listener(bus.publish_state)
        if manager is not None:
            manager.on_state = bus.publish_state

    app = create_app(tray, status, store)
    return tray, manager, bus, app


def main():
    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("=" * 60)
    logger.info(f"Voice Tray v{__version__} starting...")
    logger.info("=" * 60)

    try:
        tray, manager, bus, app = build(settings)
    except ConfigError as e:
        logger.error(f"[CONFIG] {e}")
        return 1
    except Exception as e:
        logger.error(f"Fatal error during initialization: {e}")
        logger.error(f"Stack trace: {traceback.format_exc()}")
        return 1

    tray.start()
    if manager is not None:
        manager.start()
    else:
        logger.info("[MQTT] Disabled (MQTT_ENABLED=0)")

    logger.info(f"[HTTP] Listening on http://{settings.http_host}:{settings.http_port}")
    try:
        uvicorn.run(app, host=settings.http_host, port=settings.http_port, log_level="warning")
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        if manager is not None:
            manager.stop()
        tray.stop()
        if bus is not None:
            bus.close()
    logger.info("Voice Tray stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
