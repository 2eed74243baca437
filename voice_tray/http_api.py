#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
HTTP request listener for Voice Tray

    POST /speak            queue text, returns {"id", "status": "queued"}
    GET  /timeline         every request with its status
    POST /timeline/clear   drop finished entries
    GET  /status           counts, speaking flag, MQTT state
    POST /test             queue a test utterance
    GET  /config           active MQTT config (password masked)
    PUT  /config           validate, save and apply MQTT config
    GET  /health
"""

import logging
import time
from typing import Any, Dict

from fastapi import FastAPI, Body, HTTPException
from fastapi.responses import HTMLResponse

from . import __version__
from .errors import ValidationError, ConfigError
from .models import SOURCE_REQUEST

logger = logging.getLogger(__name__)

_INDEX_HTML = """<!DOCTYPE html>
<html><head><title>Voice Tray API</title>
<style>body{{font-family:system-ui;max-width:600px;margin:40px auto;padding:20px;background:#1a1a2e;color:#eee}}
h1{{color:#0f9}}code{{background:#333;padding:2px 6px;border-radius:4px}}
pre{{background:#222;padding:15px;border-radius:8px;overflow-x:auto}}</style></head>
<body><h1>Voice Tray API</h1>
<p>Endpoints:</p>
<ul>
<li><code>POST /speak</code> - Queue text for speech</li>
<li><code>GET /timeline</code> - Get speech queue</li>
<li><code>GET /status</code> - Get server status</li>
</ul>
<h3>Example:</h3>
<pre>curl -X POST http://127.0.0.1:{port}/speak \\
  -H "Content-Type: application/json" \\
  -d '{{"text":"Hello!","voice":"Samantha"}}'</pre>
</body></html>"""


def create_app(tray, status, config_store=None) -> FastAPI:
    app = FastAPI(title="Voice Tray", version=__version__)

    @app.get("/", response_class=HTMLResponse)
    def index():
        return _INDEX_HTML.format(port=status.server_port or 37779)

    @app.get("/health")
    def health():
        return {"ok": True, "ts": time.time(), "version": __version__}

    @app.post("/speak")
    def speak(payload: Any = Body(...)):
        try:
            request = tray.submit(payload, SOURCE_REQUEST)
        except ValidationError as e:
            logger.info(f"[HTTP] Rejected /speak: {e}")
            raise HTTPException(status_code=400, detail=str(e))
        return {"id": request.id, "status": "queued"}

    @app.get("/timeline")
    def timeline():
        return tray.entries()

    @app.post("/timeline/clear")
    def clear_timeline():
        return {"removed": tray.clear()}

    @app.get("/status")
    def get_status():
        snap = status.snapshot()
        return {
            "total": snap["total"],
            "queued": snap["queued"],
            "is_speaking": snap["is_speaking"],
            "mqtt_status": snap["mqtt_status"],
            "mqtt_broker": snap["mqtt_broker"],
            "server_port": snap["server_port"],
            "indicator": snap["indicator"],
        }

    @app.post("/test")
    def test_voice():
        request = tray.submit_test()
        return {"id": request.id, "status": "queued"}

    @app.get("/config")
    def get_config():
        if config_store is None:
            raise HTTPException(status_code=404, detail="configuration store not available")
        return config_store.active.to_dict(mask_password=True)

    @app.put("/config")
    def put_config(changes: Dict[str, Any] = Body(...)):
        if config_store is None:
            raise HTTPException(status_code=404, detail="configuration store not available")
        try:
            config = config_store.update(changes)
        except ConfigError as e:
            logger.warning(f"[HTTP] Rejected config: {e}")
            raise HTTPException(status_code=400, detail=str(e))
        return config.to_dict(mask_password=True)

    return app
