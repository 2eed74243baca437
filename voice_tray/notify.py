#!/usr/bin/env python3
"""
voice-tray-notify - send one message to a running Voice Tray

    voice-tray-notify "Build finished" --agent Main
    voice-tray-notify "Deploy done" --voice Daniel --rate 190 --mqtt

HTTP posts to /speak and returns the queued id; --mqtt publishes to the
speak topic instead (fire and forget, like mosquitto_pub).
"""

import argparse
import json
import os
import sys

import requests
import paho.mqtt.publish as mqtt_publish

from .config import load_mqtt_config, load_settings

HTTP_TIMEOUT = float(os.environ.get("HTTP_TIMEOUT", "2"))


def build_payload(text, voice=None, agent=None, rate=None):
    payload = {"text": text}
    if voice:
        payload["voice"] = voice
    if agent:
        payload["agent"] = agent
    if rate is not None:
        payload["rate"] = rate
    return payload


def send_http(url: str, payload: dict, timeout: float = HTTP_TIMEOUT) -> dict:
    r = requests.post(f"{url.rstrip('/')}/speak", json=payload, timeout=timeout)
    if r.status_code == 400:
        raise ValueError(r.json().get("detail", r.text))
    r.raise_for_status()
    return r.json()


def send_mqtt(config, payload: dict):
    auth = None
    if config.credentials:
        username, password = config.credentials
        auth = {"username": username, "password": password}
    mqtt_publish.single(
        config.topic_speak,
        json.dumps(payload, ensure_ascii=False),
        qos=1,
        hostname=config.broker,
        port=config.port,
        auth=auth,
    )


def main(argv=None):
    settings = load_settings()
    parser = argparse.ArgumentParser(prog="voice-tray-notify", description="Queue a message on Voice Tray")
    parser.add_argument("message")
    parser.add_argument("--voice")
    parser.add_argument("--agent")
    parser.add_argument("--rate", type=int)
    parser.add_argument("--url", default=f"http://{settings.http_host}:{settings.http_port}")
    parser.add_argument("--mqtt", action="store_true", help="publish to the MQTT speak topic instead of HTTP")
    args = parser.parse_args(argv)

    if not args.message.strip():
        parser.error("message must not be empty")
    payload = build_payload(args.message, args.voice, args.agent, args.rate)

    try:
        if args.mqtt:
            config = load_mqtt_config(settings.config_path)
            send_mqtt(config, payload)
            print(f"published to {config.topic_speak} @ {config.address}")
        else:
            result = send_http(args.url, payload)
            print(f"queued #{result['id']}")
    except ValueError as e:
        print(f"rejected: {e}", file=sys.stderr)
        return 2
    except (requests.RequestException, OSError) as e:
        print(f"voice tray unreachable: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
