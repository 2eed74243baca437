#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
VoiceTray - the one object that owns the queue, the timeline and the
playback worker.

Producers (HTTP handlers, the MQTT network thread) only call ``submit``;
the worker is the only thing that dequeues. Id assignment, the timeline
append and the enqueue happen under one lock, so queue order is global
arrival order whichever channel a request came from.
"""

import logging
import queue
import threading
from typing import Any, Callable, Dict, List, Optional

from .models import SpeakRequest, parse_speak_payload, utcnow, SOURCE_REQUEST
from .playback import PlaybackWorker
from .timeline import Timeline

logger = logging.getLogger(__name__)

TEST_TEXT = "Hello! Voice Tray is working."


class VoiceTray:
    def __init__(self, engine, default_voice: str = "Samantha", default_rate: int = 220,
                 timeline_limit: int = 100):
        self.engine = engine
        self.default_voice = default_voice
        self.default_rate = default_rate
        self.timeline = Timeline(limit=timeline_limit)
        self._requests: "queue.Queue" = queue.Queue()
        self._lock = threading.Lock()
        self._next_id = 1
        self._listeners: List[Callable[[], None]] = []
        self._worker: Optional[PlaybackWorker] = None
        self._stopping = False

    # ===== lifecycle =====
    def start(self):
        worker = self._worker
        if worker is not None:
            if worker.is_alive() and not self._stopping:
                return
            # a stopped worker can still be inside an utterance; one consumer at a time
            worker.join()
        self._stopping = False
        self._worker = PlaybackWorker(self._requests, self.timeline, self.engine, on_change=self._notify)
        self._worker.start()

    def stop(self, drain: bool = False, timeout: Optional[float] = 5.0) -> bool:
        """
        Stop the worker; with ``drain`` everything already queued is spoken first.

        Returns False when the worker is still busy after ``timeout``. It
        exits once the current utterance ends and ``start`` waits for that.
        """
        worker = self._worker
        if worker is None:
            return True
        if not drain:
            worker.stop()
        elif not self._stopping:
            worker.drain()
        self._stopping = True
        worker.join(timeout)
        if worker.is_alive():
            logger.warning("[TTS] Worker still busy, it will stop after the current utterance")
            return False
        self._worker = None
        return True

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every queued request has been played. Returns False on timeout."""
        requests = self._requests
        with requests.all_tasks_done:
            return requests.all_tasks_done.wait_for(lambda: not requests.unfinished_tasks, timeout)

    # ===== producers =====
    def submit(self, payload: Any, source: str = SOURCE_REQUEST) -> SpeakRequest:
        """
        Validate ``payload`` and queue it. Never waits for playback.

        Raises:
            ValidationError: nothing is queued and no id is consumed
        """
        cmd = parse_speak_payload(payload, self.default_voice, self.default_rate)
        with self._lock:
            request = SpeakRequest(
                id=self._next_id,
                text=cmd.text,
                voice=cmd.voice,
                rate=cmd.rate,
                agent=cmd.agent,
                source=source,
                received_at=utcnow(),
            )
            self._next_id += 1
            self.timeline.append(request)
            self._requests.put(request)
        logger.info(f"[Queue] #{request.id} queued from {source}: {request.text[:60]}")
        self._notify()
        return request

    def submit_test(self) -> SpeakRequest:
        return self.submit({"text": TEST_TEXT, "rate": 175, "agent": "Test"})

    # ===== readers =====
    def entries(self) -> List[Dict]:
        return self.timeline.entries()

    def clear(self) -> int:
        removed = self.timeline.clear()
        if removed:
            self._notify()
        return removed

    def pending(self) -> int:
        return self._requests.qsize()

    # ===== change listeners =====
    def add_listener(self, callback: Callable[[], None]):
        self._listeners.append(callback)

    def _notify(self):
        for callback in list(self._listeners):
            try:
                callback()
            except Exception:
                logger.exception("[Queue] state listener failed")
