import logging
import queue
import threading
import time

from .models import SpeakRequest, SPEAKING, DONE, FAILED
from .errors import PlaybackError

logger = logging.getLogger(__name__)


class PlaybackWorker(threading.Thread):
    """
    The only consumer of the request queue.

    One utterance at a time: mark speaking, call the engine, block until
    it returns, mark done/failed, move on. A failure is recorded and never
    retried.
    """

    def __init__(self, requests: "queue.Queue", timeline, engine, on_change=None, poll_s: float = 0.25):
        super().__init__(name="voice-tray-playback", daemon=True)
        self.requests = requests
        self.timeline = timeline
        self.engine = engine
        self.on_change = on_change
        self.poll_s = poll_s
        self._stop_event = threading.Event()
        # queued by drain(); stops this worker after everything before it is spoken
        self._sentinel = object()
        self.spoken = 0
        self.failed = 0

    def stop(self):
        self._stop_event.set()

    def drain(self):
        self.requests.put(self._sentinel)

    def run(self):
        logger.info("[TTS] Worker started")
        while not self._stop_event.is_set():
            try:
                request = self.requests.get(timeout=self.poll_s)
            except queue.Empty:
                continue
            try:
                if request is self._sentinel:
                    break
                if not isinstance(request, SpeakRequest):
                    # left behind by an earlier worker
                    continue
                self._play(request)
            except Exception:
                logger.exception(f"[TTS] #{request.id} could not be played")
                self._give_up(request)
            finally:
                self.requests.task_done()
        logger.info(f"[TTS] Worker stopped (spoken={self.spoken} failed={self.failed})")

    def _play(self, request):
        if not self.timeline.transition(request.id, SPEAKING):
            logger.warning(f"[TTS] #{request.id} no longer on the timeline - skipped")
            return
        self._changed()

        t0 = time.time()
        status = DONE
        try:
            self.engine.speak(request.text, request.voice, request.rate)
        except PlaybackError as e:
            status = FAILED
            logger.error(f"[TTS] #{request.id} failed: {e}")
        except Exception:
            status = FAILED
            logger.exception(f"[TTS] #{request.id} engine crashed")

        self.timeline.transition(request.id, status)
        if status == DONE:
            self.spoken += 1
        else:
            self.failed += 1
        logger.info(f"[TTS] #{request.id} {status} after {(time.time() - t0):.2f}s")
        self._changed()

    def _give_up(self, request):
        if self.timeline.transition(request.id, FAILED):
            self.failed += 1
            self._changed()

    def _changed(self):
        if self.on_change is None:
            return
        try:
            self.on_change()
        except Exception:
            logger.exception("[TTS] state listener failed")
