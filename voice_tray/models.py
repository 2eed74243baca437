# models.py
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from .errors import ValidationError

# ===== Status values =====
QUEUED = "queued"
SPEAKING = "speaking"
DONE = "done"
FAILED = "failed"

TERMINAL = frozenset({DONE, FAILED})

# forward-only transitions
_NEXT = {
    # queued -> failed only when the worker could not start playback
    QUEUED: {SPEAKING, FAILED},
    SPEAKING: {DONE, FAILED},
    DONE: set(),
    FAILED: set(),
}

SOURCE_REQUEST = "request"
SOURCE_SUBSCRIPTION = "subscription"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SpeakCommand:
    """Validated payload, before an id has been assigned."""
    text: str
    voice: str
    rate: int
    agent: Optional[str] = None


@dataclass(frozen=True)
class SpeakRequest:
    id: int
    text: str
    voice: str
    rate: int
    agent: Optional[str]
    source: str
    received_at: datetime = field(default_factory=utcnow)


@dataclass
class TimelineEntry:
    request: SpeakRequest
    status: str = QUEUED

    @property
    def id(self) -> int:
        return self.request.id

    def can_move_to(self, status: str) -> bool:
        return status in _NEXT.get(self.status, ())

    def to_dict(self) -> Dict[str, Any]:
        req = self.request
        return {
            "id": req.id,
            "text": req.text,
            "voice": req.voice,
            "rate": req.rate,
            "agent": req.agent,
            "source": req.source,
            "timestamp": req.received_at.isoformat(),
            "status": self.status,
        }


def parse_speak_payload(payload: Any, default_voice: str, default_rate: int) -> SpeakCommand:
    """
    Normalize an inbound body into a SpeakCommand.

    Shared by the HTTP listener and the MQTT subscriber so both channels
    accept exactly the same shape: ``text`` required, ``voice``, ``rate``
    and ``agent`` optional.

    Raises:
        ValidationError: payload is not an object or a field is invalid
    """
    if not isinstance(payload, dict):
        raise ValidationError("payload must be a JSON object")

    text = payload.get("text")
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("'text' is required and must be a non-empty string")

    voice = payload.get("voice")
    if voice is None or voice == "":
        voice = default_voice
    elif not isinstance(voice, str):
        raise ValidationError("'voice' must be a string")

    rate = payload.get("rate")
    if rate is None:
        rate = default_rate
    # bool is an int subclass
    elif isinstance(rate, bool) or not isinstance(rate, int):
        raise ValidationError("'rate' must be an integer (words per minute)")
    elif rate <= 0:
        raise ValidationError("'rate' must be positive")

    agent = payload.get("agent")
    if agent is not None and not isinstance(agent, str):
        raise ValidationError("'agent' must be a string")
    if agent == "":
        agent = None

    return SpeakCommand(text=text.strip(), voice=voice, rate=rate, agent=agent)
