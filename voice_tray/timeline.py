import logging
import threading
from collections import OrderedDict
from typing import Dict, List, Optional

from .models import TimelineEntry, SpeakRequest, QUEUED, SPEAKING, TERMINAL

logger = logging.getLogger(__name__)


class Timeline:
    """
    Record of every accepted request, oldest first.

    Entries are only ever appended; afterwards just their status moves
    forward. ``limit`` bounds memory by evicting the oldest terminal
    entries, never queued or speaking ones.
    """

    def __init__(self, limit: int = 100):
        self.limit = limit
        self._entries: "OrderedDict[int, TimelineEntry]" = OrderedDict()
        self._speaking: Optional[int] = None
        self._lock = threading.RLock()

    @property
    def lock(self):
        return self._lock

    def append(self, request: SpeakRequest) -> TimelineEntry:
        entry = TimelineEntry(request=request)
        with self._lock:
            if request.id in self._entries:
                raise ValueError(f"duplicate timeline id {request.id}")
            self._entries[request.id] = entry
            self._evict()
        return entry

    def _evict(self):
        if self.limit <= 0:
            return
        excess = len(self._entries) - self.limit
        if excess <= 0:
            return
        for entry_id in [i for i, e in self._entries.items() if e.status in TERMINAL][:excess]:
            del self._entries[entry_id]

    def transition(self, entry_id: int, status: str) -> bool:
        """
        Move one entry forward. Returns False when the entry is gone
        (evicted or cleared) or the move would go backwards.
        """
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None or not entry.can_move_to(status):
                return False
            if status == SPEAKING:
                if self._speaking is not None:
                    raise RuntimeError(f"entry {self._speaking} is already speaking")
                self._speaking = entry_id
            elif self._speaking == entry_id:
                self._speaking = None
            entry.status = status
            return True

    def clear(self) -> int:
        """Drop done/failed entries, keep anything still pending."""
        with self._lock:
            finished = [i for i, e in self._entries.items() if e.status in TERMINAL]
            for entry_id in finished:
                del self._entries[entry_id]
        if finished:
            logger.info(f"[Timeline] Cleared {len(finished)} finished entries")
        return len(finished)

    def get(self, entry_id: int) -> Optional[Dict]:
        with self._lock:
            entry = self._entries.get(entry_id)
            return entry.to_dict() if entry else None

    def entries(self) -> List[Dict]:
        with self._lock:
            return [e.to_dict() for e in self._entries.values()]

    def counts(self) -> Dict:
        with self._lock:
            return {
                "total": len(self._entries),
                "queued": sum(1 for e in self._entries.values() if e.status == QUEUED),
                "is_speaking": self._speaking is not None,
                "speaking_id": self._speaking,
            }

    def __len__(self):
        with self._lock:
            return len(self._entries)
