"""Append-only JSONL transcript of the conversation.

One JSON object per line::

    {"role": "user", "type": "message", "text": "hi", "timestamp": 1737367200000}

The transcript is advisory: write failures are logged and dropped, and lines
that fail to parse are skipped when reading.
"""

import json
import logging
import time
from pathlib import Path

from .core import TranscriptEntry

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class TranscriptStore:
    """The chat log of one session, backed by a single file."""

    def __init__(self, path: Path, clock=_now_ms):
        self.path = path
        self._clock = clock
        # Resume from what is already on disk so order survives a restart.
        self._last_ts = max((e.timestamp for e in self.read_all()), default=0)

    def append(self, entry: TranscriptEntry) -> bool:
        """Stamp and append an entry. Returns False if it could not be written."""
        # Keep timestamps non-decreasing in file order even if the clock steps back.
        ts = max(self._clock(), self._last_ts)
        self._last_ts = ts
        entry.timestamp = ts

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")
        except (OSError, TypeError, ValueError) as e:
            logger.warning("Failed to append to transcript %s: %s", self.path, e)
            return False
        return True

    def read_all(self) -> list[TranscriptEntry]:
        if not self.path.exists():
            return []

        entries = []
        try:
            with self.path.open(encoding="utf-8", errors="replace") as f:
                for line_num, line in enumerate(f, 1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        data = json.loads(line)
                        if not isinstance(data, dict):
                            raise ValueError("not an object")
                        entries.append(TranscriptEntry.from_dict(data))
                    except ValueError as e:
                        logger.debug("Bad transcript line at %s:%d: %s", self.path, line_num, e)
                        continue
        except OSError as e:
            logger.warning("Failed to read transcript %s: %s", self.path, e)

        return entries

    def read_since(self, since: int) -> list[TranscriptEntry]:
        """Entries stamped strictly after ``since`` (ms), in file order."""
        return [e for e in self.read_all() if e.timestamp > since]
