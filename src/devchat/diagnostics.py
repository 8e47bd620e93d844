"""Recent dev server output, kept for the assistant to look at.

The buffer is a logging handler: whatever the hosting dev server logs through
the standard ``logging`` module is retained (last ``MAX_LOG_LINES`` records)
and mirrored to ``.devchat/server.log`` so the assistant can read it. Warnings
and errors are folded into the system prompt of every chat message.
"""

import logging
from collections import deque
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

MAX_LOG_LINES = 100


def _label(levelno: int) -> str:
    if levelno >= logging.ERROR:
        return "ERROR"
    if levelno >= logging.WARNING:
        return "WARN"
    return "INFO"


class LogBuffer(logging.Handler):
    """Bounded in-memory log that also rewrites a plain-text log file."""

    def __init__(self, log_path: Path | None = None, capacity: int = MAX_LOG_LINES):
        super().__init__(level=logging.INFO)
        self._entries: deque[tuple[str, str, float]] = deque(maxlen=capacity)
        self.log_path = log_path

    def init(self, state_dir: Path) -> None:
        """Start mirroring to ``<state_dir>/server.log``."""
        state_dir.mkdir(parents=True, exist_ok=True)
        self.log_path = state_dir / "server.log"
        self._flush_file()

    def push(self, level: str, text: str, created: float | None = None) -> None:
        if created is None:
            created = datetime.now(timezone.utc).timestamp()
        self._entries.append((level, text, created))
        self._flush_file()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.push(_label(record.levelno), record.getMessage(), record.created)
        except Exception:
            self.handleError(record)

    def recent_diagnostics(self) -> list[str]:
        """Return recent warnings and errors as ``[LEVEL] text`` lines."""
        return [
            f"[{level}] {text}"
            for level, text, _ in self._entries
            if level in ("WARN", "ERROR")
        ]

    def _flush_file(self) -> None:
        if not self.log_path:
            return
        lines = []
        for level, text, created in self._entries:
            ts = datetime.fromtimestamp(created, tz=timezone.utc).isoformat()
            lines.append(f"[{ts}] [{level}] {text}")
        try:
            self.log_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        except OSError as e:
            # Disable first: this handler may be attached to the logger below.
            self.log_path = None
            logger.debug("Disabling server.log mirror: %s", e)
