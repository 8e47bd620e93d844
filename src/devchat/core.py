"""Core data models for devchat."""

from dataclasses import dataclass
from typing import Any, Optional

# ChatEvent kinds
TEXT = "text"
TOOL_USE = "tool_use"
TOOL_RESULT = "tool_result"
ERROR = "error"
DONE = "done"
# Side-channel carrying the continuity id; never forwarded to a sink.
SESSION = "session"


@dataclass
class ChatEvent:
    """A normalized event produced while one message is being answered."""

    type: str  # "text" | "tool_use" | "tool_result" | "error" | "done" | "session"
    text: Optional[str] = None
    name: Optional[str] = None
    input: Optional[dict] = None
    session_id: Optional[str] = None
    final: bool = False  # text taken from the terminal "result" frame

    @classmethod
    def text_event(cls, text: str, final: bool = False) -> "ChatEvent":
        return cls(type=TEXT, text=text, final=final)

    @classmethod
    def tool_use(cls, name: str, input: dict) -> "ChatEvent":
        return cls(type=TOOL_USE, name=name, input=input)

    @classmethod
    def tool_result(cls, text: str) -> "ChatEvent":
        return cls(type=TOOL_RESULT, text=text)

    @classmethod
    def error(cls, text: str) -> "ChatEvent":
        return cls(type=ERROR, text=text)

    @classmethod
    def done(cls) -> "ChatEvent":
        return cls(type=DONE)

    @classmethod
    def session(cls, session_id: str) -> "ChatEvent":
        return cls(type=SESSION, session_id=session_id)

    def to_dict(self) -> dict:
        """Wire form: the type plus whichever payload fields are set."""
        data: dict[str, Any] = {"type": self.type}
        if self.type in (TEXT, TOOL_RESULT, ERROR):
            data["text"] = self.text or ""
        elif self.type == TOOL_USE:
            data["name"] = self.name
            data["input"] = self.input if self.input is not None else {}
        return data


@dataclass
class TranscriptEntry:
    """A single persisted line of the chat transcript."""

    role: str  # "user" | "assistant"
    type: str  # "message" | "text" | "tool_use" | "result"
    text: Optional[str] = None
    name: Optional[str] = None
    input: Optional[dict] = None
    timestamp: int = 0  # ms since epoch, assigned on append

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"role": self.role, "type": self.type}
        if self.text is not None:
            data["text"] = self.text
        if self.name is not None:
            data["name"] = self.name
        if self.input is not None:
            data["input"] = self.input
        data["timestamp"] = self.timestamp
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "TranscriptEntry":
        """Build an entry from a parsed JSON line.

        Raises ValueError when required fields are missing or malformed.
        """
        role = data.get("role")
        entry_type = data.get("type")
        if not isinstance(role, str) or not isinstance(entry_type, str):
            raise ValueError("transcript entry needs string role and type")
        timestamp = data.get("timestamp", 0)
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise ValueError("transcript entry timestamp must be a number")
        tool_input = data.get("input")
        return cls(
            role=role,
            type=entry_type,
            text=data.get("text"),
            name=data.get("name"),
            input=tool_input if isinstance(tool_input, dict) else None,
            timestamp=int(timestamp),
        )


@dataclass
class SessionWindow:
    """Lifetime of a sandboxed dev server, reported by /health."""

    started_at: int  # epoch seconds
    timeout_seconds: int

    @property
    def expires_at(self) -> int:
        return self.started_at + self.timeout_seconds

    def to_dict(self) -> dict:
        return {
            "startedAt": self.started_at,
            "expiresAt": self.expires_at,
            "timeoutSeconds": self.timeout_seconds,
        }
