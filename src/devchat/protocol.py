"""Decoder for the claude CLI's ``--output-format stream-json`` output.

stdout carries one JSON frame per line. Recognized frame types:
- "system": init frame carrying ``session_id`` (the continuity id).
- "assistant": ``message.content`` is an array of text and/or tool_use blocks.
- "tool_result" / "user": tool output, as text blocks.
- "result": end of the turn, optional summary text in ``result``.

Anything else, including non-JSON diagnostic lines, is ignored.
"""

import codecs
import json
import logging

from .core import SESSION, TEXT, TOOL_USE, ChatEvent, TranscriptEntry

logger = logging.getLogger(__name__)


class ProtocolDecoder:
    """Turns arbitrarily split stdout chunks into ChatEvents."""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[ChatEvent]:
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()

        events = []
        for line in lines:
            events.extend(self._decode_line(line))
        return events

    def flush(self) -> list[ChatEvent]:
        """Decode whatever is left once stdout hit EOF."""
        self._buffer += self._decoder.decode(b"", final=True)
        line, self._buffer = self._buffer, ""
        return self._decode_line(line)

    def _decode_line(self, line: str) -> list[ChatEvent]:
        line = line.strip()
        if not line:
            return []
        try:
            frame = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON line: %.200s", line)
            return []
        if not isinstance(frame, dict):
            return []
        return frame_to_events(frame)


def frame_to_events(frame: dict) -> list[ChatEvent]:
    """Map one decoded frame to zero or more events."""
    frame_type = frame.get("type", "")

    if frame_type == "system":
        session_id = frame.get("session_id")
        if isinstance(session_id, str) and session_id:
            return [ChatEvent.session(session_id)]
        return []

    if frame_type == "assistant":
        message = frame.get("message")
        if not isinstance(message, dict):
            return []
        return _assistant_blocks(message.get("content"))

    if frame_type == "tool_result":
        return _tool_result_blocks(frame.get("content"))

    if frame_type == "user":
        # Tool output also arrives as tool_result blocks inside user frames.
        message = frame.get("message")
        if not isinstance(message, dict) or not isinstance(message.get("content"), list):
            return []
        events = []
        for block in message["content"]:
            if isinstance(block, dict) and block.get("type") == "tool_result":
                events.extend(_tool_result_blocks(block.get("content")))
        return events

    if frame_type == "result":
        events = []
        result = frame.get("result")
        if isinstance(result, str) and result:
            events.append(ChatEvent.text_event(result, final=True))
        events.append(ChatEvent.done())
        return events

    return []


def _assistant_blocks(content) -> list[ChatEvent]:
    if isinstance(content, str):
        return [ChatEvent.text_event(content)] if content else []
    if not isinstance(content, list):
        return []

    events = []
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type", "")
        if block_type == "text":
            text = block.get("text")
            if isinstance(text, str) and text:
                events.append(ChatEvent.text_event(text))
        elif block_type == "tool_use":
            tool_input = block.get("input")
            events.append(ChatEvent.tool_use(
                str(block.get("name", "unknown")),
                tool_input if isinstance(tool_input, dict) else {},
            ))
    return events


def _tool_result_blocks(content) -> list[ChatEvent]:
    if isinstance(content, str):
        return [ChatEvent.tool_result(content)] if content else []
    if not isinstance(content, list):
        return []

    events = []
    for block in content:
        if isinstance(block, dict) and block.get("type") == "text":
            text = block.get("text")
            if isinstance(text, str) and text:
                events.append(ChatEvent.tool_result(text))
    return events


class StderrDecoder:
    """Turns stderr chunks into ``error`` events, one per non-blank chunk."""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: bytes) -> ChatEvent | None:
        return _stderr_event(self._decoder.decode(chunk))

    def flush(self) -> ChatEvent | None:
        return _stderr_event(self._decoder.decode(b"", final=True))


def _stderr_event(text: str) -> ChatEvent | None:
    text = text.strip()
    if not text:
        return None
    return ChatEvent.error(text)


def persistable(event: ChatEvent) -> TranscriptEntry | None:
    """The transcript entry to record for an event, if it is worth keeping.

    Tool results and stderr output are not recorded.
    """
    if event.type == TEXT:
        return TranscriptEntry(role="assistant", type="result" if event.final else "text", text=event.text)
    if event.type == TOOL_USE:
        return TranscriptEntry(role="assistant", type="tool_use", name=event.name, input=event.input)
    return None


def is_side_channel(event: ChatEvent) -> bool:
    return event.type == SESSION
