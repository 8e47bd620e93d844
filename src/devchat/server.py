"""FastAPI gateway: streams chat exchanges to the browser as Server-Sent Events."""

import asyncio
import json
import logging

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from . import __version__
from .config import Settings
from .core import DONE, ChatEvent
from .credentials import NotConfiguredError, RefreshError
from .diagnostics import LogBuffer
from .session import ChatSession, Exchange

logger = logging.getLogger(__name__)

app = FastAPI(title="devchat", version=__version__)

NO_AUTH_MESSAGE = "No Claude auth configured. Set ANTHROPIC_API_KEY or CLAUDE_ACCESS_TOKEN."
DONE_FRAME = "event: done\ndata: {}\n\n"
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# Recent dev server output, folded into the assistant's system prompt.
log_buffer = LogBuffer()

# Session state (created on first request)
_settings: Settings | None = None
_session: ChatSession | None = None


def _get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def _get_session() -> ChatSession:
    """Lazily create the one chat session this server hosts."""
    global _session
    if _session is None:
        settings = _get_settings()
        log_buffer.init(settings.state_dir)
        _session = ChatSession.from_settings(settings, diagnostics=log_buffer)
        logger.info(
            "Chat session ready for %s (model %s, auth %s)",
            settings.project_root,
            settings.model,
            "configured" if _session.configured else "missing",
        )
    return _session


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _frame(event: ChatEvent) -> str:
    return f"data: {json.dumps(event.to_dict(), ensure_ascii=False)}\n\n"


async def _event_stream(exchange: Exchange, queue: asyncio.Queue):
    """Relay queued events until ``done``; cancel the exchange if cut short."""
    finished = False
    try:
        while True:
            event = await queue.get()
            if event.type == DONE:
                finished = True
                yield DONE_FRAME
                return
            yield _frame(event)
    finally:
        if not finished:
            logger.info("Client went away mid-stream")
            exchange.cancel()


# ── Routes ───────────────────────────────────────────────────────


@app.api_route("/chat", methods=["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"])
async def chat(request: Request):
    """Answer one message, streaming events as they arrive."""
    if request.method != "POST":
        return _error(405, "Method not allowed")

    session = _get_session()
    if not session.configured:
        return _error(500, NO_AUTH_MESSAGE)

    try:
        body = json.loads(await request.body())
    except (ValueError, UnicodeDecodeError):
        return _error(400, "Invalid JSON body")

    message = body.get("message") if isinstance(body, dict) else None
    if not isinstance(message, str) or not message:
        return _error(400, 'Missing "message" field')

    queue: asyncio.Queue = asyncio.Queue()
    try:
        exchange = await session.send_message(message, queue.put_nowait)
    except NotConfiguredError:
        return _error(500, NO_AUTH_MESSAGE)
    except RefreshError as e:
        logger.error("Token refresh failed (%s): %s", e.cause, e)
        return _error(500, f"Failed to refresh Claude token: {e}")

    return StreamingResponse(
        _event_stream(exchange, queue),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.get("/chat/history")
async def chat_history(since: str | None = Query(None, description="Only entries after this ms timestamp")):
    """Return the persisted transcript."""
    try:
        since_ms = int(since) if since is not None else None
    except ValueError:
        return _error(400, 'Invalid "since" parameter')
    entries = _get_session().get_history(since_ms)
    return {"entries": [e.to_dict() for e in entries]}


@app.api_route("/chat/reset", methods=["GET", "POST"])
async def chat_reset():
    """Forget the continuity id so the next message starts a new conversation."""
    _get_session().reset()
    return {"status": "ok"}


@app.get("/health")
async def health():
    """Report whether chat is usable, and the sandbox lifetime if any."""
    session = _get_session()
    window = _get_settings().session_window()
    return {
        "status": "ok" if session.configured else "error",
        "configured": session.configured,
        "session": window.to_dict() if window else None,
    }
