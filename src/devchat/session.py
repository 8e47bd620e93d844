"""Chat session engine: one claude CLI process per message.

A ChatSession owns the conversation state (continuity id, credentials,
transcript). ``send_message`` starts an Exchange which runs the CLI, decodes
its stream-json output and hands normalized events to a caller-supplied sink.
Exactly one ``done`` event ends every exchange, however the process ends.
"""

import asyncio
import inspect
import logging
import os
from pathlib import Path
from typing import Awaitable, Callable, Optional, Protocol, Union

from .config import DEFAULT_MODEL, Settings
from .core import DONE, ChatEvent, TranscriptEntry
from .credentials import (
    ACCESS_TOKEN_VAR,
    API_KEY_VAR,
    OAUTH_TOKEN_ENV,
    REFRESH_TOKEN_VAR,
    CredentialState,
    Credentials,
    EnvFileStore,
    NotConfiguredError,
)
from .process import ProcessHandle, SpawnError, spawn
from .protocol import ProtocolDecoder, StderrDecoder, is_side_channel, persistable
from .transcript import TranscriptStore

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are embedded in a local dev server as the devchat assistant. "
    "Your job is to help build and modify the app in {project_root}. "
    "Files you edit are picked up by the dev server's hot reload. "
    "You can read .devchat/server.log to check recent dev server output "
    "(compile errors, reloads, warnings). Be concise."
)

Sink = Callable[[ChatEvent], Union[Awaitable[None], None]]
Spawner = Callable[[list[str], dict[str, str], Path], Awaitable[ProcessHandle]]


class DiagnosticsSource(Protocol):
    def recent_diagnostics(self) -> list[str]: ...


def build_system_prompt(base: str, diagnostics: list[str]) -> str:
    if not diagnostics:
        return base
    return base + "\n\nRecent dev server errors/warnings:\n" + "\n".join(diagnostics)


def build_args(
    command: list[str],
    system_prompt: str,
    model: str,
    message: str,
    session_id: str | None = None,
) -> list[str]:
    """The claude CLI invocation for one message; the message is always last."""
    args = [
        *command,
        "--print",
        "--verbose",
        "--output-format",
        "stream-json",
        "--dangerously-skip-permissions",
        "--append-system-prompt",
        system_prompt,
        "--model",
        model,
    ]
    if session_id:
        args.extend(["--resume", session_id])
    args.append(message)
    return args


class Exchange:
    """One message being answered by one claude process."""

    def __init__(self, message: str, sink: Sink):
        self.message = message
        self.process: Optional[ProcessHandle] = None
        self.decoder = ProtocolDecoder()
        self.stderr_decoder = StderrDecoder()
        self.terminated = False  # done has been emitted
        self.cancelled = False
        self._sink = sink
        self._task: Optional[asyncio.Task] = None
        self._terminate_task: Optional[asyncio.Task] = None

    def cancel(self) -> None:
        """Stop the process. ``wait()`` still returns normally afterwards."""
        if self.cancelled:
            return
        self.cancelled = True
        logger.info("Cancelling chat exchange")
        if self.process is not None and self._terminate_task is None:
            self._terminate_task = asyncio.ensure_future(self.process.terminate())

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.shield(self._task)

    async def emit(self, event: ChatEvent) -> None:
        if self.terminated:
            return
        if event.type == DONE:
            self.terminated = True
        try:
            result = self._sink(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            # A sink that cannot take events any more is treated as a disconnect.
            logger.warning("Chat event sink failed, cancelling exchange: %s", e)
            self.cancel()

    async def pump(self, handle: ProcessHandle, on_event: Callable[[ChatEvent], Awaitable[None]]) -> int:
        """Forward decoded stdout/stderr events in arrival order until exit."""
        queue: asyncio.Queue = asyncio.Queue()

        async def read(kind: str, chunks):
            try:
                async for chunk in chunks:
                    queue.put_nowait((kind, chunk))
            finally:
                queue.put_nowait((kind, None))

        readers = [
            asyncio.ensure_future(read("stdout", handle.stdout_chunks())),
            asyncio.ensure_future(read("stderr", handle.stderr_chunks())),
        ]
        try:
            open_streams = len(readers)
            while open_streams:
                kind, chunk = await queue.get()
                if kind == "stdout":
                    events = self.decoder.flush() if chunk is None else self.decoder.feed(chunk)
                else:
                    event = self.stderr_decoder.flush() if chunk is None else self.stderr_decoder.feed(chunk)
                    events = [event] if event else []
                if chunk is None:
                    open_streams -= 1
                for event in events:
                    await on_event(event)
            return await handle.wait()
        finally:
            for reader in readers:
                reader.cancel()
            for result in await asyncio.gather(*readers, return_exceptions=True):
                if isinstance(result, Exception):
                    logger.warning("Error reading claude output: %s", result)


class ChatSession:
    """The single conversation served by one dev server."""

    def __init__(
        self,
        project_root: Path,
        credentials: Optional[CredentialState],
        transcript: TranscriptStore,
        diagnostics: Optional[DiagnosticsSource] = None,
        system_prompt: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        command: Optional[list[str]] = None,
        spawner: Spawner = spawn,
        base_env: Optional[dict[str, str]] = None,
    ):
        self.project_root = Path(project_root)
        self.credentials = credentials
        self.transcript = transcript
        self.diagnostics = diagnostics
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT.format(project_root=self.project_root)
        self.model = model
        self.command = command or ["claude"]
        self.session_id: Optional[str] = None
        self._spawner = spawner
        self._base_env = base_env
        # Sends are serialized so each exchange resumes from the previous one.
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, diagnostics: Optional[DiagnosticsSource] = None) -> "ChatSession":
        creds = Credentials.from_env(settings.env)
        state = CredentialState(creds, store=EnvFileStore(settings.env_file)) if creds else None
        return cls(
            project_root=settings.project_root,
            credentials=state,
            transcript=TranscriptStore(settings.resolved_transcript_path()),
            diagnostics=diagnostics,
            system_prompt=settings.system_prompt,
            model=settings.model,
            command=settings.claude_command,
        )

    @property
    def configured(self) -> bool:
        return self.credentials is not None

    def reset(self) -> None:
        """Start a fresh conversation. The transcript is kept."""
        logger.info("Resetting chat session (was %s)", self.session_id)
        self.session_id = None

    def get_history(self, since: Optional[int] = None) -> list[TranscriptEntry]:
        if since is None:
            return self.transcript.read_all()
        return self.transcript.read_since(since)

    async def send_message(self, text: str, sink: Sink) -> Exchange:
        """Start answering ``text``; events go to ``sink``.

        Waits for any exchange still running on this session. Raises
        NotConfiguredError or RefreshError before anything is spawned.
        """
        if self.credentials is None:
            raise NotConfiguredError("No Claude auth configured")

        await self._lock.acquire()
        try:
            await self.credentials.ensure_fresh()
        except BaseException:
            self._lock.release()
            raise

        exchange = Exchange(text, sink)
        self.transcript.append(TranscriptEntry(role="user", type="message", text=text))
        exchange._task = asyncio.ensure_future(self._run(exchange))
        return exchange

    def _recent_diagnostics(self) -> list[str]:
        if self.diagnostics is None:
            return []
        try:
            return list(self.diagnostics.recent_diagnostics())
        except Exception as e:
            logger.warning("Could not collect recent diagnostics: %s", e)
            return []

    def _build_env(self) -> dict[str, str]:
        env = dict(self._base_env if self._base_env is not None else os.environ)
        for key in (API_KEY_VAR, OAUTH_TOKEN_ENV, ACCESS_TOKEN_VAR, REFRESH_TOKEN_VAR):
            env.pop(key, None)
        env.update(self.credentials.subprocess_env())
        # Keep the child from thinking it runs nested inside another claude session.
        env["CLAUDECODE"] = ""
        return env

    async def _run(self, exchange: Exchange) -> None:
        handle: Optional[ProcessHandle] = None
        try:
            prompt = build_system_prompt(self.system_prompt, self._recent_diagnostics())
            argv = build_args(self.command, prompt, self.model, exchange.message, self.session_id)

            try:
                handle = await self._spawner(argv, self._build_env(), self.project_root)
            except SpawnError as e:
                logger.error("Could not start claude: %s", e)
                await exchange.emit(ChatEvent.error(str(e)))
                return

            exchange.process = handle
            if exchange.cancelled:
                await handle.terminate()

            async def on_event(event: ChatEvent) -> None:
                if is_side_channel(event):
                    self.session_id = event.session_id
                    return
                entry = persistable(event)
                if entry is not None:
                    self.transcript.append(entry)
                await exchange.emit(event)

            returncode = await exchange.pump(handle, on_event)
            if returncode != 0 and not exchange.cancelled and not exchange.terminated:
                await exchange.emit(ChatEvent.error(f"claude exited with status {returncode}"))
        except Exception as e:
            logger.exception("Chat exchange failed")
            await exchange.emit(ChatEvent.error(str(e) or e.__class__.__name__))
        finally:
            try:
                if handle is not None and handle.returncode is None:
                    await handle.terminate()
            finally:
                await exchange.emit(ChatEvent.done())
                self._lock.release()
