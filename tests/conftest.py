"""Shared test fixtures for devchat."""

import json
import os
import sys
import textwrap

import pytest

from devchat.credentials import CredentialState, Credentials, TokenGrant
from devchat.session import ChatSession
from devchat.transcript import TranscriptStore

FAKE_CLAUDE = textwrap.dedent('''
    """Stand-in for the claude CLI, speaking stream-json."""
    import json
    import os
    import signal
    import sys
    import time

    record = os.environ.get("FAKE_CLAUDE_RECORD")
    if record:
        with open(record, "a", encoding="utf-8") as f:
            f.write(json.dumps({
                "argv": sys.argv[1:],
                "cwd": os.getcwd(),
                "api_key": os.environ.get("ANTHROPIC_API_KEY"),
                "oauth_token": os.environ.get("CLAUDE_CODE_OAUTH_TOKEN"),
            }) + "\\n")

    mode = os.environ.get("FAKE_CLAUDE_MODE", "ok")


    def emit(frame):
        sys.stdout.write(json.dumps(frame) + "\\n")
        sys.stdout.flush()


    emit({"type": "system", "subtype": "init", "session_id": "sess-123"})

    if mode == "ok":
        sys.stdout.write("not json at all\\n")
        emit({"type": "assistant", "message": {"content": [
            {"type": "text", "text": "Reading the file."},
            {"type": "tool_use", "id": "toolu_1", "name": "Read", "input": {"file_path": "src/App.tsx"}},
        ]}})
        emit({"type": "user", "message": {"content": [
            {"type": "tool_result", "tool_use_id": "toolu_1", "content": [{"type": "text", "text": "export default App"}]},
        ]}})
        emit({"type": "result", "subtype": "success", "result": "All done."})
    elif mode == "no_result":
        emit({"type": "assistant", "message": {"content": [{"type": "text", "text": "partial answer"}]}})
    elif mode == "stderr":
        sys.stderr.write("something broke\\n")
        sys.stderr.flush()
        sys.exit(2)
    elif mode == "hang":
        emit({"type": "assistant", "message": {"content": [{"type": "text", "text": "thinking..."}]}})
        time.sleep(30)
    elif mode == "stubborn":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        emit({"type": "assistant", "message": {"content": [{"type": "text", "text": "ignoring you"}]}})
        time.sleep(30)
''')


class FakeRefresher:
    """Token refresher returning a canned grant, or raising ``error``."""

    def __init__(self, grant=None, error=None, calls=None):
        self.grant = grant or TokenGrant(access_token="new-access", refresh_token="new-refresh", expires_in=3600)
        self.error = error
        self.calls = calls if calls is not None else []

    async def refresh(self, refresh_token):
        self.calls.append(("refresh", refresh_token))
        if self.error is not None:
            raise self.error
        return self.grant


class FakeStore:
    def __init__(self, ok=True):
        self.ok = ok
        self.updates = []

    def update_values(self, values):
        self.updates.append(dict(values))
        return self.ok


class StaticDiagnostics:
    def __init__(self, lines=None):
        self.lines = lines or []

    def recent_diagnostics(self):
        return list(self.lines)


@pytest.fixture
def fake_claude(tmp_path):
    """Write the fake CLI script and return the command that runs it."""
    script = tmp_path / "fake_claude.py"
    script.write_text(FAKE_CLAUDE, encoding="utf-8")
    return [sys.executable, str(script)]


@pytest.fixture
def project_root(tmp_path):
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def record_path(tmp_path):
    return tmp_path / "invocations.jsonl"


def read_invocations(record_path):
    if not record_path.exists():
        return []
    return [json.loads(line) for line in record_path.read_text(encoding="utf-8").splitlines() if line]


@pytest.fixture
def make_session(fake_claude, project_root, record_path):
    """Factory for a ChatSession wired to the fake CLI."""

    def _make(mode="ok", credentials=None, diagnostics=None, **kwargs):
        if credentials is None:
            credentials = CredentialState(Credentials(api_key="sk-test-key"))
        base_env = dict(os.environ)
        base_env.update({"FAKE_CLAUDE_MODE": mode, "FAKE_CLAUDE_RECORD": str(record_path)})
        return ChatSession(
            project_root=project_root,
            credentials=credentials,
            transcript=TranscriptStore(project_root / ".devchat" / "chat.jsonl"),
            diagnostics=diagnostics,
            command=kwargs.pop("command", fake_claude),
            base_env=base_env,
            **kwargs,
        )

    return _make


class EventCollector:
    """A sink that records every event it is given."""

    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    @property
    def types(self):
        return [e.type for e in self.events]


@pytest.fixture
def collector():
    return EventCollector()
