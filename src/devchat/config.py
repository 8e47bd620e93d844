"""Settings resolution from the process environment and the project's .env file."""

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import dotenv_values

from .core import SessionWindow

DEFAULT_MODEL = "sonnet"
STATE_DIR_NAME = ".devchat"


def get_project_root() -> Path:
    """Return the directory the assistant works in."""
    env = os.environ.get("DEVCHAT_PROJECT_ROOT")
    if env:
        return Path(env)
    return Path.cwd()


def get_env_file(project_root: Path) -> Path:
    """Return the .env file credentials are read from and written back to."""
    return project_root / ".env"


def get_state_dir(project_root: Path) -> Path:
    """Return the directory holding the transcript and server log."""
    return project_root / STATE_DIR_NAME


def find_claude_bin(env_values: dict[str, str] | None = None) -> list[str]:
    """Return the launcher command for the claude CLI.

    ``DEVCHAT_CLAUDE_BIN`` may hold a path to the executable or to the
    package's ``cli.js``, which is then run with node.
    """
    env = (env_values if env_values is not None else os.environ).get("DEVCHAT_CLAUDE_BIN")
    if env:
        if env.endswith(".js"):
            return [shutil.which("node") or "node", env]
        return [env]

    return [shutil.which("claude") or "claude"]


def load_env(project_root: Path) -> dict[str, str]:
    """Merge the project's .env with the process environment.

    The process environment wins over values from the file.
    """
    env_file = get_env_file(project_root)
    values: dict[str, str] = {}
    if env_file.is_file():
        values.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
    values.update(os.environ)
    return values


def _int_or_none(value: str | None) -> int | None:
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


@dataclass
class Settings:
    """Everything needed to build a ChatSession and serve it."""

    project_root: Path
    env: dict[str, str]
    model: str = DEFAULT_MODEL
    claude_command: Optional[list[str]] = None
    system_prompt: Optional[str] = None
    transcript_path: Optional[Path] = None

    @classmethod
    def from_env(cls, project_root: Path | None = None) -> "Settings":
        root = project_root or get_project_root()
        env = load_env(root)
        transcript = env.get("DEVCHAT_TRANSCRIPT_PATH")
        return cls(
            project_root=root,
            env=env,
            model=env.get("DEVCHAT_MODEL") or DEFAULT_MODEL,
            claude_command=find_claude_bin(env),
            system_prompt=env.get("DEVCHAT_SYSTEM_PROMPT") or None,
            transcript_path=Path(transcript) if transcript else None,
        )

    @property
    def env_file(self) -> Path:
        return get_env_file(self.project_root)

    @property
    def state_dir(self) -> Path:
        return get_state_dir(self.project_root)

    def resolved_transcript_path(self) -> Path:
        return self.transcript_path or self.state_dir / "chat.jsonl"

    def session_window(self) -> SessionWindow | None:
        """Sandbox lifetime, when the host set both start and timeout."""
        start = _int_or_none(self.env.get("DEVCHAT_SESSION_START"))
        timeout = _int_or_none(self.env.get("DEVCHAT_SESSION_TIMEOUT"))
        if start and timeout:
            return SessionWindow(started_at=start, timeout_seconds=timeout)
        return None
