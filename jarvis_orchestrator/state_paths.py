"""Shared helpers for resolving Jarvis state paths.

Every component (webhook server, scheduler, CLI helpers) resolves its SQLite
files through this module so they all agree on a single location.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = Path.home() / ".local" / "state" / "jarvis"

PENDING_ACTIONS_DB = "pending_actions.db"
REMINDERS_DB = "reminders.db"
NOTES_DB = "notes.db"
CHAT_MEMORY_DB = "chat_memory.db"


def resolve_state_dir(base_dir: Optional[Path] = None) -> Path:
    """Resolve the Jarvis base state directory.

    Handles both ~ and $HOME/$VAR expansion for compatibility with
    systemd EnvironmentFile and shell scripts.
    """
    if base_dir is not None:
        return Path(os.path.expandvars(str(base_dir))).expanduser()
    env_dir = os.getenv("STATE_DIR") or os.getenv("JARVIS_STATE_DIR")
    if env_dir:
        return Path(os.path.expandvars(env_dir)).expanduser()
    return DEFAULT_STATE_DIR


def resolve_db_path(filename: str, base_dir: Optional[Path] = None) -> Path:
    """Resolve a database file inside the state directory, creating the directory."""
    state_dir = resolve_state_dir(base_dir)
    state_dir.mkdir(parents=True, exist_ok=True)
    path = state_dir / filename
    if not path.exists():
        logger.info(f"No existing database found. Will create: {path}")
    return path
