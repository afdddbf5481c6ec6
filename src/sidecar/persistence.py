"""Named conversation sessions stored as JSON files."""

import json
import os
import re
import shutil
import time
from pathlib import Path
from typing import Optional

from .logging_config import get_logger
from .state.conversation import Transcript, Turn

logger = get_logger(__name__)

SESSION_VERSION = 1


def _safe_name(name: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9_.-]+", "_", name.strip()).strip("._")
    if not cleaned:
        raise ValueError(f"Invalid session name: {name!r}")
    return cleaned


class SessionStore:
    """Saves and loads transcripts under ``directory``.

    Writes go to a temporary file that replaces the session file in one
    step; the previous version is kept as ``<name>.json.bak``.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory).expanduser()

    def path_for(self, name: str) -> Path:
        return self.directory / f"{_safe_name(name)}.json"

    def save(self, name: str, turns: list[Turn]) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(name)
        data = {
            "version": SESSION_VERSION,
            "name": name,
            "saved_at": time.time(),
            "turns": [t.to_dict() for t in turns],
        }
        tmp = path.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        if path.exists():
            shutil.copy2(path, path.with_suffix(".json.bak"))
        os.replace(tmp, path)
        logger.debug("Saved session %s (%d turns)", name, len(turns))
        return path

    def load(self, name: str) -> Optional[Transcript]:
        """Load a session; None when it does not exist.

        Raises:
            ValueError: The session file is corrupt.
        """
        path = self.path_for(name)
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return Transcript.from_list(data.get("turns", []))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Session file {path} is corrupt: {e}") from e

    def list_sessions(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))

    def delete(self, name: str) -> bool:
        path = self.path_for(name)
        if not path.exists():
            return False
        path.unlink()
        backup = path.with_suffix(".json.bak")
        if backup.exists():
            backup.unlink()
        return True
