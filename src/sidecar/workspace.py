"""Workspace root for the current session.

Set once at startup. Path-aware tools resolve relative paths against this
root so the agent never needs to chdir.
"""

from pathlib import Path

_workspace_root: Path | None = None


def set_workspace_root(path: str | Path) -> None:
    """Set the workspace root for this session."""
    global _workspace_root
    _workspace_root = Path(path).expanduser().resolve()


def get_workspace_root() -> Path:
    """Return the workspace root, or cwd if not set (e.g. in tests)."""
    if _workspace_root is not None:
        return _workspace_root
    return Path.cwd()
