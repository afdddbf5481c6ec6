"""Ignore rules for walking directories.

Combines simple name patterns from configuration (``node_modules``,
``*.pyc``) with ``.gitignore`` and ``.sidecarignore`` files found at the walk
root.
"""

import fnmatch
import os
import re
from pathlib import Path
from typing import Iterable, Iterator, Optional

from ..logging_config import get_logger

logger = get_logger(__name__)

IGNORE_FILES = (".gitignore", ".sidecarignore")

Rule = tuple[re.Pattern, bool, bool]


def _parse_gitignore_pattern(pattern: str) -> tuple[str | None, bool, bool]:
    """Parse a gitignore pattern into a regex pattern.

    Returns:
        (regex_pattern, is_directory_pattern, negated) or (None, False, False) if should skip
    """
    pattern = pattern.strip()
    if not pattern or pattern.startswith("#"):
        return None, False, False

    negated = pattern.startswith("!")
    if negated:
        pattern = pattern[1:]

    is_dir = pattern.endswith("/")
    if is_dir:
        pattern = pattern[:-1]

    anchored = pattern.startswith("/")
    if anchored:
        pattern = pattern[1:]

    pattern = re.escape(pattern)
    pattern = pattern.replace(r"\*\*", "\0")
    pattern = pattern.replace(r"\*", r"[^/]*")
    pattern = pattern.replace(r"\?", r"[^/]")
    pattern = pattern.replace("\0", r".*")

    prefix = "^" if anchored else "(^|/)"
    # A directory pattern matches the directory and everything below it.
    suffix = "(/|$)" if is_dir else "(/.*)?$"
    return prefix + pattern + suffix, is_dir, negated


def load_ignore_file(path: Path) -> list[Rule]:
    """Load and compile one ignore file. Missing or unreadable files yield no rules."""
    rules: list[Rule] = []
    if not path.is_file():
        return rules
    try:
        with open(path, "r", encoding="utf-8") as f:
            lines = f.readlines()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Could not read %s: %s", path, e)
        return rules
    for line in lines:
        pattern_str, is_dir, negated = _parse_gitignore_pattern(line)
        if not pattern_str:
            continue
        try:
            rules.append((re.compile(pattern_str), is_dir, negated))
        except re.error:
            logger.debug("Skipping invalid ignore pattern %r in %s", line.strip(), path)
    return rules


class IgnoreRules:
    """Decides whether a path under ``root`` is skipped.

    Args:
        root: Walk root; ignore files are read from here.
        name_patterns: fnmatch patterns tested against every path component.
        use_ignore_files: Read ``.gitignore`` and ``.sidecarignore`` from root.
    """

    def __init__(self, root: Path, name_patterns: Iterable[str] = (), use_ignore_files: bool = True):
        self.root = Path(root).resolve()
        self.name_patterns = list(name_patterns)
        self.rules: list[Rule] = []
        if use_ignore_files:
            for filename in IGNORE_FILES:
                self.rules.extend(load_ignore_file(self.root / filename))

    def matches_name(self, name: str) -> bool:
        return any(fnmatch.fnmatch(name, pattern) for pattern in self.name_patterns)

    def should_ignore(self, path: Path, is_dir: Optional[bool] = None) -> bool:
        try:
            rel = Path(path).resolve().relative_to(self.root)
        except ValueError:
            return False
        if any(self.matches_name(part) for part in rel.parts):
            return True
        rel_str = rel.as_posix()
        if is_dir is None:
            is_dir = Path(path).is_dir()
        ignored = False
        parent = rel_str.rsplit("/", 1)[0] + "/" if "/" in rel_str else None
        for pattern, pattern_is_dir, negated in self.rules:
            if pattern_is_dir and not is_dir:
                # Directory patterns only reach files through their parent directories.
                if parent is None or not pattern.search(parent):
                    continue
            elif not pattern.search(rel_str):
                continue
            ignored = not negated
        return ignored


def path_has_ignored_part(path: Path, name_patterns: Iterable[str]) -> bool:
    """True when any component of ``path`` matches one of ``name_patterns``."""
    patterns = list(name_patterns)
    return any(fnmatch.fnmatch(part, p) for part in Path(path).parts for p in patterns)


def walk_files(root: Path, rules: Optional[IgnoreRules] = None) -> Iterator[Path]:
    """Lazily yield files under ``root`` in sorted order, pruning ignored directories."""
    root = Path(root).resolve()
    if rules is None:
        rules = IgnoreRules(root)
    for dirpath, dirnames, filenames in os.walk(root):
        current = Path(dirpath)
        dirnames[:] = sorted(d for d in dirnames if not rules.should_ignore(current / d, is_dir=True))
        for name in sorted(filenames):
            path = current / name
            if path.is_symlink() or rules.should_ignore(path, is_dir=False):
                continue
            yield path
