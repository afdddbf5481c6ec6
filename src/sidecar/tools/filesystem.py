"""File reading, editing and searching tools."""

import fnmatch
import re
from pathlib import Path
from typing import Iterable, Optional

from pydantic import Field

from ..errors import InvalidArguments, ResourceExhausted, ToolError
from ..logging_config import get_logger
from ..workspace import get_workspace_root
from .base import Capability, ToolArgs, ToolContext, ToolOutput, ToolSpec
from .gitignore import IgnoreRules, path_has_ignored_part, walk_files
from .registry import ToolRegistry

logger = get_logger(__name__)

MAX_READ_CHARS = 50_000
MAX_FILE_BYTES = 10_000_000
MAX_LIST_ENTRIES = 500
MAX_FIND_RESULTS = 200
MAX_LINE_CHARS = 300
MAX_SYMBOL_RESULTS = 20

# Definition patterns per file extension; {name} is the escaped symbol.
_DEFINITION_PATTERNS = {
    "py": r"^\s*(?:async\s+)?(?:def|class)\s+{name}\b",
    "rs": r"\b(?:fn|struct|trait|enum|type|mod|impl(?:<[^>]*>)?)\s+{name}\b",
    "go": r"^\s*(?:func(?:\s+\([^)]*\))?|type)\s+{name}\b",
    "js": r"\b(?:function\*?|class)\s+{name}\b|\b(?:const|let|var)\s+{name}\s*=",
    "ts": r"\b(?:function\*?|class|interface|type|enum)\s+{name}\b|\b(?:const|let|var)\s+{name}\s*=",
    "md": r"^#+\s+.*\b{name}\b",
}
_DEFINITION_PATTERNS.update(jsx=_DEFINITION_PATTERNS["js"], tsx=_DEFINITION_PATTERNS["ts"])


def resolve_path(path: str, ignored_patterns: Iterable[str] = (), for_write: bool = False) -> Path:
    """Resolve a user-supplied path against the workspace root.

    Raises:
        InvalidArguments: The path is empty, contains ``..`` or (for writes)
            passes through an ignored directory such as ``.git``.
    """
    raw = path.strip()
    if not raw:
        raise InvalidArguments("Path must not be empty")
    candidate = Path(raw).expanduser()
    if ".." in candidate.parts:
        raise InvalidArguments(f"Path traversal ('..') is not allowed: {path}")
    if not candidate.is_absolute():
        candidate = get_workspace_root() / candidate
    if for_write and path_has_ignored_part(candidate, ignored_patterns):
        raise InvalidArguments(f"Refusing to modify a path inside an ignored location: {path}")
    return candidate


def _display(path: Path) -> str:
    try:
        return str(path.relative_to(get_workspace_root()))
    except ValueError:
        return str(path)


def _read_text(path: Path) -> str:
    if not path.exists():
        raise ToolError(f"File does not exist: {_display(path)}")
    if not path.is_file():
        raise ToolError(f"Not a file: {_display(path)}")
    size = path.stat().st_size
    if size > MAX_FILE_BYTES:
        raise ResourceExhausted(f"File is too large to read ({size} bytes): {_display(path)}")
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        raise ToolError(f"Cannot read file (not text): {_display(path)}")


def _number_lines(lines: list[str], first: int) -> str:
    out = []
    for number, line in enumerate(lines, start=first):
        line = line.rstrip("\n")
        if len(line) > MAX_LINE_CHARS:
            line = line[:MAX_LINE_CHARS] + "..."
        out.append(f"{number:5d}| {line}")
    return "\n".join(out)


class ReadFileArgs(ToolArgs):
    path: str = Field(description="File path, relative to the workspace or absolute")
    start_line: Optional[int] = Field(default=None, ge=1, description="First line to read (1-indexed)")
    end_line: Optional[int] = Field(default=None, ge=1, description="Last line to read (inclusive)")


class WriteFileArgs(ToolArgs):
    path: str = Field(description="File path to write")
    content: str = Field(description="Text to write")
    append: bool = Field(default=False, description="Append instead of overwriting")


class ReplaceTextArgs(ToolArgs):
    path: str = Field(description="File to edit")
    old_text: str = Field(min_length=1, description="Exact text to replace; must occur exactly once")
    new_text: str = Field(description="Replacement text")


class EditFileArgs(ToolArgs):
    path: str = Field(description="File to edit")
    start_line: int = Field(ge=1, description="First line to replace (1-indexed)")
    end_line: int = Field(ge=1, description="Last line to replace (inclusive)")
    content: str = Field(description="New text for the line range")


class DeleteFileArgs(ToolArgs):
    path: str = Field(description="File to delete")


class ListDirectoryArgs(ToolArgs):
    path: str = Field(default=".", description="Directory to list")
    max_depth: int = Field(default=1, ge=1, le=5, description="How many levels to descend")


class FindFilesArgs(ToolArgs):
    pattern: str = Field(description="Glob matched against file names and relative paths, e.g. '*.py'")
    path: str = Field(default=".", description="Directory to search")


class GrepFilesArgs(ToolArgs):
    pattern: str = Field(description="Regular expression to search for")
    path: str = Field(default=".", description="File or directory to search")
    glob: Optional[str] = Field(default=None, description="Only search files whose name matches this glob")
    ignore_case: bool = Field(default=False)
    max_results: int = Field(default=50, ge=1, le=500)


class FindSymbolArgs(ToolArgs):
    query: str = Field(min_length=1, description="Symbol name to find, e.g. 'App', 'main' or 'Installation'")
    path: str = Field(default=".", description="Directory to search")
    file_extension: Optional[str] = Field(default=None, description="Only search files with this extension, e.g. 'py'")


class FileTools:
    """Handlers for the filesystem tools, sharing ignore configuration."""

    def __init__(self, ignored_patterns: Iterable[str] = (), max_read_chars: int = MAX_READ_CHARS):
        self.ignored_patterns = list(ignored_patterns)
        self.max_read_chars = max_read_chars

    def _rules(self, root: Path) -> IgnoreRules:
        return IgnoreRules(root, self.ignored_patterns)

    def read_file(self, args: ReadFileArgs, ctx: ToolContext) -> ToolOutput:
        path = resolve_path(args.path)
        content = _read_text(path)
        lines = content.splitlines(keepends=True)
        total = len(lines)
        if args.start_line is None and args.end_line is None:
            text = content
            if len(text) > self.max_read_chars:
                text = (
                    text[: self.max_read_chars]
                    + f"\n... [file truncated at {self.max_read_chars} chars; use start_line/end_line to read more]"
                )
            return ToolOutput(text=text, metadata={"path": _display(path), "total_lines": total})

        start = args.start_line or 1
        end = min(args.end_line or total, total)
        if start > max(total, 1):
            raise InvalidArguments(f"start_line {start} is past the end of the file ({total} lines)")
        if end < start:
            raise InvalidArguments(f"end_line {end} is before start_line {start}")
        header = f"File: {_display(path)} (lines {start}-{end} of {total})"
        body = _number_lines(lines[start - 1:end], start)
        return ToolOutput(
            text=f"{header}\n{body}",
            metadata={"path": _display(path), "start_line": start, "end_line": end, "total_lines": total},
        )

    def write_file(self, args: WriteFileArgs, ctx: ToolContext) -> ToolOutput:
        path = resolve_path(args.path, self.ignored_patterns, for_write=True)
        if path.is_dir():
            raise ToolError(f"Path is a directory: {_display(path)}")
        path.parent.mkdir(parents=True, exist_ok=True)
        mode = "a" if args.append else "w"
        with open(path, mode, encoding="utf-8") as f:
            f.write(args.content)
        verb = "Appended" if args.append else "Wrote"
        logger.info("%s %d chars to %s", verb, len(args.content), path)
        return ToolOutput(
            text=f"{verb} {len(args.content)} characters to {_display(path)}",
            metadata={"path": _display(path), "chars": len(args.content)},
        )

    def replace_text(self, args: ReplaceTextArgs, ctx: ToolContext) -> ToolOutput:
        path = resolve_path(args.path, self.ignored_patterns, for_write=True)
        content = _read_text(path)
        count = content.count(args.old_text)
        if count == 0:
            raise ToolError(f"Text not found in {_display(path)}. Read the file and copy the exact text to replace.")
        if count > 1:
            raise ToolError(
                f"Text occurs {count} times in {_display(path)}. Include more surrounding lines so it is unique."
            )
        index = content.index(args.old_text)
        line = content.count("\n", 0, index) + 1
        path.write_text(content.replace(args.old_text, args.new_text, 1), encoding="utf-8")
        logger.info("Replaced text in %s at line %d", path, line)
        return ToolOutput(
            text=f"Replaced text in {_display(path)} at line {line}",
            metadata={"path": _display(path), "start_line": line},
        )

    def edit_file(self, args: EditFileArgs, ctx: ToolContext) -> ToolOutput:
        path = resolve_path(args.path, self.ignored_patterns, for_write=True)
        content = _read_text(path)
        lines = content.splitlines(keepends=True)
        if args.end_line < args.start_line:
            raise InvalidArguments(f"end_line {args.end_line} is before start_line {args.start_line}")
        if args.start_line > len(lines) + 1:
            raise InvalidArguments(f"start_line {args.start_line} is past the end of the file ({len(lines)} lines)")
        replacement = args.content
        if replacement and not replacement.endswith("\n"):
            replacement += "\n"
        end = min(args.end_line, len(lines))
        new_lines = lines[: args.start_line - 1] + [replacement] + lines[end:]
        path.write_text("".join(new_lines), encoding="utf-8")
        logger.info("Edited %s lines %d-%d", path, args.start_line, end)
        return ToolOutput(
            text=f"Replaced lines {args.start_line}-{end} of {_display(path)}",
            metadata={"path": _display(path), "start_line": args.start_line, "end_line": end},
        )

    def delete_file(self, args: DeleteFileArgs, ctx: ToolContext) -> str:
        path = resolve_path(args.path, self.ignored_patterns, for_write=True)
        if not path.exists():
            raise ToolError(f"File does not exist: {_display(path)}")
        if not path.is_file():
            raise ToolError(f"Not a file (directories are not deleted): {_display(path)}")
        path.unlink()
        logger.info("Deleted %s", path)
        return f"Deleted {_display(path)}"

    def list_directory(self, args: ListDirectoryArgs, ctx: ToolContext) -> ToolOutput:
        root = resolve_path(args.path)
        if not root.is_dir():
            raise ToolError(f"Not a directory: {_display(root)}")
        rules = self._rules(root)
        entries: list[str] = []
        truncated = False

        def visit(directory: Path, depth: int) -> None:
            nonlocal truncated
            try:
                children = sorted(directory.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
            except OSError as e:
                entries.append(f"{'  ' * depth}[unreadable: {e}]")
                return
            for child in children:
                ctx.token.raise_if_cancelled()
                if rules.should_ignore(child):
                    continue
                if len(entries) >= MAX_LIST_ENTRIES:
                    truncated = True
                    return
                is_dir = child.is_dir()
                entries.append(f"{'  ' * depth}{child.name}{'/' if is_dir else ''}")
                if is_dir and depth + 1 < args.max_depth:
                    visit(child, depth + 1)

        visit(root, 0)
        if not entries:
            return ToolOutput(text=f"{_display(root)} is empty", metadata={"entries": 0})
        text = "\n".join(entries)
        if truncated:
            text += f"\n... [listing truncated at {MAX_LIST_ENTRIES} entries]"
        return ToolOutput(text=text, metadata={"entries": len(entries), "truncated": truncated})

    def find_files(self, args: FindFilesArgs, ctx: ToolContext) -> ToolOutput:
        root = resolve_path(args.path)
        if not root.is_dir():
            raise ToolError(f"Not a directory: {_display(root)}")
        matches: list[str] = []
        for path in walk_files(root, self._rules(root)):
            ctx.token.raise_if_cancelled()
            rel = path.relative_to(root).as_posix()
            if fnmatch.fnmatch(path.name, args.pattern) or fnmatch.fnmatch(rel, args.pattern):
                matches.append(rel)
                if len(matches) >= MAX_FIND_RESULTS:
                    break
        if not matches:
            return ToolOutput(text=f"No files matching '{args.pattern}' under {_display(root)}", metadata={"count": 0})
        text = "\n".join(matches)
        if len(matches) >= MAX_FIND_RESULTS:
            text += f"\n... [stopped after {MAX_FIND_RESULTS} results]"
        return ToolOutput(text=text, metadata={"count": len(matches)})

    def grep_files(self, args: GrepFilesArgs, ctx: ToolContext) -> ToolOutput:
        try:
            regex = re.compile(args.pattern, re.IGNORECASE if args.ignore_case else 0)
        except re.error as e:
            raise InvalidArguments(f"Invalid regular expression {args.pattern!r}: {e}")
        target = resolve_path(args.path)
        if target.is_file():
            root, files = target.parent, iter([target])
        elif target.is_dir():
            root, files = target, walk_files(target, self._rules(target))
        else:
            raise ToolError(f"Path does not exist: {_display(target)}")

        lines_out: list[str] = []
        matches: list[dict] = []
        for path in files:
            ctx.token.raise_if_cancelled()
            if args.glob and not fnmatch.fnmatch(path.name, args.glob):
                continue
            try:
                if path.stat().st_size > MAX_FILE_BYTES:
                    continue
                with open(path, "r", encoding="utf-8") as f:
                    for number, line in enumerate(f, start=1):
                        if regex.search(line):
                            rel = path.relative_to(root).as_posix()
                            text = line.rstrip("\n")
                            if len(text) > MAX_LINE_CHARS:
                                text = text[:MAX_LINE_CHARS] + "..."
                            lines_out.append(f"{rel}:{number}: {text}")
                            matches.append({"path": rel, "line": number})
                            if len(matches) >= args.max_results:
                                break
            except (UnicodeDecodeError, OSError):
                continue
            if len(matches) >= args.max_results:
                break

        if not matches:
            return ToolOutput(text=f"No matches for '{args.pattern}'", metadata={"matches": []})
        text = "\n".join(lines_out)
        if len(matches) >= args.max_results:
            text += f"\n... [stopped after {args.max_results} matches]"
        return ToolOutput(text=text, metadata={"matches": matches})

    def find_symbol(self, args: FindSymbolArgs, ctx: ToolContext) -> ToolOutput:
        """Find where a function, class, type or Markdown header is defined (not referenced)."""
        root = resolve_path(args.path)
        if not root.is_dir():
            raise ToolError(f"Not a directory: {_display(root)}")
        wanted = args.file_extension.lstrip(".").lower() if args.file_extension else None
        if wanted is not None and wanted not in _DEFINITION_PATTERNS:
            raise InvalidArguments(
                f"Unsupported file_extension '{wanted}'. Supported: {', '.join(sorted(_DEFINITION_PATTERNS))}"
            )
        name = re.escape(args.query.strip())
        regexes = {ext: re.compile(pattern.replace("{name}", name)) for ext, pattern in _DEFINITION_PATTERNS.items()}

        lines_out: list[str] = []
        matches: list[dict] = []
        for path in walk_files(root, self._rules(root)):
            ctx.token.raise_if_cancelled()
            ext = path.suffix.lstrip(".").lower()
            regex = regexes.get(ext)
            if regex is None or (wanted is not None and ext != wanted):
                continue
            try:
                if path.stat().st_size > MAX_FILE_BYTES:
                    continue
                with open(path, "r", encoding="utf-8") as f:
                    for number, line in enumerate(f, start=1):
                        if regex.search(line):
                            rel = path.relative_to(root).as_posix()
                            lines_out.append(f"{rel}:{number}: {line.strip()[:MAX_LINE_CHARS]}")
                            matches.append({"path": rel, "line": number})
                            if len(matches) >= MAX_SYMBOL_RESULTS:
                                break
            except (UnicodeDecodeError, OSError):
                continue
            if len(matches) >= MAX_SYMBOL_RESULTS:
                break

        if not matches:
            return ToolOutput(text=f"No definitions found for symbol '{args.query}'", metadata={"matches": []})
        return ToolOutput(text="\n".join(lines_out), metadata={"matches": matches})


def _path_resource(args) -> set[str]:
    return {str(resolve_path(args.path))}


def register_filesystem_tools(
    registry: ToolRegistry,
    ignored_patterns: Iterable[str] = (),
    max_read_chars: int = MAX_READ_CHARS,
) -> FileTools:
    """Register the filesystem tools on ``registry``."""
    tools = FileTools(ignored_patterns, max_read_chars)
    read = frozenset({Capability.READ_FS})
    write = frozenset({Capability.READ_FS, Capability.WRITE_FS})
    specs = [
        ToolSpec(
            name="read_file",
            description="Read a text file. Pass start_line/end_line to read a numbered line range of a large file.",
            args_schema=ReadFileArgs,
            handler=tools.read_file,
            capabilities=read,
            resources=_path_resource,
        ),
        ToolSpec(
            name="write_file",
            description="Create or overwrite a file with the given content, or append to it.",
            args_schema=WriteFileArgs,
            handler=tools.write_file,
            capabilities=write,
            requires_confirmation=True,
            resources=_path_resource,
        ),
        ToolSpec(
            name="replace_text",
            description="Replace one exact, unique occurrence of old_text with new_text in a file.",
            args_schema=ReplaceTextArgs,
            handler=tools.replace_text,
            capabilities=write,
            requires_confirmation=True,
            resources=_path_resource,
        ),
        ToolSpec(
            name="edit_file",
            description="Replace an inclusive range of lines in a file with new content.",
            args_schema=EditFileArgs,
            handler=tools.edit_file,
            capabilities=write,
            requires_confirmation=True,
            resources=_path_resource,
        ),
        ToolSpec(
            name="delete_file",
            description="Delete a single file.",
            args_schema=DeleteFileArgs,
            handler=tools.delete_file,
            capabilities=write,
            requires_confirmation=True,
            resources=_path_resource,
        ),
        ToolSpec(
            name="list_directory",
            description="List a directory as an indented tree, skipping ignored paths.",
            args_schema=ListDirectoryArgs,
            handler=tools.list_directory,
            capabilities=read,
            resources=_path_resource,
        ),
        ToolSpec(
            name="find_files",
            description="Find files whose name or relative path matches a glob.",
            args_schema=FindFilesArgs,
            handler=tools.find_files,
            capabilities=read,
            resources=_path_resource,
        ),
        ToolSpec(
            name="grep_files",
            description="Search file contents with a regular expression. Returns path:line: text matches.",
            args_schema=GrepFilesArgs,
            handler=tools.grep_files,
            capabilities=read,
            resources=_path_resource,
        ),
        ToolSpec(
            name="find_symbol",
            description=(
                "Find where a symbol is DEFINED (not referenced): Python def/class, Rust fn/struct/trait/enum, "
                "Go func/type, JavaScript/TypeScript function/class, or a Markdown header."
            ),
            args_schema=FindSymbolArgs,
            handler=tools.find_symbol,
            capabilities=read,
            resources=_path_resource,
        ),
    ]
    for spec in specs:
        registry.register(spec)
    return tools


__all__ = ["FileTools", "register_filesystem_tools", "resolve_path"]
