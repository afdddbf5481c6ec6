"""Split text files into overlapping line windows for embedding."""

from dataclasses import asdict, dataclass
from pathlib import Path

from ..logging_config import get_logger

logger = get_logger(__name__)

CHUNK_LINES = 30
CHUNK_OVERLAP = 5
MIN_CHUNK_CHARS = 50
MAX_FILE_BYTES = 1_000_000


@dataclass
class Chunk:
    """A window of lines from one file."""

    path: str
    start_line: int
    end_line: int
    content: str

    def to_dict(self) -> dict:
        return asdict(self)

    @property
    def offset(self) -> int:
        return self.start_line - 1


def chunk_text(
    path: str,
    content: str,
    chunk_lines: int = CHUNK_LINES,
    overlap: int = CHUNK_OVERLAP,
    min_chars: int = MIN_CHUNK_CHARS,
) -> list[Chunk]:
    """Split ``content`` into windows of ``chunk_lines`` lines, each sharing
    ``overlap`` lines with the previous one.

    Windows with fewer than ``min_chars`` non-blank characters are dropped,
    except when the whole file fits in a single window.
    """
    if overlap >= chunk_lines:
        raise ValueError("overlap must be smaller than chunk_lines")
    lines = content.splitlines()
    if not lines:
        return []

    step = chunk_lines - overlap
    chunks: list[Chunk] = []
    start = 0
    while start < len(lines):
        end = min(start + chunk_lines, len(lines))
        text = "\n".join(lines[start:end])
        chunks.append(Chunk(path=path, start_line=start + 1, end_line=end, content=text))
        if end == len(lines):
            break
        start += step

    if len(chunks) == 1:
        return chunks if chunks[0].content.strip() else []
    return [c for c in chunks if len(c.content.strip()) >= min_chars]


def chunk_file(
    path: Path,
    chunk_lines: int = CHUNK_LINES,
    overlap: int = CHUNK_OVERLAP,
    max_bytes: int = MAX_FILE_BYTES,
) -> list[Chunk]:
    """Read and chunk a file. Binary, unreadable or oversized files yield no chunks."""
    try:
        if path.stat().st_size > max_bytes:
            logger.debug("Skipping large file %s", path)
            return []
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        logger.debug("Skipping non-text file %s", path)
        return []
    except OSError as e:
        logger.warning("Could not read %s: %s", path, e)
        return []
    return chunk_text(str(path), content, chunk_lines, overlap)
