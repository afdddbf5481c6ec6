"""Background indexing of a directory into a collection.

Each collection has at most one live IndexingJob. A job walks its root
lazily, skips files whose modification time matches what is already indexed,
replaces the entries of changed files, and removes entries of files that no
longer exist. Cancellation is checked between files, so a file is always
either fully re-indexed or left as it was.
"""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from ..cancellation import CancellationToken
from ..errors import EmbeddingFailed
from ..logging_config import get_logger
from ..state.notifications import NotificationBus, NotificationKind
from ..tools.gitignore import IgnoreRules, walk_files
from .chunker import CHUNK_LINES, CHUNK_OVERLAP, chunk_file
from .embeddings import Embedder
from .vectorstore import CollectionIndex, IndexEntry, VectorStore

logger = get_logger(__name__)

FILE_SOURCE_PREFIX = "file:"


def file_source_id(path: Path) -> str:
    return f"{FILE_SOURCE_PREFIX}{Path(path).resolve()}"


class JobState(str, Enum):
    """Lifecycle of an indexing job."""
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class IndexingJob:
    """Progress and control handle for one indexing run."""
    collection: str
    root: Path
    token: CancellationToken = field(default_factory=CancellationToken)
    state: JobState = JobState.RUNNING
    files_seen: int = 0
    files_indexed: int = 0
    files_unchanged: int = 0
    files_removed: int = 0
    chunks_added: int = 0
    chunks_failed: int = 0
    expected_files: Optional[int] = None  # From the previous run, if any
    error: Optional[str] = None
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    _done: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def files_remaining(self) -> Optional[int]:
        """Estimate based on the previous run; None when unknown."""
        if self.done:
            return 0
        if self.expected_files is None:
            return None
        return max(self.expected_files - self.files_seen, 0)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def cancel(self) -> None:
        self.token.cancel("indexing cancelled")

    def stats(self) -> dict:
        return {
            "collection": self.collection,
            "root": str(self.root),
            "state": self.state.value,
            "files_seen": self.files_seen,
            "files_remaining": self.files_remaining,
            "files_indexed": self.files_indexed,
            "files_unchanged": self.files_unchanged,
            "files_removed": self.files_removed,
            "chunks_added": self.chunks_added,
            "chunks_failed": self.chunks_failed,
        }


class ProgressThrottle:
    """Lets an event through at most once per ``interval`` seconds."""

    def __init__(self, interval: float):
        self.interval = interval
        self._last = 0.0

    def ready(self) -> bool:
        now = time.monotonic()
        if now - self._last >= self.interval:
            self._last = now
            return True
        return False


class BackgroundIndexer:
    """Runs indexing jobs on their own threads.

    Args:
        store: Vector store holding the collections.
        embedder: Text to vector function.
        bus: Notification bus for start, progress and completion events.
        ignored_patterns: Name patterns skipped during the walk.
        chunk_lines: Lines per chunk.
        chunk_overlap: Lines shared by consecutive chunks.
        progress_interval: Minimum seconds between progress notifications.
    """

    def __init__(
        self,
        store: VectorStore,
        embedder: Embedder,
        bus: Optional[NotificationBus] = None,
        ignored_patterns: Iterable[str] = (),
        chunk_lines: int = CHUNK_LINES,
        chunk_overlap: int = CHUNK_OVERLAP,
        progress_interval: float = 1.0,
    ):
        self.store = store
        self.embedder = embedder
        self.bus = bus
        self.ignored_patterns = list(ignored_patterns)
        self.chunk_lines = chunk_lines
        self.chunk_overlap = chunk_overlap
        self.progress_interval = progress_interval
        self._lock = threading.Lock()
        self._jobs: dict[str, IndexingJob] = {}

    def start(self, collection: str, root: str | Path) -> IndexingJob:
        """Start indexing ``root`` into ``collection``, or join the live job for it."""
        with self._lock:
            live = self._jobs.get(collection)
            if live is not None and not live.done:
                logger.debug("Joining live indexing job for %s", collection)
                return live
            job = IndexingJob(collection=collection, root=Path(root).expanduser().resolve())
            self._jobs[collection] = job
            thread = threading.Thread(target=self._run, args=(job,), name=f"indexer-{collection}", daemon=True)
            thread.start()
        return job

    def get_job(self, collection: str) -> Optional[IndexingJob]:
        with self._lock:
            return self._jobs.get(collection)

    def is_indexing(self, collection: str) -> bool:
        job = self.get_job(collection)
        return job is not None and not job.done

    def active_jobs(self) -> list[IndexingJob]:
        with self._lock:
            return [j for j in self._jobs.values() if not j.done]

    def cancel(self, collection: str) -> bool:
        job = self.get_job(collection)
        if job is None or job.done:
            return False
        job.cancel()
        return True

    def cancel_all(self, timeout: Optional[float] = 5.0) -> None:
        """Cancel every live job and wait for them to stop."""
        jobs = self.active_jobs()
        for job in jobs:
            job.cancel()
        for job in jobs:
            if not job.wait(timeout):
                logger.warning("Indexing job for %s did not stop within %ss", job.collection, timeout)

    def index_now(self, collection: str, root: str | Path) -> IndexingJob:
        """Run a job on the calling thread (used by the index CLI).

        When a job for ``collection`` is already live, waits for that job and
        returns it instead of starting a second one.
        """
        with self._lock:
            live = self._jobs.get(collection)
            if live is None or live.done:
                live = None
                job = IndexingJob(collection=collection, root=Path(root).expanduser().resolve())
                self._jobs[collection] = job
        if live is not None:
            logger.info("Waiting for the live indexing job for %s", collection)
            live.wait()
            return live
        self._run(job)
        return job

    def _notify(self, kind: NotificationKind, job: IndexingJob, message: str) -> None:
        if self.bus is not None:
            self.bus.notify(kind, message, source=job.collection, **job.stats())

    def _run(self, job: IndexingJob) -> None:
        index = self.store.collection(job.collection)
        throttle = ProgressThrottle(self.progress_interval)
        logger.info("Indexing %s into collection %s", job.root, job.collection)
        self._notify(NotificationKind.INDEXING_STARTED, job, f"Started indexing '{job.collection}'")
        try:
            if not job.root.is_dir():
                raise FileNotFoundError(f"Collection root is not a directory: {job.root}")
            known = {
                source: meta
                for source, meta in index.sources().items()
                if source.startswith(FILE_SOURCE_PREFIX)
            }
            if known:
                job.expected_files = len(known)
            seen: set[str] = set()
            rules = IgnoreRules(job.root, self.ignored_patterns)
            for path in walk_files(job.root, rules):
                if job.token.is_cancelled:
                    break
                job.files_seen += 1
                source_id = file_source_id(path)
                seen.add(source_id)
                self._index_file(job, index, path, source_id, known.get(source_id))
                if throttle.ready():
                    self._notify(
                        NotificationKind.INDEXING_PROGRESS,
                        job,
                        f"Indexing '{job.collection}': {job.files_seen} files, {job.chunks_added} chunks",
                    )

            if job.token.is_cancelled:
                job.state = JobState.CANCELLED
                self._notify(
                    NotificationKind.INDEXING_CANCELLED,
                    job,
                    f"Indexing '{job.collection}' cancelled after {job.files_seen} files",
                )
                return

            for source_id in known.keys() - seen:
                index.remove_by_source(source_id)
                job.files_removed += 1

            job.state = JobState.COMPLETED
            logger.info(
                "Indexed %s: %d files (%d unchanged, %d removed), %d chunks added",
                job.collection, job.files_seen, job.files_unchanged, job.files_removed, job.chunks_added,
            )
            self._notify(
                NotificationKind.INDEXING_COMPLETE,
                job,
                f"Completed indexing '{job.collection}': {job.chunks_added} chunks added.",
            )
        except Exception as e:
            job.state = JobState.FAILED
            job.error = str(e)
            logger.exception("Indexing %s failed", job.collection)
            self._notify(NotificationKind.INDEXING_FAILED, job, f"Indexing '{job.collection}' failed: {e}")
        finally:
            job.finished_at = time.time()
            job._done.set()

    def _index_file(
        self,
        job: IndexingJob,
        index: CollectionIndex,
        path: Path,
        source_id: str,
        previous: Optional[dict],
    ) -> None:
        try:
            mtime = path.stat().st_mtime
        except OSError as e:
            logger.warning("Could not stat %s: %s", path, e)
            return
        if previous is not None and previous.get("mtime") == mtime:
            job.files_unchanged += 1
            return

        entries = []
        for chunk in chunk_file(path, self.chunk_lines, self.chunk_overlap):
            try:
                vector = self.embedder(chunk.content)
            except EmbeddingFailed as e:
                job.chunks_failed += 1
                logger.warning("Skipping chunk %s:%d: %s", path, chunk.start_line, e)
                continue
            entries.append(
                IndexEntry(
                    entry_id=f"{source_id}#{chunk.offset}",
                    source_id=source_id,
                    vector=tuple(vector),
                    text=chunk.content,
                    metadata={
                        "path": str(path),
                        "start_line": chunk.start_line,
                        "end_line": chunk.end_line,
                        "mtime": mtime,
                    },
                )
            )
        index.replace_source(source_id, entries)
        job.files_indexed += 1
        job.chunks_added += len(entries)
