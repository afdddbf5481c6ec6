"""Unit tests for the background indexer."""

import os
import threading
import time

import pytest

from sidecar.rag.indexer import BackgroundIndexer, JobState, ProgressThrottle, file_source_id
from sidecar.rag.vectorstore import VectorStore
from sidecar.state.notifications import NotificationKind
from sidecar.testing.fixtures import HashEmbedder


class SlowEmbedder(HashEmbedder):
    """Blocks on every call until released."""

    def __init__(self):
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def __call__(self, text):
        self.started.set()
        self.release.wait(5.0)
        return super().__call__(text)


@pytest.fixture
def files(workspace_root):
    (workspace_root / "pkg").mkdir()
    (workspace_root / "pkg" / "auth.py").write_text("def login(user, password):\n    return check(user)\n")
    (workspace_root / "pkg" / "db.py").write_text("def connect(url):\n    return Engine(url)\n")
    (workspace_root / "README.md").write_text("# Project\nAuthentication and database helpers.\n")
    (workspace_root / ".git").mkdir()
    (workspace_root / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    return workspace_root


@pytest.fixture
def indexer(tmp_path, bus, embedder):
    return BackgroundIndexer(
        VectorStore(tmp_path / "index"), embedder, bus=bus, ignored_patterns=[".git"], progress_interval=0.0
    )


class TestProgressThrottle:

    def test_first_event_passes(self):
        throttle = ProgressThrottle(60.0)
        assert throttle.ready()
        assert not throttle.ready()


class TestBackgroundIndexer:

    def test_index_now_counts(self, indexer, files):
        job = indexer.index_now("workspace", files)
        assert job.state == JobState.COMPLETED
        assert job.files_seen == 3
        assert job.files_indexed == 3
        assert job.chunks_added == 3
        assert job.files_remaining == 0
        sources = indexer.store.collection("workspace").sources()
        assert file_source_id(files / ".git" / "HEAD") not in sources
        assert file_source_id(files / "pkg" / "auth.py") in sources

    def test_notifications_in_order(self, indexer, files, bus):
        sub = bus.subscribe()
        indexer.index_now("workspace", files)
        kinds = [n.kind for n in sub.drain()]
        assert kinds[0] == NotificationKind.INDEXING_STARTED
        assert kinds[-1] == NotificationKind.INDEXING_COMPLETE
        assert NotificationKind.INDEXING_PROGRESS in kinds
        complete = bus.latest()
        assert complete.source == "workspace"
        assert complete.data["chunks_added"] == 3

    def test_unchanged_files_skipped(self, indexer, files):
        indexer.index_now("workspace", files)
        job = indexer.index_now("workspace", files)
        assert job.files_unchanged == 3
        assert job.chunks_added == 0
        assert job.expected_files == 3

    def test_modified_file_reindexed(self, indexer, files):
        indexer.index_now("workspace", files)
        target = files / "pkg" / "db.py"
        target.write_text("def connect(url, pool=5):\n    return Engine(url, pool)\n")
        stat = target.stat()
        os.utime(target, (stat.st_atime, stat.st_mtime + 10))
        job = indexer.index_now("workspace", files)
        assert job.files_indexed == 1
        index = indexer.store.collection("workspace")
        assert index.count() == 3
        [hit] = index.query(indexer.embedder("connect url pool"), k=1)
        assert "pool=5" in hit.entry.text

    def test_deleted_file_removed(self, indexer, files):
        indexer.index_now("workspace", files)
        (files / "README.md").unlink()
        job = indexer.index_now("workspace", files)
        assert job.files_removed == 1
        assert indexer.store.collection("workspace").count() == 2

    def test_failed_chunks_counted_and_skipped(self, tmp_path, files):
        embedder = HashEmbedder(fail_on="password")
        indexer = BackgroundIndexer(VectorStore(tmp_path / "index2"), embedder, ignored_patterns=[".git"])
        job = indexer.index_now("workspace", files)
        assert job.state == JobState.COMPLETED
        assert job.chunks_failed == 1
        assert job.chunks_added == 2

    def test_missing_root_fails(self, indexer, tmp_path, bus):
        job = indexer.index_now("workspace", tmp_path / "nope")
        assert job.state == JobState.FAILED
        assert "not a directory" in job.error
        assert bus.latest().kind == NotificationKind.INDEXING_FAILED

    def test_background_start_and_join(self, tmp_path, files, bus):
        embedder = SlowEmbedder()
        indexer = BackgroundIndexer(VectorStore(tmp_path / "index"), embedder, bus=bus, ignored_patterns=[".git"])
        job = indexer.start("workspace", files)
        assert embedder.started.wait(5.0)
        assert indexer.is_indexing("workspace")
        assert indexer.start("workspace", files) is job
        assert indexer.active_jobs() == [job]
        embedder.release.set()
        assert job.wait(10.0)
        assert job.state == JobState.COMPLETED
        assert not indexer.is_indexing("workspace")

    def test_cancel_keeps_existing_entries(self, tmp_path, files, bus):
        store = VectorStore(tmp_path / "index")
        BackgroundIndexer(store, HashEmbedder(), ignored_patterns=[".git"]).index_now("workspace", files)
        (files / "README.md").unlink()
        (files / "new.py").write_text("print('new')\n")

        embedder = SlowEmbedder()
        indexer = BackgroundIndexer(store, embedder, bus=bus, ignored_patterns=[".git"])
        job = indexer.start("workspace", files)
        assert embedder.started.wait(5.0)
        assert indexer.cancel("workspace")
        embedder.release.set()
        assert job.wait(10.0)
        assert job.state == JobState.CANCELLED
        assert job.files_removed == 0
        assert bus.latest().kind == NotificationKind.INDEXING_CANCELLED
        assert not indexer.cancel("workspace")

    def test_cancel_all(self, tmp_path, files):
        embedder = SlowEmbedder()
        indexer = BackgroundIndexer(VectorStore(tmp_path / "index"), embedder, ignored_patterns=[".git"])
        jobs = [indexer.start("a", files), indexer.start("b", files)]
        assert embedder.started.wait(5.0)
        threading.Timer(0.1, embedder.release.set).start()
        start = time.monotonic()
        indexer.cancel_all(timeout=10.0)
        assert time.monotonic() - start < 10.0
        assert all(j.done for j in jobs)

    def test_index_now_joins_live_job(self, tmp_path, files):
        embedder = SlowEmbedder()
        indexer = BackgroundIndexer(VectorStore(tmp_path / "index"), embedder, ignored_patterns=[".git"])
        job = indexer.start("workspace", files)
        assert embedder.started.wait(5.0)

        joined = {}
        waiter = threading.Thread(target=lambda: joined.setdefault("job", indexer.index_now("workspace", files)))
        waiter.start()
        time.sleep(0.2)
        assert indexer.active_jobs() == [job]
        assert waiter.is_alive()

        embedder.release.set()
        waiter.join(10.0)
        assert joined["job"] is job
        assert job.state == JobState.COMPLETED
        assert indexer.get_job("workspace") is job
