"""CLI for building and inspecting the vector index.

Usage:
    python -m sidecar.rag build [--force] [--collection NAME] [--repo DIR]
    python -m sidecar.rag update [--collection NAME] [--repo DIR]
    python -m sidecar.rag stats [--collection NAME]
    python -m sidecar.rag search QUERY [-k N] [--collection NAME]
    python -m sidecar.rag watch [--debounce SECONDS]
"""

import argparse
import sys
import threading
import time
from pathlib import Path

from ..config import load_settings
from ..errors import SidecarError
from ..logging_config import get_logger, setup_logging
from ..tools.gitignore import IgnoreRules
from .engine import WORKSPACE_COLLECTION, RagEngine

logger = get_logger(__name__)


def _print_job(job) -> None:
    stats = job.stats()
    print(f"  State: {stats['state']}")
    print(f"  Files seen: {stats['files_seen']} ({stats['files_unchanged']} unchanged, {stats['files_removed']} removed)")
    print(f"  Chunks added: {stats['chunks_added']}")
    if stats["chunks_failed"]:
        print(f"  Chunks failed: {stats['chunks_failed']}")
    if job.finished_at is not None:
        print(f"  Time taken: {job.finished_at - job.started_at:.2f}s")
    if job.error:
        print(f"  Error: {job.error}")


def _root_of(engine: RagEngine, collection: str) -> Path:
    root = engine.get_collection(collection).root
    if root is None:
        raise SidecarError(f"Collection '{collection}' has no root directory to index")
    return root


def main(argv=None) -> int:
    """Main entry point for the index CLI."""
    parser = argparse.ArgumentParser(description="Build and inspect the sidecar vector index")
    parser.add_argument("--config", "-c", default=None, help="Config file (JSON)")
    parser.add_argument("--repo", default=".", help="Root of the workspace collection (default: current directory)")
    parser.add_argument("--collection", default=WORKSPACE_COLLECTION, help="Collection name (default: workspace)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")
    build_parser = subparsers.add_parser("build", help="Index the collection")
    build_parser.add_argument("--force", action="store_true", help="Drop the collection first")
    subparsers.add_parser("update", help="Re-index files changed since the last run")
    subparsers.add_parser("stats", help="Show collection statistics")
    search_parser = subparsers.add_parser("search", help="Query the collection")
    search_parser.add_argument("query")
    search_parser.add_argument("-k", type=int, default=5, help="Number of results (default: 5)")
    watch_parser = subparsers.add_parser("watch", help="Re-index when files change")
    watch_parser.add_argument("--debounce", type=float, default=10, help="Seconds of quiet before updating (default: 10)")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    try:
        settings = load_settings(args.config)
        setup_logging(level="DEBUG" if args.verbose else settings.log_level, log_file=settings.log_file)
        engine = RagEngine.from_settings(settings, workspace=Path(args.repo).expanduser().resolve())

        if args.command in ("build", "update"):
            root = _root_of(engine, args.collection)
            if args.command == "build" and args.force:
                engine.store.drop(args.collection)
            print(f"Indexing {root} into '{args.collection}'")
            job = engine.indexer.index_now(args.collection, root)
            _print_job(job)
            return 0 if job.error is None else 1

        if args.command == "stats":
            stats = engine.stats(args.collection)
            print(f"Collection: {stats['collection']}")
            print(f"  Root: {stats['root'] or '-'}")
            print(f"  Entries: {stats['entries']}")
            print(f"  Files: {len(engine.store.collection(args.collection).sources())}")
            return 0

        if args.command == "search":
            for rank, hit in enumerate(engine.semantic_search(args.collection, args.query, args.k), 1):
                meta = hit.entry.metadata
                where = meta.get("path", hit.entry.source_id)
                if "start_line" in meta:
                    where = f"{where}:{meta['start_line']}-{meta['end_line']}"
                print(f"[{rank}] {where} ({hit.score:.3f})")
                print("    " + hit.entry.text.strip().replace("\n", "\n    ")[:400])
            return 0

        if args.command == "watch":
            root = _root_of(engine, args.collection)
            return watch_files(engine, args.collection, root, settings.index_path(), args.debounce)

    except KeyboardInterrupt:
        print("\nStopped")
        return 0
    except SidecarError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


def watch_files(engine: RagEngine, collection: str, root: Path, index_dir: Path, debounce_seconds: float = 10) -> int:
    """Re-index ``collection`` after files under ``root`` stop changing for ``debounce_seconds``."""
    from watchdog.events import FileSystemEventHandler
    from watchdog.observers import Observer

    rules = IgnoreRules(root, engine.indexer.ignored_patterns)
    index_dir = index_dir.resolve()
    lock = threading.Lock()
    pending: set[str] = set()
    last_change = 0.0

    class IndexUpdateHandler(FileSystemEventHandler):
        def on_any_event(self, event):
            nonlocal last_change
            if event.is_directory:
                return
            path = Path(event.src_path)
            if path.is_relative_to(index_dir) or rules.should_ignore(path, is_dir=False):
                return
            with lock:
                pending.add(str(path))
                last_change = time.time()

    observer = Observer()
    observer.schedule(IndexUpdateHandler(), str(root), recursive=True)
    observer.start()
    print(f"Watching {root} (debounce {debounce_seconds:g}s). Press Ctrl+C to stop")

    try:
        while True:
            time.sleep(1)
            with lock:
                due = bool(pending) and time.time() - last_change >= debounce_seconds
                changed = len(pending) if due else 0
                if due:
                    pending.clear()
            if not due:
                continue
            print(f"Updating index ({changed} file(s) changed)...")
            job = engine.indexer.index_now(collection, root)
            if job.error:
                print(f"Update failed: {job.error}")
            else:
                print(f"Index updated: {job.files_indexed} files, {job.chunks_added} chunks")
    except KeyboardInterrupt:
        return 0
    finally:
        observer.stop()
        observer.join()


if __name__ == "__main__":
    sys.exit(main())
