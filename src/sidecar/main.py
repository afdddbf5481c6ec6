#!/usr/bin/env python3
"""CLI entry point for the sidecar terminal agent."""

import argparse
import signal
import sys
from pathlib import Path
from typing import Optional

from .config import load_settings
from .errors import ConfigError, SidecarError
from .health import check_services, format_report
from .logging_config import get_logger, setup_logging
from .persistence import SessionStore
from .runtime import Runtime, build_runtime
from .ui.console import ConsoleUI
from .workspace import get_workspace_root, set_workspace_root

logger = get_logger(__name__)

DEFAULT_LOG_FILE = "~/.local/state/sidecar/sidecar.log"

# Module-level so the signal handler can raise and we can restore in finally
_previous_signal_handlers: dict[int, object] = {}


def _termination_handler(signum: int, frame: object) -> None:
    """Handle SIGINT/SIGTERM by raising KeyboardInterrupt for clean shutdown."""
    logger.info("Received signal %s; shutting down.", signum)
    raise KeyboardInterrupt()


def _install_signal_handlers() -> None:
    _previous_signal_handlers.clear()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            _previous_signal_handlers[sig] = signal.signal(sig, _termination_handler)
        except (ValueError, OSError):
            pass  # not the main thread, or signal unavailable


def _restore_signal_handlers() -> None:
    for sig, old in _previous_signal_handlers.items():
        try:
            signal.signal(sig, old)
        except (ValueError, OSError):
            pass
    _previous_signal_handlers.clear()


def _decline_without_terminal(request) -> bool:
    logger.warning("Declined %s: confirmation needs an interactive terminal", request.name)
    return False


def run_once(runtime: Runtime, prompt: str, color: Optional[bool] = None) -> int:
    """Run a single prompt, printing turns as they arrive."""
    console = ConsoleUI(color=color)
    if runtime.settings.confirm_tools:
        runtime.dispatcher.confirm = console.confirm_tool if sys.stdin.isatty() else _decline_without_terminal
    console.start_from(len(runtime.orchestrator.transcript))
    runtime.orchestrator.channel.subscribe(console.on_snapshot)
    try:
        runtime.orchestrator.run_turn(prompt)
    except KeyboardInterrupt:
        runtime.orchestrator.cancel()
        runtime.orchestrator.wait_idle(timeout=10.0)
        return 130
    finally:
        runtime.orchestrator.channel.unsubscribe(console.on_snapshot)
    # Let the delivery thread print the final snapshot.
    runtime.orchestrator.channel.flush(timeout=2.0)
    return 0


def run_repl(runtime: Runtime, color: Optional[bool] = None) -> int:
    """Line-based loop. Ctrl+C cancels a running turn; at the prompt it exits."""
    console = ConsoleUI(color=color)
    if runtime.settings.confirm_tools:
        runtime.dispatcher.confirm = console.confirm_tool
    console.start_from(len(runtime.orchestrator.transcript))
    runtime.orchestrator.channel.subscribe(console.on_snapshot)
    print("sidecar ready. Ctrl+C cancels a running turn, /quit exits.", flush=True)
    try:
        while True:
            try:
                text = input("> ").strip()
            except EOFError:
                return 0
            if not text:
                continue
            if text in ("/quit", "/exit"):
                return 0
            runtime.orchestrator.submit(text)
            try:
                runtime.orchestrator.wait_idle()
            except KeyboardInterrupt:
                runtime.orchestrator.cancel()
                runtime.orchestrator.wait_idle(timeout=10.0)
            runtime.orchestrator.channel.flush(timeout=2.0)
    except KeyboardInterrupt:
        return 0
    finally:
        runtime.orchestrator.channel.unsubscribe(console.on_snapshot)


def run_tui(runtime: Runtime) -> int:
    from .ui.app import SidecarApp

    app = SidecarApp(runtime.orchestrator, title=f"sidecar - {get_workspace_root()}")
    if runtime.settings.confirm_tools:
        runtime.dispatcher.confirm = app.confirm_tool
    app.run()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Terminal coding agent backed by a local model",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  sidecar                          full-screen session in the current directory
  sidecar --plain --session work   line-based session saved as 'work'
  sidecar -p "what does main.py do?"
  sidecar --doctor
        """,
    )
    parser.add_argument("--config", "-c", default=None, help="Config file (JSON)")
    parser.add_argument("--workspace", "-w", default=None, help="Workspace root (default: current directory)")
    parser.add_argument("--session", "-s", default=None, help="Load and save the conversation under this name")
    parser.add_argument("--prompt", "-p", default=None, help="Run one prompt and exit")
    parser.add_argument("--plain", action="store_true", help="Line-based console instead of the full-screen UI")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--doctor", action="store_true", help="Check the model and search endpoints and exit")
    parser.add_argument("--index", metavar="COLLECTION", default=None, help="Index a collection, then exit")
    parser.add_argument("--list-sessions", action="store_true", help="List saved sessions and exit")
    parser.add_argument("--delete-session", metavar="NAME", default=None, help="Delete a saved session and exit")
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    full_screen = not (
        args.prompt is not None or args.plain or args.doctor or args.index is not None
        or args.list_sessions or args.delete_session
    )
    log_level = "DEBUG" if args.verbose else settings.log_level
    log_file = settings.log_file or (DEFAULT_LOG_FILE if full_screen else None)
    setup_logging(
        level=log_level,
        log_file=str(Path(log_file).expanduser()) if log_file else None,
        console=not full_screen,
    )

    workspace = Path(args.workspace or Path.cwd()).expanduser().resolve()
    if not workspace.is_dir():
        logger.error("Workspace does not exist: %s", workspace)
        return 1
    set_workspace_root(workspace)

    if args.list_sessions or args.delete_session:
        sessions = SessionStore(settings.sessions_path())
        if args.delete_session:
            try:
                deleted = sessions.delete(args.delete_session)
            except ValueError as e:
                print(e, file=sys.stderr)
                return 1
            if not deleted:
                print(f"No session named '{args.delete_session}'", file=sys.stderr)
                return 1
            return 0
        for name in sessions.list_sessions():
            print(name)
        return 0

    if args.doctor:
        statuses = check_services(settings)
        print(format_report(statuses))
        return 1 if any(s.critical and not s.ok for s in statuses) else 0

    runtime = None
    _install_signal_handlers()
    try:
        runtime = build_runtime(settings, session_name=args.session, workspace=workspace)
        if args.index is not None:
            job = runtime.engine.refresh(args.index)
            job.wait()
            print(f"{args.index}: {job.stats()}")
            return 0 if job.error is None else 1
        if args.prompt is not None:
            return run_once(runtime, args.prompt)
        if args.plain:
            return run_repl(runtime)
        return run_tui(runtime)
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130
    except (ValueError, SidecarError) as e:
        # Corrupt session file or unknown collection
        logger.error("%s", e)
        return 1
    finally:
        if runtime is not None:
            runtime.close()
        _restore_signal_handlers()


if __name__ == "__main__":
    sys.exit(main())
