"""Wiring of all components for one sidecar session, and its shutdown order."""

import atexit
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .agent.orchestrator import Orchestrator
from .config import Settings
from .llm import ChatModelClient, ModelClient
from .logging_config import get_logger
from .persistence import SessionStore
from .process import ProcessSupervisor
from .rag.engine import WEB_COLLECTION, RagEngine
from .state.conversation import Transcript
from .state.notifications import NotificationBus
from .state.snapshots import AgentState, RenderSnapshot
from .tools.filesystem import register_filesystem_tools
from .tools.python import register_python_tools
from .tools.rag import register_rag_tools
from .tools.registry import Dispatcher, ToolRegistry, build_dispatcher
from .tools.system import register_system_tools
from .tools.web import register_web_tools
from .workspace import get_workspace_root

logger = get_logger(__name__)


def build_registry(
    settings: Settings,
    supervisor: ProcessSupervisor,
    engine: Optional[RagEngine] = None,
) -> ToolRegistry:
    """Register every tool the agent can call."""
    registry = ToolRegistry()
    register_filesystem_tools(registry, settings.ignored_patterns)
    register_system_tools(
        registry,
        supervisor,
        settings.allowed_commands,
        default_timeout=settings.command_timeout,
        grace_period=settings.process_grace_period,
    )
    register_python_tools(
        registry,
        supervisor,
        settings.python_venv_path(),
        auto_install=settings.python_auto_install,
        default_timeout=settings.command_timeout,
        grace_period=settings.process_grace_period,
    )
    ingest = (lambda text: engine.remember(WEB_COLLECTION, text)) if engine is not None else None
    register_web_tools(registry, settings.search_url, ingest=ingest)
    if engine is not None:
        register_rag_tools(registry, engine)
    return registry


@dataclass
class Runtime:
    settings: Settings
    bus: NotificationBus
    supervisor: ProcessSupervisor
    engine: RagEngine
    registry: ToolRegistry
    dispatcher: Dispatcher
    orchestrator: Orchestrator
    sessions: SessionStore
    session_name: Optional[str] = None
    _closed: bool = False
    _saved_turns: int = -1

    def save_session(self) -> None:
        if self.session_name:
            self.sessions.save(self.session_name, list(self.orchestrator.transcript.turns))

    def _on_snapshot(self, snapshot: RenderSnapshot) -> None:
        if snapshot.state != AgentState.IDLE or not self.session_name:
            return
        if len(snapshot.turns) != self._saved_turns:
            self._saved_turns = len(snapshot.turns)
            try:
                self.save_session()
            except OSError as e:
                logger.error("Could not save session %s: %s", self.session_name, e)

    def close(self) -> None:
        """Shut down in order: agent loop, indexing, session, then every child process."""
        if self._closed:
            return
        self._closed = True
        try:
            self.orchestrator.close()
            self.engine.indexer.cancel_all()
            try:
                self.save_session()
            except OSError as e:
                logger.error("Could not save session %s: %s", self.session_name, e)
        finally:
            self.supervisor.terminate_all()


def build_runtime(
    settings: Settings,
    session_name: Optional[str] = None,
    model: Optional[ModelClient] = None,
    engine: Optional[RagEngine] = None,
    workspace: Optional[Path] = None,
) -> Runtime:
    """Build every component from settings.

    ``model`` and ``engine`` can be injected, e.g. to run without a model
    endpoint or with a test embedder.
    """
    bus = NotificationBus()
    supervisor = ProcessSupervisor(settings.max_output_bytes, settings.process_grace_period)
    # atexit runs handlers last-in first-out; registering early makes this one of the last.
    atexit.register(supervisor.terminate_all)

    if engine is None:
        engine = RagEngine.from_settings(settings, bus=bus, workspace=workspace or get_workspace_root())
    registry = build_registry(settings, supervisor, engine)
    dispatcher = build_dispatcher(registry, settings, bus=bus)

    sessions = SessionStore(settings.sessions_path())
    transcript = None
    if session_name:
        transcript = sessions.load(session_name)
        if transcript is not None:
            logger.info("Loaded session %s (%d turns)", session_name, len(transcript))
            closed = transcript.close_unanswered_calls()
            if closed:
                logger.warning("Session %s ended mid-dispatch; closed %d unanswered tool calls", session_name, closed)

    orchestrator = Orchestrator(
        model or ChatModelClient.from_settings(settings),
        registry,
        dispatcher,
        bus=bus,
        transcript=transcript or Transcript(),
        max_tool_rounds=settings.max_tool_rounds,
        active_processes=lambda: len(supervisor.list_active()),
    )
    runtime = Runtime(
        settings=settings,
        bus=bus,
        supervisor=supervisor,
        engine=engine,
        registry=registry,
        dispatcher=dispatcher,
        orchestrator=orchestrator,
        sessions=sessions,
        session_name=session_name,
    )
    orchestrator.channel.subscribe(runtime._on_snapshot)
    orchestrator.start_listening()
    return runtime
