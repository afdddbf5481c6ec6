"""Full-screen terminal front end built on Textual."""

import threading
from typing import Optional

from rich.markdown import Markdown
from rich.text import Text
from textual.app import App, ComposeResult
from textual.containers import Vertical
from textual.reactive import reactive
from textual.screen import ModalScreen
from textual.widgets import Input, RichLog, Static

from ..agent.orchestrator import AgentBusy, Orchestrator
from ..logging_config import get_logger
from ..state.conversation import Role, ToolCallRequest, Turn
from ..state.notifications import NotificationKind
from ..state.snapshots import AgentState, RenderSnapshot
from .console import TOOL_PREVIEW_LINES, args_repr

logger = get_logger(__name__)

_STATE_LABELS = {
    AgentState.IDLE: "[green]ready[/green]",
    AgentState.AWAITING_MODEL: "[yellow]thinking...[/yellow]",
    AgentState.DISPATCHING_TOOLS: "[yellow]running tools...[/yellow]",
    AgentState.CANCELLING: "[red]cancelling...[/red]",
}


class StatusBar(Static):
    """Agent state, latest notification and running process count."""

    state: reactive[AgentState] = reactive(AgentState.IDLE)
    notification: reactive[str] = reactive("")
    processes: reactive[int] = reactive(0)

    def render(self) -> str:
        parts = [_STATE_LABELS[self.state]]
        if self.processes:
            parts.append(f"{self.processes} process{'es' if self.processes != 1 else ''} running")
        if self.notification:
            parts.append(f"[dim]{self.notification}[/dim]")
        return "  |  ".join(parts)


class ConfirmScreen(ModalScreen[bool]):
    """Asks whether a tool call may run. ``y`` allows; ``n`` or Escape denies."""

    DEFAULT_CSS = """
    ConfirmScreen {
        align: center middle;
    }

    #confirm-dialog {
        width: 80%;
        max-height: 60%;
        border: thick $warning;
        background: $panel;
        padding: 1 2;
    }
    """

    BINDINGS = [
        ("y", "answer(True)", "Allow"),
        ("n", "answer(False)", "Deny"),
        ("escape", "answer(False)", "Deny"),
    ]

    def __init__(self, request: ToolCallRequest):
        super().__init__()
        self.request = request

    def compose(self) -> ComposeResult:
        text = Text(f"Allow {self.request.name}?\n\n", style="bold")
        text.append(args_repr(self.request.arguments))
        text.append("\n\n[y] allow   [n] deny", style="dim")
        yield Static(text, id="confirm-dialog")

    def action_answer(self, allowed: bool) -> None:
        self.dismiss(allowed)


class SidecarApp(App):
    """Transcript, status bar and input line. Escape cancels, Ctrl+Q quits."""

    CSS = """
    Screen {
        background: $surface;
    }

    #transcript {
        height: 1fr;
        border: solid $primary;
        padding: 0 1;
    }

    StatusBar {
        height: 1;
        padding: 0 1;
    }

    #prompt {
        border: solid $accent;
    }
    """

    BINDINGS = [
        ("escape", "cancel", "Cancel"),
        ("ctrl+q", "quit", "Quit"),
        ("ctrl+l", "clear", "Clear screen"),
    ]

    def __init__(self, orchestrator: Orchestrator, title: str = "sidecar"):
        super().__init__()
        self.orchestrator = orchestrator
        self.title = title
        self._rendered_turns = 0
        self._last_thought_id: Optional[str] = None
        self._running = False
        self.transcript_log: Optional[RichLog] = None
        self.status_bar: Optional[StatusBar] = None

    def compose(self) -> ComposeResult:
        with Vertical():
            yield RichLog(id="transcript", wrap=True, markup=False, highlight=False)
            yield StatusBar(id="status")
            yield Input(placeholder="Ask sidecar...  (Esc cancels, Ctrl+Q quits)", id="prompt")

    def on_mount(self) -> None:
        self.transcript_log = self.query_one("#transcript", RichLog)
        self.status_bar = self.query_one("#status", StatusBar)
        self._running = True
        self.orchestrator.channel.subscribe(self._on_snapshot)
        self._apply_snapshot(self.orchestrator.snapshot())
        self.query_one("#prompt", Input).focus()

    def on_unmount(self) -> None:
        self._running = False
        self.orchestrator.channel.unsubscribe(self._on_snapshot)

    def _on_snapshot(self, snapshot: RenderSnapshot) -> None:
        # Called on the snapshot delivery thread.
        if not self._running:
            return
        try:
            self.call_from_thread(self._apply_snapshot, snapshot)
        except RuntimeError as e:
            # The app is shutting down and no longer accepts callbacks.
            logger.debug("Dropped snapshot %d: %s", snapshot.revision, e)

    def _apply_snapshot(self, snapshot: RenderSnapshot) -> None:
        if not self._running or self.transcript_log is None:
            return
        for turn in snapshot.turns[self._rendered_turns:]:
            self._write_turn(turn)
        self._rendered_turns = len(snapshot.turns)
        self.status_bar.state = snapshot.state
        self.status_bar.processes = snapshot.active_processes
        note = snapshot.notification
        if note is None:
            return
        if note.kind == NotificationKind.THOUGHT:
            if note.id != self._last_thought_id:
                self._last_thought_id = note.id
                self.transcript_log.write(Text(note.message, style="italic dim"))
            return
        self.status_bar.notification = note.message

    def _write_turn(self, turn: Turn) -> None:
        log = self.transcript_log
        if turn.role == Role.USER:
            log.write(Text(f"> {turn.content}", style="bold cyan"))
        elif turn.role == Role.SYSTEM:
            log.write(Text(f"[{turn.content}]", style="red"))
        elif turn.role == Role.ASSISTANT:
            if turn.content.strip():
                log.write(Markdown(turn.content))
            for call in turn.tool_calls:
                log.write(Text(f"--- {call.name}({args_repr(call.arguments)}) ---", style="dim"))
        else:
            result = turn.tool_result
            ok = result is None or result.ok
            status = "ok" if ok else f"failed: {result.error_kind.value}"
            lines = turn.content.splitlines()
            preview = "\n".join(lines[:TOOL_PREVIEW_LINES])
            if len(lines) > TOOL_PREVIEW_LINES:
                preview += f"\n... ({len(lines) - TOOL_PREVIEW_LINES} more lines)"
            log.write(Text(f"[{turn.tool_name} {status}]\n{preview}", style="dim" if ok else "yellow"))

    def on_input_submitted(self, event: Input.Submitted) -> None:
        text = event.value.strip()
        if not text:
            return
        if text in ("/quit", "/exit"):
            self.exit()
            return
        try:
            self.orchestrator.submit(text)
        except AgentBusy as e:
            self.status_bar.notification = str(e)
            return
        event.input.value = ""

    def action_cancel(self) -> None:
        self.orchestrator.cancel()

    def action_clear(self) -> None:
        self.transcript_log.clear()

    def confirm_tool(self, request: ToolCallRequest) -> bool:
        """Block the calling tool thread until the user answers the confirmation dialog."""
        if not self._running:
            return False
        answered = threading.Event()
        box: dict[str, bool] = {}

        def on_dismiss(allowed: Optional[bool]) -> None:
            box["allowed"] = bool(allowed)
            answered.set()

        try:
            self.call_from_thread(self.push_screen, ConfirmScreen(request), on_dismiss)
        except RuntimeError as e:
            logger.debug("Could not ask to confirm %s: %s", request.name, e)
            return False
        while not answered.wait(0.1):
            if not self._running:
                return False
        return box["allowed"]
