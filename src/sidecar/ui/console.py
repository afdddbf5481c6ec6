"""Console UI: prints new turns and notifications to stdout as snapshots arrive."""

from __future__ import annotations

import sys
import threading
from typing import Callable, Optional, TextIO

from ..state.conversation import Role, ToolCallRequest, Turn
from ..state.notifications import Notification, NotificationKind
from ..state.snapshots import AgentState, RenderSnapshot

TERMINAL_GREY = "\033[90m"
TERMINAL_RESET = "\033[0m"
TERMINAL_BLUE = "\033[94m"
TERMINAL_RED = "\033[91m"
TERMINAL_YELLOW = "\033[93m"

TOOL_HEADER_PREFIX = "--- "
TOOL_HEADER_SUFFIX = " ---"
TOOL_PREVIEW_LINES = 12

# Notifications worth a line in a scrolling console; progress is too chatty.
_PRINTED_KINDS = frozenset({
    NotificationKind.INDEXING_STARTED,
    NotificationKind.INDEXING_COMPLETE,
    NotificationKind.INDEXING_CANCELLED,
    NotificationKind.INDEXING_FAILED,
    NotificationKind.ERROR,
    NotificationKind.INFO,
    NotificationKind.THOUGHT,
})


def args_repr(arguments: dict) -> str:
    parts = []
    for key, value in arguments.items():
        text = repr(value)
        if len(text) > 60:
            text = text[:57] + "..."
        parts.append(f"{key}={text}")
    return ", ".join(parts)


def format_turn(turn: Turn, color: bool = True) -> str:
    """Plain-text rendering of one turn."""
    grey, reset, blue, red = (TERMINAL_GREY, TERMINAL_RESET, TERMINAL_BLUE, TERMINAL_RED) if color else ("",) * 4
    if turn.role == Role.USER:
        return f"{blue}> {turn.content}{reset}"
    if turn.role == Role.SYSTEM:
        return f"{red}[{turn.content}]{reset}"
    if turn.role == Role.ASSISTANT:
        lines = [turn.content] if turn.content.strip() else []
        for call in turn.tool_calls:
            lines.append(f"{grey}{TOOL_HEADER_PREFIX}{call.name}({args_repr(call.arguments)}){TOOL_HEADER_SUFFIX}{reset}")
        return "\n".join(lines)
    result = turn.tool_result
    status = "ok" if result is None or result.ok else f"failed: {result.error_kind.value}"
    body = turn.content.splitlines()
    if len(body) > TOOL_PREVIEW_LINES:
        body = body[:TOOL_PREVIEW_LINES] + [f"... ({len(turn.content.splitlines()) - TOOL_PREVIEW_LINES} more lines)"]
    text = "\n".join(body)
    return f"{grey}[{turn.tool_name} {status}]\n{text}{reset}"


class ConsoleUI:
    """Stateless pipe: renders each snapshot's new turns to a stream."""

    def __init__(
        self,
        stream: Optional[TextIO] = None,
        color: Optional[bool] = None,
        input_fn: Callable[[str], str] = input,
    ) -> None:
        self.stream = stream or sys.stdout
        self.input_fn = input_fn
        self.color = self.stream.isatty() if color is None else color
        self._printed_turns = 0
        self._last_notification_id: Optional[str] = None
        self._idle = threading.Event()
        self._lock = threading.Lock()

    def start_from(self, turns_already_shown: int) -> None:
        self._printed_turns = turns_already_shown

    def on_snapshot(self, snapshot: RenderSnapshot) -> None:
        with self._lock:
            for turn in snapshot.turns[self._printed_turns:]:
                text = format_turn(turn, self.color)
                if text:
                    print(text, file=self.stream, flush=True)
            self._printed_turns = len(snapshot.turns)
            self._print_notification(snapshot.notification)
        if snapshot.state == AgentState.IDLE:
            self._idle.set()
        else:
            self._idle.clear()

    def _print_notification(self, notification: Optional[Notification]) -> None:
        if notification is None or notification.id == self._last_notification_id:
            return
        self._last_notification_id = notification.id
        if notification.kind in _PRINTED_KINDS:
            grey, reset = (TERMINAL_GREY, TERMINAL_RESET) if self.color else ("", "")
            print(f"{grey}* {notification.message}{reset}", file=self.stream, flush=True)

    def confirm_tool(self, request: ToolCallRequest) -> bool:
        """Ask on the terminal whether ``request`` may run. Anything but y/yes declines."""
        yellow, reset = (TERMINAL_YELLOW, TERMINAL_RESET) if self.color else ("", "")
        with self._lock:
            print(f"{yellow}Allow {request.name}({args_repr(request.arguments)})? [y/N]{reset}", file=self.stream, flush=True)
        try:
            answer = self.input_fn("")
        except EOFError:
            return False
        return answer.strip().lower() in ("y", "yes")
