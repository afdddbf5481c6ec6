"""Unit tests for the console renderer."""

import io

from sidecar.errors import ErrorKind
from sidecar.state.conversation import ToolCallRequest, ToolResult, Turn
from sidecar.state.notifications import Notification, NotificationKind
from sidecar.state.snapshots import AgentState, RenderSnapshot
from sidecar.ui.console import ConsoleUI, format_turn


class TestFormatTurn:

    def test_user_and_system(self):
        assert format_turn(Turn.user("hi"), color=False) == "> hi"
        assert format_turn(Turn.system("Cancelled."), color=False) == "[Cancelled.]"

    def test_assistant_with_call(self):
        call = ToolCallRequest("c1", "read_file", {"path": "a.txt"})
        text = format_turn(Turn.assistant("Reading.", (call,)), color=False)
        assert text == "Reading.\n--- read_file(path='a.txt') ---"

    def test_failed_tool_preview(self):
        payload = "\n".join(f"line {i}" for i in range(30))
        turn = Turn.tool("run_command", ToolResult.failure("c1", ErrorKind.TIMED_OUT, payload))
        text = format_turn(turn, color=False)
        assert text.startswith("[run_command failed: timed_out]")
        assert "(18 more lines)" in text


class TestConsoleUI:

    def test_prints_only_new_turns_and_notifications(self):
        stream = io.StringIO()
        ui = ConsoleUI(stream=stream, color=False)
        turns = (Turn.user("one"), Turn.assistant("two"))
        note = Notification(NotificationKind.INDEXING_COMPLETE, "Completed indexing 'workspace'")
        ui.on_snapshot(RenderSnapshot(1, AgentState.AWAITING_MODEL, turns[:1]))
        ui.on_snapshot(RenderSnapshot(2, AgentState.IDLE, turns, notification=note))
        ui.on_snapshot(RenderSnapshot(3, AgentState.IDLE, turns, notification=note))
        assert stream.getvalue().splitlines() == ["> one", "two", "* Completed indexing 'workspace'"]

    def test_progress_not_printed(self):
        stream = io.StringIO()
        ui = ConsoleUI(stream=stream, color=False)
        note = Notification(NotificationKind.INDEXING_PROGRESS, "Indexing: 3 files")
        ui.on_snapshot(RenderSnapshot(1, AgentState.IDLE, (), notification=note))
        assert stream.getvalue() == ""

    def test_start_from_skips_loaded_history(self):
        stream = io.StringIO()
        ui = ConsoleUI(stream=stream, color=False)
        ui.start_from(1)
        ui.on_snapshot(RenderSnapshot(1, AgentState.IDLE, (Turn.user("old"), Turn.user("new"))))
        assert stream.getvalue() == "> new\n"

    def test_thought_printed(self):
        stream = io.StringIO()
        ui = ConsoleUI(stream=stream, color=False)
        note = Notification(NotificationKind.THOUGHT, "check the tests first", source="model")
        ui.on_snapshot(RenderSnapshot(1, AgentState.AWAITING_MODEL, (), notification=note))
        assert stream.getvalue() == "* check the tests first\n"


class TestConfirmTool:

    def _ui(self, answer):
        def input_fn(prompt):
            if isinstance(answer, Exception):
                raise answer
            return answer

        stream = io.StringIO()
        return ConsoleUI(stream=stream, color=False, input_fn=input_fn), stream

    def test_prompt_names_the_call(self):
        ui, stream = self._ui("y")
        assert ui.confirm_tool(ToolCallRequest("c1", "delete_file", {"path": "a.txt"}))
        assert stream.getvalue() == "Allow delete_file(path='a.txt')? [y/N]\n"

    def test_yes_variants(self):
        for answer in ("y", "YES", " yes \n"):
            ui, _ = self._ui(answer)
            assert ui.confirm_tool(ToolCallRequest("c1", "run_command", {"command": "ls"}))

    def test_anything_else_declines(self):
        for answer in ("", "n", "sure"):
            ui, _ = self._ui(answer)
            assert not ui.confirm_tool(ToolCallRequest("c1", "run_command", {"command": "ls"}))

    def test_closed_input_declines(self):
        ui, _ = self._ui(EOFError())
        assert not ui.confirm_tool(ToolCallRequest("c1", "run_command", {"command": "ls"}))
