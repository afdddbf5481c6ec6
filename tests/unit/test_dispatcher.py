"""Unit tests for the tool registry and dispatcher."""

import threading
import time

import pytest
from pydantic import Field

from sidecar.cancellation import CancellationToken
from sidecar.errors import ErrorKind, ProcessFailed, UnknownTool
from sidecar.state.conversation import ToolCallRequest
from sidecar.state.notifications import NotificationKind
from sidecar.tools.base import Capability, ToolArgs, ToolOutput, ToolSpec
from sidecar.tools.registry import Dispatcher, ToolRegistry, resources_overlap


class EchoArgs(ToolArgs):
    text: str = Field(description="Text to echo")
    delay: float = 0.0


class PathArgs(ToolArgs):
    path: str


def _echo(args, ctx):
    if args.delay:
        time.sleep(args.delay)
    return args.text


def _spec(name, handler, args_schema=EchoArgs, capabilities=(), resources=None, timeout=None, confirm=False):
    return ToolSpec(
        name=name,
        description=f"{name} tool",
        args_schema=args_schema,
        handler=handler,
        capabilities=frozenset(capabilities),
        resources=resources,
        timeout=timeout,
        requires_confirmation=confirm,
    )


def _call(name, call_id=None, **arguments):
    return ToolCallRequest(id=call_id or f"call_{name}", name=name, arguments=arguments)


class TestToolRegistry:

    def test_register_and_get(self, registry):
        registry.register(_spec("echo", _echo))
        assert "echo" in registry
        assert registry.get("echo").name == "echo"
        assert len(registry) == 1

    def test_duplicate_name_rejected(self, registry):
        registry.register(_spec("echo", _echo))
        with pytest.raises(ValueError):
            registry.register(_spec("echo", _echo))

    def test_unknown_tool(self, registry):
        with pytest.raises(UnknownTool):
            registry.get("nope")

    def test_schema_for_function_calling(self, registry):
        registry.register(_spec("echo", _echo))
        schema = registry.schemas()[0]
        assert schema["type"] == "function"
        params = schema["function"]["parameters"]
        assert params["required"] == ["text"]
        assert params["properties"]["text"]["description"] == "Text to echo"
        assert params["additionalProperties"] is False


class TestResourcesOverlap:

    def test_equal_and_nested_paths(self):
        assert resources_overlap({"/w/a.txt"}, {"/w/a.txt"})
        assert resources_overlap({"/w"}, {"/w/a.txt"})
        assert not resources_overlap({"/w/a.txt"}, {"/w/ab.txt"})
        assert not resources_overlap(set(), {"/w"})


class TestDispatch:

    def test_unknown_tool_result(self, dispatcher):
        [result] = dispatcher.dispatch([_call("missing")], CancellationToken())
        assert not result.ok
        assert result.error_kind == ErrorKind.UNKNOWN_TOOL
        assert result.call_id == "call_missing"

    def test_invalid_arguments_never_reach_handler(self, registry, dispatcher):
        calls = []
        registry.register(_spec("echo", lambda a, c: calls.append(a) or "x"))
        results = dispatcher.dispatch(
            [_call("echo", "c1"), _call("echo", "c2", text="hi", extra=1), _call("echo", "c3", text=5)],
            CancellationToken(),
        )
        assert [r.error_kind for r in results] == [ErrorKind.INVALID_ARGUMENTS] * 3
        assert "text" in results[0].payload
        assert calls == []

    def test_non_object_arguments(self, registry, dispatcher):
        registry.register(_spec("echo", _echo))
        request = ToolCallRequest(id="c1", name="echo", arguments={"_raw_arguments": "{broken"})
        [result] = dispatcher.dispatch([request], CancellationToken())
        assert result.error_kind == ErrorKind.INVALID_ARGUMENTS

    def test_results_in_request_order(self, registry, dispatcher):
        registry.register(_spec("echo", _echo))
        requests = [
            _call("echo", "slow", text="slow", delay=0.3),
            _call("echo", "fast", text="fast"),
        ]
        results = dispatcher.dispatch(requests, CancellationToken())
        assert [r.call_id for r in results] == ["slow", "fast"]
        assert [r.payload for r in results] == ["slow", "fast"]

    def test_independent_calls_run_concurrently(self, registry, dispatcher):
        registry.register(_spec("echo", _echo, capabilities={Capability.READ_FS}))
        requests = [_call("echo", f"c{i}", text=str(i), delay=0.4) for i in range(4)]
        start = time.monotonic()
        results = dispatcher.dispatch(requests, CancellationToken())
        assert all(r.ok for r in results)
        assert time.monotonic() - start < 1.2

    def test_write_then_read_same_path_is_serialized(self, registry, dispatcher):
        store = {}

        def write(args, ctx):
            time.sleep(0.2)
            store[args.path] = "written"
            return "ok"

        def read(args, ctx):
            return store.get(args.path, "missing")

        registry.register(_spec("write", write, PathArgs, {Capability.WRITE_FS}, lambda a: {a.path}))
        registry.register(_spec("read", read, PathArgs, {Capability.READ_FS}, lambda a: {a.path}))
        results = dispatcher.dispatch(
            [_call("write", "w", path="/w/a.txt"), _call("read", "r", path="/w/a.txt")],
            CancellationToken(),
        )
        assert results[1].payload == "written"

    def test_reads_of_same_path_do_not_conflict(self, registry, dispatcher):
        active = []
        peak = []
        lock = threading.Lock()

        def read(args, ctx):
            with lock:
                active.append(1)
                peak.append(len(active))
            time.sleep(0.2)
            with lock:
                active.pop()
            return "ok"

        registry.register(_spec("read", read, PathArgs, {Capability.READ_FS}, lambda a: {a.path}))
        dispatcher.dispatch([_call("read", f"r{i}", path="/w/a") for i in range(3)], CancellationToken())
        assert max(peak) > 1

    def test_handler_tool_error_kind(self, registry, dispatcher):
        def fail(args, ctx):
            raise ProcessFailed("exit 2", exit_code=2, output="boom")

        registry.register(_spec("fail", fail))
        [result] = dispatcher.dispatch([_call("fail", text="x")], CancellationToken())
        assert result.error_kind == ErrorKind.PROCESS_FAILED
        assert result.metadata["exit_code"] == 2
        assert "boom" in result.payload

    def test_unexpected_exception_becomes_execution_failed(self, registry, dispatcher):
        def crash(args, ctx):
            raise KeyError("oops")

        registry.register(_spec("crash", crash))
        [result] = dispatcher.dispatch([_call("crash", text="x")], CancellationToken())
        assert result.error_kind == ErrorKind.EXECUTION_FAILED
        assert "KeyError" in result.payload

    def test_timeout_cooperative_handler(self, registry, dispatcher):
        def waits(args, ctx):
            ctx.token.wait(10)
            return "partial output"

        registry.register(_spec("waits", waits, timeout=0.2))
        start = time.monotonic()
        [result] = dispatcher.dispatch([_call("waits", text="x")], CancellationToken())
        assert time.monotonic() - start < 2.0
        assert result.error_kind == ErrorKind.TIMED_OUT
        assert "partial output" in result.payload

    def test_timeout_uncooperative_handler_abandoned_after_grace(self, registry):
        release = threading.Event()
        registry.register(_spec("stuck", lambda a, c: release.wait(10) and "late", timeout=0.1))
        dispatcher = Dispatcher(registry, cancel_grace=0.2)
        start = time.monotonic()
        [result] = dispatcher.dispatch([_call("stuck", text="x")], CancellationToken())
        release.set()
        assert result.error_kind == ErrorKind.TIMED_OUT
        assert time.monotonic() - start < 2.0

    def test_timeout_derived_from_arguments(self, registry):
        registry.register(_spec("echo", _echo, timeout=lambda a: a.delay + 1.0))
        dispatcher = Dispatcher(registry, default_timeout=0.1, cancel_grace=0.1)
        assert dispatcher.timeout_for(registry.get("echo"), EchoArgs(text="x", delay=2.0)) == 3.0
        assert dispatcher.timeout_for(registry.get("echo")) == 0.1

        [result] = dispatcher.dispatch([_call("echo", text="slow", delay=0.4)], CancellationToken())
        assert result.ok
        assert result.payload == "slow"

    def test_timeout_override_from_configuration(self, registry):
        registry.register(_spec("echo", _echo, timeout=30))
        dispatcher = Dispatcher(registry, timeouts={"echo": 0.1}, cancel_grace=0.1)
        [result] = dispatcher.dispatch([_call("echo", text="x", delay=1.0)], CancellationToken())
        assert result.error_kind == ErrorKind.TIMED_OUT

    def test_cancel_resolves_every_call(self, registry, dispatcher):
        def waits(args, ctx):
            ctx.token.wait(10)
            ctx.token.raise_if_cancelled()
            return "done"

        registry.register(_spec("waits", waits, PathArgs, {Capability.WRITE_FS}, lambda a: {a.path}))
        token = CancellationToken()
        requests = [_call("waits", f"c{i}", path="/w/same") for i in range(3)]
        threading.Timer(0.2, token.cancel).start()
        results = dispatcher.dispatch(requests, token)
        assert [r.call_id for r in results] == ["c0", "c1", "c2"]
        assert all(r.error_kind == ErrorKind.CANCELLED for r in results)

    def test_large_payload_truncated(self, registry):
        registry.register(_spec("big", lambda a, c: ToolOutput("x" * 500, {"lines": 1})))
        dispatcher = Dispatcher(registry, max_payload_chars=100)
        [result] = dispatcher.dispatch([_call("big", text="x")], CancellationToken())
        assert result.ok
        assert result.metadata["truncated"] is True
        assert result.metadata["lines"] == 1
        assert len(result.payload) < 200

    def test_tool_notifications(self, registry, dispatcher, bus):
        sub = bus.subscribe()
        registry.register(_spec("echo", _echo))
        dispatcher.execute(_call("echo", text="hi"))
        kinds = [n.kind for n in sub.drain()]
        assert kinds == [NotificationKind.TOOL_STARTED, NotificationKind.TOOL_COMPLETE]

    def test_empty_batch(self, dispatcher):
        assert dispatcher.dispatch([], CancellationToken()) == []


class TestConfirmation:

    def test_approved_call_runs(self, registry, dispatcher):
        asked = []
        registry.register(_spec("echo", _echo, confirm=True))
        dispatcher.confirm = lambda request: asked.append(request.id) or True
        [result] = dispatcher.dispatch([_call("echo", "c1", text="hi")], CancellationToken())
        assert result.ok
        assert asked == ["c1"]

    def test_denied_call_never_reaches_handler(self, registry, dispatcher):
        calls = []
        registry.register(_spec("echo", lambda a, c: calls.append(a) or "x", confirm=True))
        dispatcher.confirm = lambda request: False
        [result] = dispatcher.dispatch([_call("echo", text="hi")], CancellationToken())
        assert result.error_kind == ErrorKind.DENIED
        assert "denied by the user" in result.payload
        assert calls == []

    def test_unflagged_tools_are_not_asked(self, registry, dispatcher):
        registry.register(_spec("echo", _echo))
        dispatcher.confirm = lambda request: pytest.fail("confirmation requested for an unflagged tool")
        [result] = dispatcher.dispatch([_call("echo", text="hi")], CancellationToken())
        assert result.ok

    def test_without_callback_flagged_tools_run(self, registry, dispatcher):
        registry.register(_spec("echo", _echo, confirm=True))
        assert dispatcher.execute(_call("echo", text="hi")).ok

    def test_one_prompt_at_a_time(self, registry, dispatcher):
        registry.register(_spec("echo", _echo, capabilities={Capability.READ_FS}, confirm=True))
        open_prompts = []
        peak = []
        lock = threading.Lock()

        def confirm(request):
            with lock:
                open_prompts.append(request.id)
                peak.append(len(open_prompts))
            time.sleep(0.1)
            with lock:
                open_prompts.remove(request.id)
            return True

        dispatcher.confirm = confirm
        results = dispatcher.dispatch([_call("echo", f"c{i}", text=str(i)) for i in range(3)], CancellationToken())
        assert all(r.ok for r in results)
        assert max(peak) == 1

    def test_cancelled_while_asking(self, registry, dispatcher):
        calls = []
        token = CancellationToken()
        registry.register(_spec("echo", lambda a, c: calls.append(a) or "x", confirm=True))
        dispatcher.confirm = lambda request: token.cancel() or True
        [result] = dispatcher.dispatch([_call("echo", text="hi")], token)
        assert result.error_kind == ErrorKind.CANCELLED
        assert calls == []
