"""Tool registry and dispatcher.

The registry maps exact tool names to ToolSpecs. The dispatcher resolves a
batch of ToolCallRequests from one model turn into ToolResults:

- arguments are validated before any handler runs
- calls run concurrently unless they share a resource and one of them
  writes; conflicting calls run in submission order
- each call runs under a timeout; on expiry its token is signalled and the
  call resolves to TimedOut once the handler returns or the grace lapses
- tools flagged ``requires_confirmation`` run only once the confirm callback
  approves them; a declined call resolves to Denied
- results come back in request order, one per request
"""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pydantic import BaseModel

from ..cancellation import CancellationToken
from ..errors import Cancelled, Denied, InvalidArguments, TimedOut, ToolError, UnknownTool
from ..logging_config import get_logger
from ..state.conversation import ToolCallRequest, ToolResult, truncate_text
from ..state.notifications import NotificationBus, NotificationKind
from .base import ToolContext, ToolOutput, ToolSpec

logger = get_logger(__name__)

_POLL_INTERVAL = 0.05


class ToolRegistry:
    """Stores tool specs by name."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = spec

    def get(self, name: str) -> ToolSpec:
        spec = self._tools.get(name)
        if spec is None:
            raise UnknownTool(f"Unknown tool: {name}. Available tools: {', '.join(sorted(self._tools))}")
        return spec

    def names(self) -> list[str]:
        return list(self._tools)

    def specs(self) -> list[ToolSpec]:
        return list(self._tools.values())

    def schemas(self) -> list[dict[str, Any]]:
        return [spec.as_openai_tool() for spec in self._tools.values()]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


def resources_overlap(a: set[str], b: set[str]) -> bool:
    """True when any resource in ``a`` equals, contains or is contained by one in ``b``."""
    for x in a:
        for y in b:
            if x == y or x.startswith(y.rstrip("/") + "/") or y.startswith(x.rstrip("/") + "/"):
                return True
    return False


@dataclass
class _PreparedCall:
    request: ToolCallRequest
    spec: Optional[ToolSpec] = None
    args: Optional[BaseModel] = None
    error: Optional[ToolError] = None
    resources: set[str] = field(default_factory=set)

    def conflicts_with(self, other: "_PreparedCall") -> bool:
        if self.spec is None or other.spec is None:
            return False
        if not (self.spec.writes() or other.spec.writes()):
            return False
        return resources_overlap(self.resources, other.resources)


class Dispatcher:
    """Executes tool calls against a registry.

    Args:
        registry: Tool registry.
        default_timeout: Per-call timeout when neither an override nor the tool sets one.
        timeouts: Per-tool timeout overrides from configuration.
        cancel_grace: Seconds a handler gets to acknowledge cancellation.
        max_payload_chars: Cap on result payloads.
        bus: Optional bus for tool start/complete notifications.
        max_workers: Upper bound on concurrent calls in one batch.
        confirm: Asked before any tool that requires confirmation runs; returns
            True to proceed. Without one, such tools run unasked.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        default_timeout: float = 60.0,
        timeouts: Optional[dict[str, float]] = None,
        cancel_grace: float = 2.0,
        max_payload_chars: int = 20_000,
        bus: Optional[NotificationBus] = None,
        max_workers: int = 8,
        confirm: Optional[Callable[[ToolCallRequest], bool]] = None,
    ):
        self.registry = registry
        self.default_timeout = default_timeout
        self.timeouts = dict(timeouts or {})
        self.cancel_grace = cancel_grace
        self.max_payload_chars = max_payload_chars
        self.bus = bus
        self.max_workers = max_workers
        self.confirm = confirm
        self._confirm_lock = threading.Lock()

    def timeout_for(self, spec: ToolSpec, args: Optional[BaseModel] = None) -> float:
        if spec.name in self.timeouts:
            return self.timeouts[spec.name]
        timeout = spec.timeout_for(args)
        if timeout is not None:
            return timeout
        return self.default_timeout

    def dispatch(self, requests: list[ToolCallRequest], token: CancellationToken) -> list[ToolResult]:
        """Resolve every request to exactly one result, in request order."""
        if not requests:
            return []
        prepared = [self._prepare(request) for request in requests]
        futures: list[Future] = []
        workers = max(1, min(len(prepared), self.max_workers))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tool") as pool:
            for index, call in enumerate(prepared):
                deps = [futures[i] for i in range(index) if call.conflicts_with(prepared[i])]
                futures.append(pool.submit(self._run, call, deps, token))
            return [future.result() for future in futures]

    def execute(self, request: ToolCallRequest, token: Optional[CancellationToken] = None) -> ToolResult:
        """Resolve a single request."""
        return self._run(self._prepare(request), [], token or CancellationToken())

    def _prepare(self, request: ToolCallRequest) -> _PreparedCall:
        call = _PreparedCall(request=request)
        try:
            call.spec = self.registry.get(request.name)
            call.args = call.spec.validate_args(request.arguments)
            call.resources = call.spec.resources_for(call.args)
        except (UnknownTool, InvalidArguments) as e:
            call.error = e
        return call

    def _run(self, call: _PreparedCall, deps: list[Future], token: CancellationToken) -> ToolResult:
        request = call.request
        if call.error is not None:
            logger.info("Rejected tool call %s (%s): %s", request.id, request.name, call.error)
            return self._failure(request.id, call.error)
        for dep in deps:
            dep.result()
        if token.is_cancelled:
            return self._failure(request.id, Cancelled("Cancelled before the tool started"))
        if call.spec.requires_confirmation and self.confirm is not None:
            # One prompt at a time, even when calls of a batch run concurrently.
            with self._confirm_lock:
                approved = not token.is_cancelled and self.confirm(request)
            if token.is_cancelled:
                return self._failure(request.id, Cancelled("Cancelled before the tool started"))
            if not approved:
                logger.info("User declined tool call %s (%s)", request.id, request.name)
                return self._failure(request.id, Denied(f"{request.name} was denied by the user"))

        self._notify(NotificationKind.TOOL_STARTED, request, f"Running {request.name}")
        started = time.monotonic()
        result = self._run_with_timeout(call, token)
        elapsed = time.monotonic() - started
        result.metadata.setdefault("duration", round(elapsed, 3))
        self._notify(
            NotificationKind.TOOL_COMPLETE,
            request,
            f"{request.name} {'finished' if result.ok else 'failed'} in {elapsed:.1f}s",
            ok=result.ok,
        )
        return result

    def _run_with_timeout(self, call: _PreparedCall, token: CancellationToken) -> ToolResult:
        request, spec = call.request, call.spec
        child = token.child()
        context = ToolContext(call_id=request.id, token=child)
        box: dict[str, Any] = {}
        done = threading.Event()

        def target() -> None:
            try:
                box["value"] = spec.handler(call.args, context)
            except Exception as e:
                box["error"] = e
            finally:
                done.set()

        worker = threading.Thread(target=target, name=f"tool-{spec.name}-{request.id}", daemon=True)
        worker.start()

        timeout = self.timeout_for(spec, call.args)
        deadline = time.monotonic() + timeout
        grace_deadline: Optional[float] = None
        timed_out = False
        while not done.wait(_POLL_INTERVAL):
            now = time.monotonic()
            if grace_deadline is None:
                if now >= deadline:
                    timed_out = True
                    child.cancel("timeout")
                    grace_deadline = now + self.cancel_grace
                elif token.is_cancelled:
                    grace_deadline = now + self.cancel_grace
            elif now >= grace_deadline:
                break

        if not done.is_set():
            logger.warning("Tool %s (%s) did not acknowledge cancellation; abandoning it", spec.name, request.id)
            if timed_out:
                return self._failure(request.id, TimedOut(f"{spec.name} timed out after {timeout:g}s"))
            return self._failure(request.id, Cancelled(f"{spec.name} was cancelled"))

        error = box.get("error")
        if timed_out:
            partial = None
            if error is None:
                value = box.get("value")
                partial = value.text if isinstance(value, ToolOutput) else value
            elif isinstance(error, ToolError):
                partial = error.output
            return self._failure(request.id, TimedOut(f"{spec.name} timed out after {timeout:g}s", output=partial))
        if error is not None:
            if isinstance(error, ToolError):
                logger.info("Tool %s (%s) failed: %s", spec.name, request.id, error)
                return self._failure(request.id, error)
            logger.error("Tool %s (%s) raised", spec.name, request.id, exc_info=error)
            failure = ToolError(f"{spec.name} failed: {type(error).__name__}: {error}")
            return self._failure(request.id, failure)
        return self._success(request.id, box.get("value"))

    def _success(self, call_id: str, value: Any) -> ToolResult:
        if isinstance(value, ToolOutput):
            text, metadata = value.text, dict(value.metadata)
        else:
            text, metadata = "" if value is None else str(value), {}
        payload, truncated = truncate_text(text, self.max_payload_chars)
        if truncated:
            metadata["truncated"] = True
        return ToolResult.success(call_id, payload, metadata)

    def _failure(self, call_id: str, error: ToolError) -> ToolResult:
        text = f"Error: {error}"
        if error.output:
            text += f"\n{error.output}"
        payload, truncated = truncate_text(text, self.max_payload_chars)
        metadata: dict[str, Any] = {"truncated": True} if truncated else {}
        exit_code = getattr(error, "exit_code", None)
        if exit_code is not None:
            metadata["exit_code"] = exit_code
        return ToolResult.failure(call_id, error.kind, payload, metadata)

    def _notify(self, kind: NotificationKind, request: ToolCallRequest, message: str, **data: Any) -> None:
        if self.bus is not None:
            self.bus.notify(kind, message, source=request.name, call_id=request.id, **data)


def build_dispatcher(registry: ToolRegistry, settings, bus: Optional[NotificationBus] = None) -> Dispatcher:
    """Build a dispatcher from application settings."""
    return Dispatcher(
        registry,
        default_timeout=settings.default_tool_timeout,
        timeouts=settings.tool_timeouts,
        cancel_grace=settings.process_grace_period,
        max_payload_chars=settings.max_payload_chars,
        bus=bus,
    )

