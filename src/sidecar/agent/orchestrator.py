"""Agent orchestrator: the conversation and tool-call state machine.

    Idle --user input--> AwaitingModel --tool calls--> DispatchingTools
      ^                     |    ^                            |
      |                     |    +------- all results --------+
      +---- no tool calls --+
    any state --cancel--> Cancelling --> Idle

A user turn runs on a worker thread. The model request itself runs on a
separate pool thread so that a cancel can abandon it without waiting; a
response that arrives after cancellation is discarded. Every transition
publishes a RenderSnapshot on a SnapshotChannel, which never blocks the loop.
"""

import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Optional

from ..cancellation import CancellationToken
from ..errors import ModelClientError
from ..llm import ModelClient, ModelResponse
from ..logging_config import get_logger
from ..state.conversation import ToolCallRequest, Transcript, Turn
from ..state.notifications import Notification, NotificationBus, NotificationKind
from ..state.snapshots import AgentState, RenderSnapshot, SnapshotChannel
from ..tools.registry import Dispatcher, ToolRegistry

logger = get_logger(__name__)

_POLL_INTERVAL = 0.05


class AgentBusy(RuntimeError):
    """Input was submitted while a turn is still running."""


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


class Orchestrator:
    """Drives one conversation.

    Args:
        model: Model client.
        registry: Tool registry (for schemas).
        dispatcher: Executes tool calls.
        bus: Notification bus; the latest notification is shown in snapshots.
        channel: Snapshot channel; created if not given.
        transcript: Existing transcript (e.g. a loaded session).
        max_tool_rounds: Tool rounds allowed per user turn.
        active_processes: Callable returning the number of running processes.
    """

    def __init__(
        self,
        model: ModelClient,
        registry: ToolRegistry,
        dispatcher: Dispatcher,
        bus: Optional[NotificationBus] = None,
        channel: Optional[SnapshotChannel] = None,
        transcript: Optional[Transcript] = None,
        max_tool_rounds: int = 8,
        active_processes: Optional[Callable[[], int]] = None,
    ):
        self.model = model
        self.registry = registry
        self.dispatcher = dispatcher
        self.bus = bus
        self.channel = channel or SnapshotChannel()
        self.transcript = transcript or Transcript()
        self.max_tool_rounds = max_tool_rounds
        self._active_processes = active_processes
        self._lock = threading.Lock()
        self._state = AgentState.IDLE
        self._revision = 0
        self._token: Optional[CancellationToken] = None
        self._worker: Optional[threading.Thread] = None
        self._idle = threading.Event()
        self._idle.set()
        self._model_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="model")
        self._last_notification: Optional[Notification] = None
        self._listener: Optional[threading.Thread] = None
        self._listener_stop = threading.Event()

    @property
    def state(self) -> AgentState:
        with self._lock:
            return self._state

    def snapshot(self) -> RenderSnapshot:
        with self._lock:
            return self._snapshot_locked()

    def _snapshot_locked(self) -> RenderSnapshot:
        self._revision += 1
        return RenderSnapshot(
            revision=self._revision,
            state=self._state,
            turns=self.transcript.turns,
            notification=self._last_notification,
            active_processes=self._active_processes() if self._active_processes else 0,
        )

    def _transition(self, state: AgentState) -> None:
        with self._lock:
            if self._state == AgentState.CANCELLING and state != AgentState.IDLE:
                return
            if self._state != state:
                logger.debug("Agent state %s -> %s", self._state.value, state.value)
            self._state = state
            snapshot = self._snapshot_locked()
        self.channel.publish(snapshot)

    def _append(self, turn: Turn) -> None:
        self.transcript.append(turn)
        self.channel.publish(self.snapshot())

    # ------------------------------------------------------------------
    # Control surface for the front end
    # ------------------------------------------------------------------

    def submit(self, text: str) -> threading.Thread:
        """Start a turn for ``text`` on a worker thread.

        Raises:
            AgentBusy: A turn is already running.
        """
        with self._lock:
            if self._state != AgentState.IDLE:
                raise AgentBusy("The agent is still working; cancel it first")
            self._state = AgentState.AWAITING_MODEL
            self._idle.clear()
            self._token = CancellationToken()
            token = self._token
        self._worker = threading.Thread(target=self._run_turn, args=(text, token), name="agent-turn", daemon=True)
        self._worker.start()
        return self._worker

    def run_turn(self, text: str, timeout: Optional[float] = None) -> bool:
        """Submit ``text`` and block until the agent is idle again."""
        self.submit(text)
        return self.wait_idle(timeout)

    def cancel(self) -> bool:
        """Interrupt the current turn. Returns False when already idle."""
        with self._lock:
            if self._state == AgentState.IDLE:
                return False
            self._state = AgentState.CANCELLING
            token = self._token
            snapshot = self._snapshot_locked()
        logger.info("Cancelling the current turn")
        self.channel.publish(snapshot)
        if token is not None:
            token.cancel("user interrupt")
        return True

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return self._idle.wait(timeout)

    def start_listening(self) -> None:
        """Forward bus notifications into snapshots on a background thread."""
        if self.bus is None or (self._listener is not None and self._listener.is_alive()):
            return
        subscription = self.bus.subscribe()
        self._listener_stop.clear()

        def listen() -> None:
            try:
                while not self._listener_stop.is_set():
                    notification = subscription.get(timeout=0.25)
                    if notification is None:
                        continue
                    with self._lock:
                        self._last_notification = notification
                        snapshot = self._snapshot_locked()
                    self.channel.publish(snapshot)
            finally:
                subscription.close()

        self._listener = threading.Thread(target=listen, name="agent-notifications", daemon=True)
        self._listener.start()

    def close(self) -> None:
        """Cancel any turn, stop background threads."""
        self.cancel()
        self.wait_idle(timeout=5.0)
        self._listener_stop.set()
        if self._listener is not None:
            self._listener.join(timeout=1.0)
        self._model_pool.shutdown(wait=False, cancel_futures=True)
        self.channel.close()

    # ------------------------------------------------------------------
    # The loop
    # ------------------------------------------------------------------

    def _run_turn(self, text: str, token: CancellationToken) -> None:
        try:
            self._append(Turn.user(text))
            self._transition(AgentState.AWAITING_MODEL)
            rounds = 0
            while not token.is_cancelled:
                try:
                    response = self._call_model(token)
                except ModelClientError as e:
                    self._append(Turn.system(f"Model error: {e}"))
                    return
                if response is None:
                    logger.info("Discarding model response after cancellation")
                    return
                if response.thought:
                    logger.debug("Model thought: %s", response.thought)
                    if self.bus is not None:
                        self.bus.notify(NotificationKind.THOUGHT, response.thought, source="model")

                calls = tuple(self._to_request(draft) for draft in response.tool_calls)
                self._append(Turn.assistant(response.content, calls))
                if not calls:
                    return

                rounds += 1
                self._transition(AgentState.DISPATCHING_TOOLS)
                results = self.dispatcher.dispatch(list(calls), token)
                for call, result in zip(calls, results):
                    self._append(Turn.tool(call.name, result))
                if token.is_cancelled:
                    return
                if rounds >= self.max_tool_rounds:
                    self._append(
                        Turn.system(f"Stopped after {rounds} consecutive tool rounds. Send a message to continue.")
                    )
                    return
                self._transition(AgentState.AWAITING_MODEL)
        except Exception as e:
            logger.exception("Agent turn failed")
            self._append(Turn.system(f"Internal error: {e}"))
        finally:
            if token.is_cancelled:
                self._append(Turn.system("Cancelled."))
            self._transition(AgentState.IDLE)
            self._idle.set()

    def _call_model(self, token: CancellationToken) -> Optional[ModelResponse]:
        """Run the model request, returning None if cancelled before it finishes."""
        future: Future = self._model_pool.submit(self.model.complete, self.transcript.turns, self.registry.schemas())
        while True:
            if token.is_cancelled:
                future.cancel()
                return None
            try:
                return future.result(timeout=_POLL_INTERVAL)
            except FutureTimeout:
                continue

    @staticmethod
    def _to_request(draft) -> ToolCallRequest:
        arguments = draft.arguments if isinstance(draft.arguments, dict) else {"_raw_arguments": str(draft.arguments)}
        return ToolCallRequest(id=new_call_id(), name=draft.name, arguments=arguments)
