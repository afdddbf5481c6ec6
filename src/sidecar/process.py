"""Process supervisor: owns every child process the agent spawns.

Each child runs in its own session (and therefore its own process group) so
that termination reaches every descendant. A single reaper thread enforces
deadlines: SIGTERM to the group at the deadline, SIGKILL to the group once
the grace period lapses. When a group leader exits the rest of its group is
killed too, so backgrounded grandchildren never outlive the call.
"""

import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import IO, List, Optional, Sequence

from .cancellation import CancellationToken
from .logging_config import get_logger

logger = get_logger(__name__)

_POLL_INTERVAL = 0.05


class ProcessState(str, Enum):
    """Lifecycle of a managed process."""
    RUNNING = "running"
    COMPLETED = "completed"  # Exited on its own
    KILLED = "killed"        # Terminated after a deadline or cancellation
    REAPED = "reaped"        # Force-killed during host shutdown


class OutputBuffer:
    """Thread-safe byte buffer that keeps at most ``limit`` bytes.

    Bytes beyond the limit are counted and discarded; the writer never blocks.
    """

    def __init__(self, limit: int):
        self.limit = limit
        self._data = bytearray()
        self._dropped = 0
        self._lock = threading.Lock()

    def write(self, chunk: bytes) -> None:
        with self._lock:
            room = self.limit - len(self._data)
            if room > 0:
                self._data.extend(chunk[:room])
            if len(chunk) > room:
                self._dropped += len(chunk) - max(room, 0)

    @property
    def truncated(self) -> bool:
        with self._lock:
            return self._dropped > 0

    def text(self) -> str:
        with self._lock:
            data = bytes(self._data)
            dropped = self._dropped
        text = data.decode("utf-8", errors="replace")
        if dropped:
            text += f"\n... [output truncated: {dropped} bytes dropped]"
        return text


@dataclass
class ManagedProcess:
    """A supervised child process."""
    pid: int
    command: List[str]
    owner_id: Optional[str]
    cwd: Optional[str]
    started_at: float
    deadline: Optional[float]
    stdout: OutputBuffer
    stderr: OutputBuffer
    state: ProcessState = ProcessState.RUNNING
    returncode: Optional[int] = None
    timed_out: bool = False
    cancelled: bool = False
    finished_at: Optional[float] = None
    _popen: Optional[subprocess.Popen] = field(default=None, repr=False)
    _readers: List[threading.Thread] = field(default_factory=list, repr=False)
    _term_sent_at: Optional[float] = field(default=None, repr=False)
    _done: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def pgid(self) -> int:
        return self.pid

    @property
    def duration(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.time()
        return end - self.started_at

    @property
    def truncated(self) -> bool:
        return self.stdout.truncated or self.stderr.truncated

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait_done(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def output(self) -> str:
        """Combined stdout and stderr, stderr labelled."""
        out = self.stdout.text()
        err = self.stderr.text()
        if err.strip():
            if out.strip():
                return f"{out.rstrip()}\n[stderr]\n{err}"
            return err
        return out


def _signal_group(pgid: int, sig: int) -> None:
    try:
        if os.name == "posix":
            os.killpg(pgid, sig)
        else:
            os.kill(pgid, sig)
    except (ProcessLookupError, PermissionError):
        pass


def _pump(stream: IO[bytes], buffer: OutputBuffer) -> None:
    try:
        while True:
            chunk = stream.read1(4096) if hasattr(stream, "read1") else stream.read(4096)
            if not chunk:
                break
            buffer.write(chunk)
    except (OSError, ValueError):
        pass
    finally:
        try:
            stream.close()
        except OSError:
            pass


class ProcessSupervisor:
    """Spawns, tracks, times out and terminates child processes.

    Args:
        max_output_bytes: Cap on each of stdout and stderr per process.
        grace_period: Seconds between SIGTERM and SIGKILL.
    """

    def __init__(self, max_output_bytes: int = 256_000, grace_period: float = 2.0):
        self.max_output_bytes = max_output_bytes
        self.grace_period = grace_period
        self._lock = threading.Lock()
        self._processes: dict[int, ManagedProcess] = {}
        self._reaper: Optional[threading.Thread] = None

    def spawn(
        self,
        command: str,
        args: Sequence[str] = (),
        cwd: Optional[str] = None,
        timeout: Optional[float] = None,
        owner_id: Optional[str] = None,
        env: Optional[dict] = None,
    ) -> ManagedProcess:
        """Start ``command`` with ``args`` under supervision.

        Args:
            command: Program to execute.
            args: Program arguments.
            cwd: Working directory.
            timeout: Seconds until the process group is terminated.
            owner_id: Correlation id of the tool call that owns the process.
            env: Optional environment.

        Returns:
            The ManagedProcess handle, in Running state.

        Raises:
            OSError: The program could not be started.
        """
        argv = [command, *args]
        popen = subprocess.Popen(
            argv,
            cwd=cwd,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
        now = time.time()
        handle = ManagedProcess(
            pid=popen.pid,
            command=argv,
            owner_id=owner_id,
            cwd=cwd,
            started_at=now,
            deadline=now + timeout if timeout else None,
            stdout=OutputBuffer(self.max_output_bytes),
            stderr=OutputBuffer(self.max_output_bytes),
            _popen=popen,
        )
        for stream, buffer, label in ((popen.stdout, handle.stdout, "out"), (popen.stderr, handle.stderr, "err")):
            reader = threading.Thread(target=_pump, args=(stream, buffer), name=f"pump-{popen.pid}-{label}", daemon=True)
            reader.start()
            handle._readers.append(reader)

        with self._lock:
            self._processes[handle.pid] = handle
            if self._reaper is None or not self._reaper.is_alive():
                self._reaper = threading.Thread(target=self._reap_loop, name="process-reaper", daemon=True)
                self._reaper.start()

        logger.info("Spawned pid %d (owner %s): %s", handle.pid, owner_id, " ".join(argv))
        return handle

    def wait(self, handle: ManagedProcess, token: Optional[CancellationToken] = None) -> ManagedProcess:
        """Block until ``handle`` finishes. Cancelling ``token`` terminates it."""
        while not handle.wait_done(_POLL_INTERVAL):
            if token is not None and token.is_cancelled and not handle.cancelled:
                handle.cancelled = True
                self.terminate(handle)
        return handle

    def run(
        self,
        command: str,
        args: Sequence[str] = (),
        cwd: Optional[str] = None,
        timeout: Optional[float] = None,
        owner_id: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> ManagedProcess:
        """Spawn and wait in one call."""
        handle = self.spawn(command, args, cwd=cwd, timeout=timeout, owner_id=owner_id)
        return self.wait(handle, token)

    def terminate(self, handle: ManagedProcess) -> None:
        """Send SIGTERM to the group now; the reaper escalates to SIGKILL after the grace period."""
        with self._lock:
            if handle.state != ProcessState.RUNNING or handle._term_sent_at is not None:
                return
            handle._term_sent_at = time.time()
        logger.info("Terminating process group %d", handle.pgid)
        _signal_group(handle.pgid, signal.SIGTERM)

    def list_active(self) -> List[ManagedProcess]:
        """Processes currently in Running state."""
        with self._lock:
            return [p for p in self._processes.values() if p.state == ProcessState.RUNNING]

    def terminate_all(self) -> int:
        """Force-kill every running process group. Safe to call repeatedly.

        Returns:
            Number of processes that were reaped.
        """
        with self._lock:
            running = [p for p in self._processes.values() if p.state == ProcessState.RUNNING]
        for handle in running:
            _signal_group(handle.pgid, signal.SIGKILL)
        for handle in running:
            self._finalize(handle, ProcessState.REAPED)
        if running:
            logger.info("Reaped %d process(es) on shutdown", len(running))
        return len(running)

    def _reap_loop(self) -> None:
        while True:
            with self._lock:
                running = [p for p in self._processes.values() if p.state == ProcessState.RUNNING]
                if not running:
                    self._reaper = None
                    return
            now = time.time()
            for handle in running:
                popen = handle._popen
                if popen is not None and popen.poll() is not None:
                    state = ProcessState.KILLED if handle._term_sent_at is not None else ProcessState.COMPLETED
                    # Draining the pipes can block; deadlines of other processes must not wait on it.
                    if self._claim(handle, state):
                        threading.Thread(
                            target=self._complete, args=(handle, state), name=f"finalize-{handle.pid}", daemon=True
                        ).start()
                    continue
                if handle._term_sent_at is None and handle.deadline is not None and now >= handle.deadline:
                    handle.timed_out = True
                    logger.warning("Process %d exceeded its deadline", handle.pid)
                    self.terminate(handle)
                elif handle._term_sent_at is not None and now >= handle._term_sent_at + self.grace_period:
                    _signal_group(handle.pgid, signal.SIGKILL)
            time.sleep(_POLL_INTERVAL)

    def _finalize(self, handle: ManagedProcess, state: ProcessState) -> None:
        if self._claim(handle, state):
            self._complete(handle, state)

    def _claim(self, handle: ManagedProcess, state: ProcessState) -> bool:
        with self._lock:
            if handle.state != ProcessState.RUNNING:
                return False
            handle.state = state
            self._processes.pop(handle.pid, None)
        # Kill whatever is left of the group so no descendant outlives its leader.
        _signal_group(handle.pgid, signal.SIGKILL)
        return True

    def _complete(self, handle: ManagedProcess, state: ProcessState) -> None:
        popen = handle._popen
        if popen is not None:
            try:
                popen.wait(timeout=max(self.grace_period, 1.0))
            except subprocess.TimeoutExpired:
                logger.error("Process %d did not exit after SIGKILL", handle.pid)
            handle.returncode = popen.returncode
        for reader in handle._readers:
            reader.join(timeout=1.0)
        handle.finished_at = time.time()
        logger.debug("Process %d finished: %s (rc=%s)", handle.pid, state.value, handle.returncode)
        handle._done.set()
