"""Shell command tool backed by the process supervisor."""

import shlex
from pathlib import Path
from typing import Iterable, Optional

from pydantic import Field

from ..errors import Cancelled, InvalidArguments, ProcessFailed, TimedOut, ToolError
from ..logging_config import get_logger
from ..process import ManagedProcess, ProcessState, ProcessSupervisor
from ..workspace import get_workspace_root
from .base import Capability, ToolArgs, ToolContext, ToolOutput, ToolSpec
from .filesystem import resolve_path
from .registry import ToolRegistry

logger = get_logger(__name__)

SHELL_OPERATORS = ("|", "&&", "||", ";", ">", ">>", "<", "&")
# Operators after which the next argument is a program to run.
COMMAND_SEPARATORS = ("|", "&&", "||", ";", "&")


class RunCommandArgs(ToolArgs):
    command: str = Field(description="Program to run, e.g. 'git' or 'pytest'")
    args: list[str] = Field(default_factory=list, description="Arguments, one per item")
    cwd: Optional[str] = Field(default=None, description="Working directory (defaults to the workspace)")
    timeout: Optional[float] = Field(default=None, gt=0, le=3600, description="Seconds before the command is killed")


def needs_shell(args: Iterable[str]) -> bool:
    """True when any argument is a shell operator such as ``|`` or ``&&``."""
    return any(arg in SHELL_OPERATORS for arg in args)


class CommandRunner:
    """Runs allow-listed programs through the supervisor.

    Args:
        supervisor: Process supervisor that owns the children.
        allowed_commands: Program names that may be executed. Empty allows all.
        default_timeout: Process deadline when the call does not set one.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        allowed_commands: Iterable[str] = (),
        default_timeout: float = 120.0,
    ):
        self.supervisor = supervisor
        self.allowed_commands = set(allowed_commands)
        self.default_timeout = default_timeout

    def _check_allowed(self, program: str) -> None:
        if not self.allowed_commands:
            return
        name = Path(program).name
        if name not in self.allowed_commands:
            raise InvalidArguments(
                f"Command '{name}' is not allowed. Allowed commands: {', '.join(sorted(self.allowed_commands))}"
            )

    def run_command(self, args: RunCommandArgs, ctx: ToolContext) -> ToolOutput:
        command = args.command.strip()
        argv = list(args.args)
        if not argv and " " in command:
            # The model sometimes passes the whole command line as one string.
            command, *argv = shlex.split(command)
        self._check_allowed(command)

        if needs_shell(argv):
            # Every program in a pipeline must be allowed, not just the first.
            for index, arg in enumerate(argv):
                if arg in COMMAND_SEPARATORS and index + 1 < len(argv):
                    self._check_allowed(argv[index + 1])
            line = " ".join([shlex.quote(command)] + [a if a in SHELL_OPERATORS else shlex.quote(a) for a in argv])
            program, program_args = "sh", ["-c", line]
        else:
            program, program_args = command, argv

        cwd = resolve_path(args.cwd) if args.cwd else get_workspace_root()
        if not cwd.is_dir():
            raise InvalidArguments(f"Working directory does not exist: {cwd}")
        timeout = args.timeout or self.default_timeout
        ctx.token.raise_if_cancelled()

        try:
            handle = self.supervisor.spawn(program, program_args, cwd=str(cwd), timeout=timeout, owner_id=ctx.call_id)
        except FileNotFoundError:
            raise ToolError(f"Command not found: {command}")
        except OSError as e:
            raise ToolError(f"Could not start {command}: {e}")

        self.supervisor.wait(handle, ctx.token)
        return process_output(handle, timeout)


def process_output(handle: ManagedProcess, timeout: float, label: str = "Command") -> ToolOutput:
    """Turn a finished process into a tool result.

    Raises:
        TimedOut: The process hit its deadline.
        Cancelled: The process was cancelled or killed.
        ProcessFailed: The process exited with a non-zero status.
    """
    output = handle.output()
    metadata = {
        "exit_code": handle.returncode,
        "pid": handle.pid,
        "duration": round(handle.duration, 3),
        "truncated": handle.truncated,
    }
    if handle.timed_out:
        raise TimedOut(f"{label} timed out after {timeout:g}s and was killed", output=output or None)
    if handle.cancelled or handle.state != ProcessState.COMPLETED:
        raise Cancelled(f"{label} was cancelled and killed", output=output or None)
    if handle.returncode != 0:
        raise ProcessFailed(
            f"{label} exited with status {handle.returncode}",
            exit_code=handle.returncode,
            output=output or None,
        )
    return ToolOutput(text=output if output.strip() else f"{label} succeeded with no output.", metadata=metadata)


def register_system_tools(
    registry: ToolRegistry,
    supervisor: ProcessSupervisor,
    allowed_commands: Iterable[str] = (),
    default_timeout: float = 120.0,
    grace_period: float = 2.0,
) -> CommandRunner:
    """Register ``run_command`` on ``registry``."""
    runner = CommandRunner(supervisor, allowed_commands, default_timeout)
    registry.register(
        ToolSpec(
            name="run_command",
            description=(
                "Run an allow-listed program and return its output. Put each argument in 'args'. "
                "Shell operators such as '|' or '&&' may be given as separate args."
            ),
            args_schema=RunCommandArgs,
            handler=runner.run_command,
            capabilities=frozenset({Capability.PROCESS}),
            requires_confirmation=True,
            resources=lambda a: {str(resolve_path(a.cwd) if a.cwd else get_workspace_root())},
            # The process deadline fires first; the dispatcher deadline is a backstop.
            timeout=lambda a: (a.timeout or default_timeout) + grace_period + 5.0,
        )
    )
    return runner
