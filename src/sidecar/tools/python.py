"""Python script tool.

Scripts run in a private virtual environment, created on first use, as
supervised child processes. When a script fails on a missing module the
package is installed into that environment and the script runs once more.
"""

import os
import re
import sys
import tempfile
import threading
from pathlib import Path
from typing import Optional

from pydantic import Field

from ..cancellation import CancellationToken
from ..errors import ToolError
from ..logging_config import get_logger
from ..process import ManagedProcess, ProcessState, ProcessSupervisor
from ..workspace import get_workspace_root
from .base import Capability, ToolArgs, ToolContext, ToolOutput, ToolSpec
from .registry import ToolRegistry
from .system import process_output

logger = get_logger(__name__)

VENV_SETUP_TIMEOUT = 120.0
INSTALL_TIMEOUT = 300.0

_MISSING_MODULE = re.compile(r"ModuleNotFoundError: No module named '([^']+)'")


def missing_module(output: str) -> Optional[str]:
    """Top-level package named by a ``ModuleNotFoundError`` in ``output``, if any."""
    match = _MISSING_MODULE.search(output)
    if match is None:
        return None
    return match.group(1).split(".")[0]


class RunPythonArgs(ToolArgs):
    script: str = Field(min_length=1, description="The Python script to execute")
    timeout: Optional[float] = Field(default=None, gt=0, le=3600, description="Seconds before the script is killed")


class PythonRuntime:
    """A virtual environment for model-written scripts.

    Args:
        supervisor: Process supervisor that owns the interpreter processes.
        venv_dir: Where the environment lives; created on first use.
        base_python: Interpreter used to create the environment and run pip.
        auto_install: Install a missing module and retry once.
        default_timeout: Script deadline when the call does not set one.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        venv_dir: str | Path,
        base_python: Optional[str] = None,
        auto_install: bool = True,
        default_timeout: float = 120.0,
    ):
        self.supervisor = supervisor
        self.venv_dir = Path(venv_dir).expanduser()
        self.base_python = base_python or sys.executable
        self.auto_install = auto_install
        self.default_timeout = default_timeout
        self._lock = threading.Lock()

    @property
    def python_path(self) -> Path:
        if os.name == "nt":
            return self.venv_dir / "Scripts" / "python.exe"
        return self.venv_dir / "bin" / "python"

    def ensure_venv(self, token: Optional[CancellationToken] = None) -> Path:
        """Create the environment unless it exists. Returns its interpreter."""
        with self._lock:
            if self.python_path.exists():
                return self.python_path
            logger.info("Creating Python environment at %s", self.venv_dir)
            self.venv_dir.parent.mkdir(parents=True, exist_ok=True)
            # pip is run from the base interpreter with --python, so the environment needs none of its own.
            handle = self.supervisor.run(
                self.base_python,
                ["-m", "venv", "--without-pip", str(self.venv_dir)],
                timeout=VENV_SETUP_TIMEOUT,
                token=token,
            )
            if handle.state != ProcessState.COMPLETED or handle.returncode != 0:
                raise ToolError(f"Could not create the Python environment at {self.venv_dir}", output=handle.output())
            return self.python_path

    def install(self, package: str, ctx: ToolContext) -> None:
        """Install ``package`` into the environment.

        Raises:
            ToolError: pip failed or was interrupted.
        """
        logger.info("Installing %s into %s", package, self.venv_dir)
        handle = self.supervisor.run(
            self.base_python,
            ["-m", "pip", "--python", str(self.python_path), "install", "--quiet", package],
            timeout=INSTALL_TIMEOUT,
            owner_id=ctx.call_id,
            token=ctx.token,
        )
        if handle.state != ProcessState.COMPLETED or handle.returncode != 0:
            raise ToolError(f"Failed to install missing package '{package}'", output=handle.output())

    def run_script(self, script: str, timeout: float, ctx: ToolContext) -> ManagedProcess:
        python = self.ensure_venv(ctx.token)
        ctx.token.raise_if_cancelled()
        fd, script_path = tempfile.mkstemp(prefix="sidecar-", suffix=".py")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(script)
            return self.supervisor.run(
                str(python),
                [script_path],
                cwd=str(get_workspace_root()),
                timeout=timeout,
                owner_id=ctx.call_id,
                token=ctx.token,
            )
        finally:
            os.unlink(script_path)

    def run_python(self, args: RunPythonArgs, ctx: ToolContext) -> ToolOutput:
        timeout = args.timeout or self.default_timeout
        handle = self.run_script(args.script, timeout, ctx)
        package = None
        if self.auto_install and handle.state == ProcessState.COMPLETED and handle.returncode != 0:
            package = missing_module(handle.output())
        if package is None:
            return process_output(handle, timeout, label="Script")

        self.install(package, ctx)
        handle = self.run_script(args.script, timeout, ctx)
        result = process_output(handle, timeout, label="Script")
        result.text = f"(Installed missing package '{package}')\n{result.text}"
        result.metadata["installed"] = package
        return result


def register_python_tools(
    registry: ToolRegistry,
    supervisor: ProcessSupervisor,
    venv_dir: str | Path,
    auto_install: bool = True,
    default_timeout: float = 120.0,
    grace_period: float = 2.0,
    base_python: Optional[str] = None,
) -> PythonRuntime:
    """Register ``run_python`` on ``registry``."""
    runtime = PythonRuntime(supervisor, venv_dir, base_python, auto_install, default_timeout)

    def backstop(args: RunPythonArgs) -> float:
        # Environment setup, one install and two runs, each with its own process deadline.
        per_run = (args.timeout or default_timeout) + grace_period
        return VENV_SETUP_TIMEOUT + INSTALL_TIMEOUT + 2 * per_run + 5.0

    registry.register(
        ToolSpec(
            name="run_python",
            description=(
                "Execute a Python script for analysis, math or data processing and return its stdout and stderr. "
                "The script runs in the workspace directory. A missing module is installed automatically."
            ),
            args_schema=RunPythonArgs,
            handler=runtime.run_python,
            capabilities=frozenset({Capability.PROCESS, Capability.NETWORK}),
            resources=lambda a: {str(get_workspace_root())},
            timeout=backstop,
            requires_confirmation=True,
        )
    )
    return runtime
