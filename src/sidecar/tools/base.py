"""Tool specification types.

A tool is a ToolSpec: a name, a pydantic argument model, a capability set and
a handler. Handlers take the validated arguments and a ToolContext and return
either text or a ToolOutput; they signal failure by raising ToolError.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..cancellation import CancellationToken
from ..errors import InvalidArguments


class Capability(str, Enum):
    """What a tool may touch. Drives the dispatcher's conflict rules."""
    READ_FS = "read_fs"
    WRITE_FS = "write_fs"
    NETWORK = "network"
    PROCESS = "process"


class ToolArgs(BaseModel):
    """Base for tool argument models. Unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")


@dataclass
class ToolContext:
    """Per-call context handed to a handler."""
    call_id: str
    token: CancellationToken


@dataclass
class ToolOutput:
    """Successful handler output with optional structured metadata."""
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)


HandlerResult = Union[str, ToolOutput]


class ToolSpec(BaseModel):
    """Declarative tool specification for registration and validation."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str
    args_schema: type[BaseModel]
    handler: Callable[[Any, ToolContext], HandlerResult]
    capabilities: frozenset[Capability] = Field(default_factory=frozenset)
    resources: Optional[Callable[[Any], set[str]]] = None
    # Seconds, or a callable deriving the timeout from the validated arguments.
    timeout: Optional[Union[float, Callable[[Any], float]]] = None
    requires_confirmation: bool = False

    def schema(self) -> dict[str, Any]:
        """JSON schema of the arguments."""
        schema = self.args_schema.model_json_schema()
        schema.pop("title", None)
        return schema

    def as_openai_tool(self) -> dict[str, Any]:
        """Function-calling description accepted by ``bind_tools``."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.schema(),
            },
        }

    def validate_args(self, payload: Any) -> BaseModel:
        """Validate a raw argument mapping.

        Raises:
            InvalidArguments: The payload does not match the schema.
        """
        if not isinstance(payload, dict):
            raise InvalidArguments(f"Arguments for {self.name} must be an object, got {type(payload).__name__}")
        try:
            return self.args_schema.model_validate(payload)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()
            )
            raise InvalidArguments(f"Invalid arguments for {self.name}: {problems}") from e

    def timeout_for(self, args: Optional[BaseModel]) -> Optional[float]:
        if callable(self.timeout):
            return None if args is None else self.timeout(args)
        return self.timeout

    def resources_for(self, args: BaseModel) -> set[str]:
        if self.resources is None:
            return set()
        return set(self.resources(args))

    def writes(self) -> bool:
        return Capability.WRITE_FS in self.capabilities
