"""Tools the agent can call, and the registry/dispatcher that runs them.

Concrete tool groups live in their own modules (``filesystem``, ``system``,
``web``, ``rag``) and are registered with their ``register_*`` functions.
"""

from .base import Capability, ToolArgs, ToolContext, ToolOutput, ToolSpec
from .registry import Dispatcher, ToolRegistry, build_dispatcher

__all__ = [
    "Capability",
    "Dispatcher",
    "ToolArgs",
    "ToolContext",
    "ToolOutput",
    "ToolRegistry",
    "ToolSpec",
    "build_dispatcher",
]
