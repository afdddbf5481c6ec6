"""Conversation data model.

This module provides:
- Role: Who produced a turn
- ToolCallRequest: A tool invocation requested by the model
- ToolResult: The outcome of exactly one ToolCallRequest
- Turn: One immutable entry in the conversation
- Transcript: The append-only, ordered list of turns owned by the orchestrator
"""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ..errors import ErrorKind

TRUNCATION_MARKER = "\n... [truncated {dropped} chars]"


def truncate_text(text: str, limit: int) -> Tuple[str, bool]:
    """Cap ``text`` at ``limit`` characters, appending a marker when cut.

    Returns:
        (text, truncated)
    """
    if len(text) <= limit:
        return text, False
    return text[:limit] + TRUNCATION_MARKER.format(dropped=len(text) - limit), True


class Role(str, Enum):
    """Author of a turn."""
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    SYSTEM = "system"


@dataclass(frozen=True)
class ToolCallRequest:
    """A tool call requested by the model.

    ``id`` is the correlation id assigned by the orchestrator; the matching
    ToolResult carries the same id.
    """
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "arguments": dict(self.arguments)}

    @classmethod
    def from_dict(cls, data: dict) -> "ToolCallRequest":
        return cls(id=data["id"], name=data["name"], arguments=dict(data.get("arguments") or {}))


@dataclass(frozen=True)
class ToolResult:
    """Outcome of a single tool call."""
    call_id: str
    ok: bool
    payload: str
    error_kind: Optional[ErrorKind] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, call_id: str, payload: str, metadata: Optional[Dict[str, Any]] = None) -> "ToolResult":
        return cls(call_id=call_id, ok=True, payload=payload, metadata=dict(metadata or {}))

    @classmethod
    def failure(
        cls,
        call_id: str,
        kind: ErrorKind,
        payload: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "ToolResult":
        return cls(call_id=call_id, ok=False, payload=payload, error_kind=kind, metadata=dict(metadata or {}))

    def to_dict(self) -> dict:
        return {
            "call_id": self.call_id,
            "ok": self.ok,
            "payload": self.payload,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ToolResult":
        kind = data.get("error_kind")
        return cls(
            call_id=data["call_id"],
            ok=bool(data["ok"]),
            payload=data.get("payload", ""),
            error_kind=ErrorKind(kind) if kind else None,
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class Turn:
    """One entry of the conversation. Never mutated after it is appended."""
    role: Role
    content: str = ""
    tool_calls: Tuple[ToolCallRequest, ...] = ()
    tool_result: Optional[ToolResult] = None
    tool_name: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        """Serialize to dictionary."""
        return {
            "role": self.role.value,
            "content": self.content,
            "tool_calls": [c.to_dict() for c in self.tool_calls],
            "tool_result": self.tool_result.to_dict() if self.tool_result else None,
            "tool_name": self.tool_name,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Turn":
        """Deserialize from dictionary."""
        result = data.get("tool_result")
        return cls(
            role=Role(data["role"]),
            content=data.get("content", ""),
            tool_calls=tuple(ToolCallRequest.from_dict(c) for c in data.get("tool_calls") or []),
            tool_result=ToolResult.from_dict(result) if result else None,
            tool_name=data.get("tool_name"),
            timestamp=data.get("timestamp", time.time()),
        )

    @classmethod
    def user(cls, content: str) -> "Turn":
        return cls(role=Role.USER, content=content)

    @classmethod
    def system(cls, content: str) -> "Turn":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def assistant(cls, content: str, tool_calls: Tuple[ToolCallRequest, ...] = ()) -> "Turn":
        return cls(role=Role.ASSISTANT, content=content, tool_calls=tuple(tool_calls))

    @classmethod
    def tool(cls, name: str, result: ToolResult) -> "Turn":
        return cls(role=Role.TOOL, content=result.payload, tool_result=result, tool_name=name)


class Transcript:
    """Append-only ordered conversation.

    Readers get tuple snapshots, so a renderer iterating over turns never sees
    a list that is being appended to.
    """

    def __init__(self, turns: Optional[List[Turn]] = None):
        self._turns: List[Turn] = list(turns or [])
        self._lock = threading.Lock()

    def append(self, turn: Turn) -> None:
        with self._lock:
            self._turns.append(turn)

    def extend(self, turns: List[Turn]) -> None:
        with self._lock:
            self._turns.extend(turns)

    @property
    def turns(self) -> Tuple[Turn, ...]:
        with self._lock:
            return tuple(self._turns)

    def __len__(self) -> int:
        with self._lock:
            return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(self.turns)

    def unanswered_calls(self) -> List[ToolCallRequest]:
        """Return tool calls of the last assistant turn that have no result yet."""
        turns = self.turns
        answered = set()
        for turn in reversed(turns):
            if turn.role == Role.TOOL and turn.tool_result is not None:
                answered.add(turn.tool_result.call_id)
            elif turn.role == Role.ASSISTANT:
                return [c for c in turn.tool_calls if c.id not in answered]
        return []

    def close_unanswered_calls(self, reason: str = "interrupted before a result was recorded") -> int:
        """Record a cancelled result for every unanswered call of the last assistant turn.

        A session saved mid-dispatch can end with calls that never got a
        result; the model API rejects such a history. Returns the number of
        results added.
        """
        dangling = self.unanswered_calls()
        self.extend([
            Turn.tool(call.name, ToolResult.failure(call.id, ErrorKind.CANCELLED, f"Error: {reason}"))
            for call in dangling
        ])
        return len(dangling)

    def to_list(self) -> List[dict]:
        return [t.to_dict() for t in self.turns]

    @classmethod
    def from_list(cls, data: List[dict]) -> "Transcript":
        return cls([Turn.from_dict(d) for d in data])
