"""Conversation state, render snapshots and the notification bus."""

from .conversation import Role, ToolCallRequest, ToolResult, Transcript, Turn
from .notifications import Notification, NotificationBus, NotificationKind, Subscription
from .snapshots import AgentState, RenderSnapshot, SnapshotChannel

__all__ = [
    "AgentState",
    "Notification",
    "NotificationBus",
    "NotificationKind",
    "RenderSnapshot",
    "Role",
    "SnapshotChannel",
    "Subscription",
    "ToolCallRequest",
    "ToolResult",
    "Transcript",
    "Turn",
]
