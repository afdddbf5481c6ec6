"""The agent loop."""

from .orchestrator import AgentBusy, Orchestrator

__all__ = ["AgentBusy", "Orchestrator"]
