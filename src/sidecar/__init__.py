"""sidecar: a terminal-resident agent for a local language model."""

__version__ = "0.1.0"
