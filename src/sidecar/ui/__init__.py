"""Front ends: a scrolling console and a full-screen Textual app.

The Textual app is imported lazily by the entry point so the console path
does not pay for it.
"""

from .console import ConsoleUI, format_turn

__all__ = ["ConsoleUI", "format_turn"]
