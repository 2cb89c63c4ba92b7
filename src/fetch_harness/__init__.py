"""
Fetch Harness - Task orchestration for external coding agent CLIs.

Runs coding agents (Claude, Gemini, Copilot) as child processes under a
concurrency-limited pool, tracks each delegated request as a task with a
strict lifecycle, and turns raw terminal output into structured progress,
file-change, question and completion events.
"""

from fetch_harness.version import __version__

__all__ = ["__version__"]
