"""Agent adapters: one strategy object per supported agent CLI."""

from fetch_harness.harness.adapters.base import HarnessAdapter
from fetch_harness.harness.adapters.claude import ClaudeAdapter
from fetch_harness.harness.adapters.copilot import CopilotAdapter
from fetch_harness.harness.adapters.gemini import GeminiAdapter

__all__ = [
    "HarnessAdapter",
    "ClaudeAdapter",
    "CopilotAdapter",
    "GeminiAdapter",
]
