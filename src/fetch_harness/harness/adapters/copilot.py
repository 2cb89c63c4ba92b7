"""Adapter for GitHub Copilot in the gh CLI.

Copilot only suggests code and commands; it never edits files itself, so
file operations are always empty and summaries describe the suggestion.
"""

import re
from typing import Optional

from fetch_harness.harness.adapters.base import MAX_SUMMARY_LENGTH, HarnessAdapter
from fetch_harness.harness.types import (
    OUTPUT_COMPLETE,
    OUTPUT_ERROR,
    OUTPUT_PROGRESS,
    OUTPUT_QUESTION,
    FileOperations,
    HarnessConfig,
)


COPILOT_COMMAND = "gh"

DEFAULT_ARGS = ["copilot", "suggest", "-t", "code"]

SUGGESTION_PATTERN = re.compile(r"^Suggestion:\s*(.+)$", re.MULTILINE)
EXPLANATION_PATTERN = re.compile(r"^Explanation:\s*(.+)$", re.MULTILINE)
CODE_BLOCK_PATTERN = re.compile(r"```\w*\n([\s\S]+?)```")
COMMAND_PATTERN = re.compile(r"^\$\s+(.+)$", re.MULTILINE)
QUESTION_PATTERN = re.compile(r"^(?:>|→)\s*(.+\?)\s*$", re.MULTILINE)
ERROR_PATTERN = re.compile(r"^(?:Error|Failed):\s+(.+)$", re.IGNORECASE)
MENU_PATTERN = re.compile(r"\[1\]|\[2\]|choose|select", re.IGNORECASE)
CONFIRM_PATTERN = re.compile(r"confirm|continue|proceed", re.IGNORECASE)
COMPLETION_PATTERNS = [
    re.compile(r"^Done\.?$", re.IGNORECASE),
    re.compile(r"^Suggestion complete", re.IGNORECASE),
    re.compile(r"^Here's my suggestion", re.IGNORECASE),
]

DEFAULT_SUMMARY = "Suggestion generated."


class CopilotAdapter(HarnessAdapter):
    """Runs ``gh copilot suggest`` for code suggestions."""

    agent = "copilot"
    display_name = "GitHub Copilot CLI"
    description = "Code and shell command suggestions"
    can_modify_files = False
    interactive = False

    def build_config(self, goal: str, workspace_path: str, timeout_ms: Optional[int] = None) -> HarnessConfig:
        return HarnessConfig(
            command=COPILOT_COMMAND,
            args=[*DEFAULT_ARGS, goal],
            env=self._copilot_env(),
            cwd=workspace_path,
            timeout_ms=timeout_ms,
        )

    def build_explain_config(self, code: str, workspace_path: str, timeout_ms: Optional[int] = None) -> HarnessConfig:
        """Build an invocation that asks Copilot to explain a snippet."""
        return HarnessConfig(
            command=COPILOT_COMMAND,
            args=["copilot", "explain", code],
            env=self._copilot_env(),
            cwd=workspace_path,
            timeout_ms=timeout_ms,
        )

    def parse_output_line(self, line: str) -> Optional[str]:
        line = line.strip()
        if QUESTION_PATTERN.search(line):
            return OUTPUT_QUESTION
        if SUGGESTION_PATTERN.search(line) or EXPLANATION_PATTERN.search(line):
            return OUTPUT_PROGRESS
        if any(p.search(line) for p in COMPLETION_PATTERNS):
            return OUTPUT_COMPLETE
        if ERROR_PATTERN.search(line):
            return OUTPUT_ERROR
        return None

    def question_pattern(self) -> re.Pattern:
        return QUESTION_PATTERN

    def detect_question(self, output: str) -> Optional[str]:
        match = QUESTION_PATTERN.search(output)
        if match:
            return match.group(1).strip()

        for line in output.strip().split("\n")[-3:]:
            trimmed = line.strip()
            if not trimmed:
                continue
            if trimmed.endswith("?") or MENU_PATTERN.search(trimmed) or CONFIRM_PATTERN.search(trimmed):
                return trimmed
        return None

    def extract_file_operations(self, output: str) -> FileOperations:
        return FileOperations()

    def extract_suggestions(self, output: str) -> list[str]:
        """Suggestion lines followed by fenced code blocks, in that order."""
        suggestions = [m.strip() for m in re.findall(r"Suggestion:\s*(.+)", output, re.IGNORECASE)]
        suggestions.extend(m.strip() for m in CODE_BLOCK_PATTERN.findall(output))
        return suggestions

    def extract_commands(self, output: str) -> list[str]:
        """Shell commands shown as ``$ command`` lines."""
        return [m.strip() for m in COMMAND_PATTERN.findall(output)]

    def extract_summary(self, output: str) -> str:
        match = SUGGESTION_PATTERN.search(output)
        if match:
            return match.group(1).strip()

        match = EXPLANATION_PATTERN.search(output)
        if match:
            return match.group(1).strip()

        suggestions = self.extract_suggestions(output)
        if suggestions:
            return f"Generated {len(suggestions)} code suggestion(s)."

        commands = self.extract_commands(output)
        if commands:
            return f"Suggested command: {commands[0]}"

        paragraphs = [p for p in re.split(r"\n\n+", output) if len(p.strip()) > 20]
        if paragraphs:
            return paragraphs[-1].strip()[:MAX_SUMMARY_LENGTH]

        return DEFAULT_SUMMARY

    def _copilot_env(self) -> dict[str, str]:
        env = self._base_env()
        env["GH_NO_UPDATE_NOTIFIER"] = "1"
        return env
