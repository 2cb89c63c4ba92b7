"""Base class for agent adapters.

An adapter holds everything that is specific to one agent CLI: how to
invoke it for a goal, and how to read its output conventions. The pool,
spawner and executor never look at agent-specific details.
"""

import re
from abc import ABC, abstractmethod
from typing import Optional

from fetch_harness.harness.types import AdapterCapabilities, FileOperations, HarnessConfig


QUESTION_SUFFIX = re.compile(r"\?\s*$")
YES_NO_PATTERN = re.compile(r"\[y/n\]", re.IGNORECASE)
PAREN_YES_NO = re.compile(r"\(yes/no\)", re.IGNORECASE)
CONTINUE_PATTERN = re.compile(r"continue\?|proceed\?|confirm", re.IGNORECASE)

SUMMARY_SECTION = re.compile(r"##?\s*Summary\s*\n([\s\S]+?)(?=\n##|\Z)", re.IGNORECASE)
DONE_WITH_TEXT = re.compile(r"^\s*(?:Done|Complete|Finished)\b[.:!]?[ \t]*(.+)?$", re.IGNORECASE | re.MULTILINE)
PARAGRAPH_SPLIT = re.compile(r"\n\n+")

MAX_SUMMARY_LENGTH = 500
DEFAULT_SUMMARY = "Task completed."

# Env applied to every agent so CLIs skip TUI rendering and color
NON_INTERACTIVE_ENV = {
    "CI": "true",
    "TERM": "dumb",
}


def dedupe(paths: list[str]) -> list[str]:
    """Remove duplicates while keeping first-seen order."""
    seen = set()
    result = []
    for path in paths:
        if path not in seen:
            seen.add(path)
            result.append(path)
    return result


class HarnessAdapter(ABC):
    """Strategy object for one agent CLI."""

    agent: str = ""
    display_name: str = ""
    description: str = ""
    can_modify_files: bool = True
    interactive: bool = True

    @abstractmethod
    def build_config(self, goal: str, workspace_path: str, timeout_ms: Optional[int] = None) -> HarnessConfig:
        """
        Build the process invocation for a goal.

        Args:
            goal: Natural-language description of the work.
            workspace_path: Directory the agent runs in.
            timeout_ms: Kill the process after this long. None takes the
                pool default and 0 disables the timeout.

        Returns:
            HarnessConfig ready for the pool.
        """

    @abstractmethod
    def parse_output_line(self, line: str) -> Optional[str]:
        """
        Classify one output line using this agent's conventions.

        Returns:
            One of "question", "progress", "file_op", "error", "complete",
            or None when the line has no special meaning.
        """

    @abstractmethod
    def extract_file_operations(self, output: str) -> FileOperations:
        """Parse the full transcript for created, modified and deleted files."""

    def question_pattern(self) -> Optional[re.Pattern]:
        """Agent-specific question pattern, checked before the generic ones."""
        return None

    def progress_pattern(self) -> Optional[re.Pattern]:
        """Agent-specific progress pattern, excluded from summaries."""
        return None

    def format_response(self, text: str) -> str:
        """Normalize a user reply into the stdin payload."""
        return text.strip() + "\n"

    def detect_question(self, output: str) -> Optional[str]:
        """
        Find a pending question at the end of the output.

        The agent's own question pattern wins; otherwise the last three
        lines are checked for a trailing "?", yes/no prompts and
        continue/proceed/confirm phrasing.
        """
        primary = self.question_pattern()
        if primary is not None:
            match = primary.search(output)
            if match:
                return (match.group(1) if match.groups() else match.group(0)).strip()

        for line in output.strip().split("\n")[-3:]:
            trimmed = line.strip()
            if not trimmed:
                continue
            if (
                QUESTION_SUFFIX.search(trimmed)
                or YES_NO_PATTERN.search(trimmed)
                or PAREN_YES_NO.search(trimmed)
                or CONTINUE_PATTERN.search(trimmed)
            ):
                return trimmed

        return None

    def extract_summary(self, output: str) -> str:
        """
        Best-effort synopsis of what the agent did.

        Prefers an explicit "## Summary" section, then text after a
        Done/Complete/Finished marker, then the last paragraph longer than
        20 characters that is not a progress line.
        """
        section = SUMMARY_SECTION.search(output)
        if section:
            return section.group(1).strip()[:MAX_SUMMARY_LENGTH]

        for match in DONE_WITH_TEXT.finditer(output):
            if match.group(1) and match.group(1).strip():
                return match.group(1).strip()[:MAX_SUMMARY_LENGTH]

        progress = self.progress_pattern()
        paragraphs = [
            p for p in PARAGRAPH_SPLIT.split(output)
            if len(p.strip()) > 20 and not (progress and progress.search(p))
        ]
        if paragraphs:
            return paragraphs[-1].strip()[:MAX_SUMMARY_LENGTH]

        return DEFAULT_SUMMARY

    def capabilities(self) -> AdapterCapabilities:
        return AdapterCapabilities(
            agent=self.agent,
            display_name=self.display_name,
            can_modify_files=self.can_modify_files,
            interactive=self.interactive,
            description=self.description,
        )

    def _base_env(self) -> dict[str, str]:
        return dict(NON_INTERACTIVE_ENV)
