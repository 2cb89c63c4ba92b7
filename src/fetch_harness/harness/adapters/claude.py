"""Adapter for the Claude Code CLI."""

import re
from typing import Optional

from fetch_harness.harness.adapters.base import HarnessAdapter, dedupe
from fetch_harness.harness.types import (
    OUTPUT_COMPLETE,
    OUTPUT_FILE_OP,
    OUTPUT_PROGRESS,
    OUTPUT_QUESTION,
    FileOperations,
    HarnessConfig,
)


CLAUDE_COMMAND = "claude"

# --print disables the TUI; permission prompts would block a headless run
DEFAULT_ARGS = ["--print", "--dangerously-skip-permissions"]

QUESTION_PATTERN = re.compile(r"^\s*\?\s+(.+)", re.MULTILINE)
FILE_EDIT_PATTERN = re.compile(r"^(Edited|Created|Deleted|Modified)\s+(.+)$", re.MULTILINE)
PROGRESS_PATTERN = re.compile(r"^[⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏]\s+(.+)$", re.MULTILINE)
COMPLETION_PATTERNS = [
    re.compile(r"^Done\.?$", re.IGNORECASE),
    re.compile(r"^Completed\.?$", re.IGNORECASE),
    re.compile(r"^Finished\.?$", re.IGNORECASE),
    re.compile(r"^Task completed", re.IGNORECASE),
]


class ClaudeAdapter(HarnessAdapter):
    """Runs Claude Code in print mode with permissions pre-approved."""

    agent = "claude"
    display_name = "Claude Code"
    description = "Complex multi-file changes"

    def build_config(self, goal: str, workspace_path: str, timeout_ms: Optional[int] = None) -> HarnessConfig:
        return HarnessConfig(
            command=CLAUDE_COMMAND,
            args=[*DEFAULT_ARGS, "-p", goal],
            env=self._base_env(),
            cwd=workspace_path,
            timeout_ms=timeout_ms,
        )

    def parse_output_line(self, line: str) -> Optional[str]:
        line = line.rstrip()
        if QUESTION_PATTERN.search(line):
            return OUTPUT_QUESTION
        if FILE_EDIT_PATTERN.search(line):
            return OUTPUT_FILE_OP
        if PROGRESS_PATTERN.search(line):
            return OUTPUT_PROGRESS
        if any(p.search(line.strip()) for p in COMPLETION_PATTERNS):
            return OUTPUT_COMPLETE
        return None

    def question_pattern(self) -> re.Pattern:
        return QUESTION_PATTERN

    def progress_pattern(self) -> re.Pattern:
        return PROGRESS_PATTERN

    def extract_file_operations(self, output: str) -> FileOperations:
        ops = FileOperations()
        for operation, path in FILE_EDIT_PATTERN.findall(output):
            path = path.strip()
            if operation == "Created":
                ops.created.append(path)
            elif operation == "Deleted":
                ops.deleted.append(path)
            else:
                ops.modified.append(path)

        return FileOperations(
            created=dedupe(ops.created),
            modified=dedupe(ops.modified),
            deleted=dedupe(ops.deleted),
        )
