"""Adapter for the Gemini CLI."""

import re
from typing import Optional

from fetch_harness.harness.adapters.base import HarnessAdapter, dedupe
from fetch_harness.harness.types import (
    OUTPUT_COMPLETE,
    OUTPUT_ERROR,
    OUTPUT_FILE_OP,
    OUTPUT_PROGRESS,
    OUTPUT_QUESTION,
    FileOperations,
    HarnessConfig,
)


GEMINI_COMMAND = "gemini"

DEFAULT_ARGS = ["--sandbox=none"]

QUESTION_PATTERN = re.compile(r"^>\s*(.+\?)\s*$", re.MULTILINE)
FILE_OP_PATTERN = re.compile(r"^\[(Created|Modified|Deleted|Updated)\]\s+(.+)$", re.MULTILINE)
PROGRESS_PATTERN = re.compile(r"^(Analyzing|Working|Generating|Reading|Writing)\.\.\.", re.MULTILINE)
ERROR_PATTERN = re.compile(r"^Error:\s+(.+)$")
SELECTION_PATTERN = re.compile(r"choose|select|pick|which", re.IGNORECASE)
COMPLETION_PATTERNS = [
    re.compile(r"^Done\.?$", re.IGNORECASE),
    re.compile(r"^Complete\.?$", re.IGNORECASE),
    re.compile(r"^Finished\.?$", re.IGNORECASE),
    re.compile(r"^Task completed", re.IGNORECASE),
    re.compile(r"^Changes applied", re.IGNORECASE),
]


class GeminiAdapter(HarnessAdapter):
    """Runs the Gemini CLI with the sandbox disabled for full file access."""

    agent = "gemini"
    display_name = "Gemini CLI"
    description = "Quick edits and explanations"

    def build_config(self, goal: str, workspace_path: str, timeout_ms: Optional[int] = None) -> HarnessConfig:
        return HarnessConfig(
            command=GEMINI_COMMAND,
            args=[*DEFAULT_ARGS, "-p", goal],
            env=self._base_env(),
            cwd=workspace_path,
            timeout_ms=timeout_ms,
        )

    def parse_output_line(self, line: str) -> Optional[str]:
        line = line.strip()
        if QUESTION_PATTERN.search(line):
            return OUTPUT_QUESTION
        if FILE_OP_PATTERN.search(line):
            return OUTPUT_FILE_OP
        if PROGRESS_PATTERN.search(line):
            return OUTPUT_PROGRESS
        if any(p.search(line) for p in COMPLETION_PATTERNS):
            return OUTPUT_COMPLETE
        if ERROR_PATTERN.search(line):
            return OUTPUT_ERROR
        return None

    def question_pattern(self) -> re.Pattern:
        return QUESTION_PATTERN

    def progress_pattern(self) -> re.Pattern:
        return PROGRESS_PATTERN

    def detect_question(self, output: str) -> Optional[str]:
        question = super().detect_question(output)
        if question:
            return question

        # Selection prompts ("Which file should I pick?") spread over a menu
        for line in output.strip().split("\n")[-3:]:
            if SELECTION_PATTERN.search(line) and "?" in line:
                return line.strip()
        return None

    def extract_file_operations(self, output: str) -> FileOperations:
        created, modified, deleted = [], [], []
        for operation, path in FILE_OP_PATTERN.findall(output):
            path = path.strip()
            if operation == "Created":
                created.append(path)
            elif operation == "Deleted":
                deleted.append(path)
            else:
                modified.append(path)

        return FileOperations(
            created=dedupe(created),
            modified=dedupe(modified),
            deleted=dedupe(deleted),
        )
