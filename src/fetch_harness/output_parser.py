"""Streaming output parser for fetch-harness.

Turns raw agent terminal output into lines, and classifies each line as a
question, progress update, file operation, error or completion marker. The
parser is agent-agnostic; agent-specific adapters refine its results.
"""

import codecs
import re
from dataclasses import dataclass, field
from typing import Optional, Union


# Line categories, in precedence order for the single emitted classification
QUESTION = "question"
ERROR = "error"
FILE_OP = "file_op"
COMPLETE = "complete"
PROGRESS = "progress"

CLASSIFICATION_ORDER = (QUESTION, ERROR, FILE_OP, COMPLETE, PROGRESS)

FILE_OP_CREATE = "create"
FILE_OP_MODIFY = "modify"
FILE_OP_DELETE = "delete"

ANSI_PATTERN = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"      # CSI sequences (colors, cursor moves)
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC sequences (titles, links)
    r"|\x1b[@-Z\\-_]"               # two-character escapes
)

QUESTION_PATTERNS = [
    re.compile(r"^\s*\?\s+(.+)"),
    re.compile(r"^(.+\?)\s*$"),
    re.compile(r"\[y/n\]", re.IGNORECASE),
    re.compile(r"\(yes/no\)", re.IGNORECASE),
    re.compile(r"press enter to continue", re.IGNORECASE),
    re.compile(r"continue\?\s*$", re.IGNORECASE),
    re.compile(r"proceed\?\s*$", re.IGNORECASE),
    re.compile(r"confirm\?\s*$", re.IGNORECASE),
]

SPINNER_CHARS = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"

PROGRESS_PATTERNS = [
    re.compile(rf"^[{SPINNER_CHARS}]\s*(.+)$"),
    re.compile(r"^\[[\s=>#-]+\]\s*(\d+)%"),
    re.compile(r"^(\d+)%\s+complete", re.IGNORECASE),
    re.compile(r"^Working on\s+(.+)", re.IGNORECASE),
    re.compile(r"^Processing\s+(.+)", re.IGNORECASE),
    re.compile(r"^Analyzing\s+(.+)", re.IGNORECASE),
]

PERCENT_PATTERN = re.compile(r"(\d+)%")

FILE_OP_PATTERNS = [
    (re.compile(r"^Created?\s+(.+)$", re.IGNORECASE), FILE_OP_CREATE),
    (re.compile(r"^Wrote\s+(.+)$", re.IGNORECASE), FILE_OP_CREATE),
    (re.compile(r"^Edit(?:ed)?\s+(.+)$", re.IGNORECASE), FILE_OP_MODIFY),
    (re.compile(r"^Modif(?:y|ied)\s+(.+)$", re.IGNORECASE), FILE_OP_MODIFY),
    (re.compile(r"^Updated?\s+(.+)$", re.IGNORECASE), FILE_OP_MODIFY),
    (re.compile(r"^Deleted?\s+(.+)$", re.IGNORECASE), FILE_OP_DELETE),
    (re.compile(r"^Removed?\s+(.+)$", re.IGNORECASE), FILE_OP_DELETE),
]

ERROR_PATTERNS = [
    re.compile(r"^error:", re.IGNORECASE),
    re.compile(r"^fatal:", re.IGNORECASE),
    re.compile(r"failed to", re.IGNORECASE),
    re.compile(r"permission denied", re.IGNORECASE),
    re.compile(r"not found", re.IGNORECASE),
    re.compile(r"does not exist", re.IGNORECASE),
]

COMPLETION_PATTERNS = [
    re.compile(r"^Done\.?$", re.IGNORECASE),
    re.compile(r"^Completed\.?$", re.IGNORECASE),
    re.compile(r"^Finished\.?$", re.IGNORECASE),
    re.compile(r"^Task completed", re.IGNORECASE),
    re.compile(r"^All done", re.IGNORECASE),
    re.compile(r"^Successfully", re.IGNORECASE),
]

SUMMARY_SECTION_PATTERN = re.compile(r"##?\s*Summary\s*\n([\s\S]*?)(?:\n##|$)", re.IGNORECASE)

MAX_SUMMARY_LENGTH = 500


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences from text."""
    return ANSI_PATTERN.sub("", text)


@dataclass
class FileOperation:
    """A file change reported by the agent."""

    operation: str  # "create", "modify" or "delete"
    path: str


@dataclass
class ParserEvent:
    """An event produced while parsing output.

    ``type`` is "line" for every complete line, or one of the line
    categories for the classification of that line. ``matches`` lists every
    category the line matched, even those that lost on precedence.
    """

    type: str
    line: str
    data: dict = field(default_factory=dict)
    matches: tuple = ()


def match_question(line: str) -> Optional[str]:
    """Return the question text if the line looks like a question."""
    for pattern in QUESTION_PATTERNS:
        match = pattern.search(line)
        if match:
            group = match.group(1) if match.groups() else None
            return (group or line).strip()
    return None


def match_progress(line: str) -> Optional[dict]:
    """Return ``{"message", "percent"}`` if the line is a progress update."""
    for pattern in PROGRESS_PATTERNS:
        match = pattern.search(line)
        if match:
            data = {"message": (match.group(1) or line).strip(), "percent": None}
            percent = PERCENT_PATTERN.search(line)
            if percent:
                data["percent"] = int(percent.group(1))
            return data
    return None


def match_file_op(line: str) -> Optional[FileOperation]:
    """Return the file operation if the line reports one."""
    for pattern, operation in FILE_OP_PATTERNS:
        match = pattern.search(line)
        if match:
            return FileOperation(operation=operation, path=match.group(1).strip())
    return None


def match_error(line: str) -> bool:
    return any(pattern.search(line) for pattern in ERROR_PATTERNS)


def match_completion(line: str) -> bool:
    return any(pattern.search(line) for pattern in COMPLETION_PATTERNS)


class OutputParser:
    """Incremental line splitter and classifier for agent output."""

    def __init__(
        self,
        strip_ansi: bool = True,
        max_line_length: int = 10000,
        agent: Optional[str] = None,
    ):
        """
        Initialize the parser.

        Args:
            strip_ansi: Remove terminal escape sequences from each line.
            max_line_length: Force a line break when a pending line grows past this.
            agent: Agent the output comes from, for reference only.
        """
        self.strip_ansi = strip_ansi
        self.max_line_length = max_line_length
        self.agent = agent
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._lines: list[str] = []
        self._file_ops: list[FileOperation] = []
        self._completed = False

    def write(self, chunk: Union[str, bytes]) -> list[ParserEvent]:
        """
        Feed a chunk of output.

        Chunks may split lines (or multi-byte characters) anywhere; only
        complete lines are classified.

        Returns:
            Events for every line completed by this chunk, in order.
        """
        if isinstance(chunk, bytes):
            text = self._decoder.decode(chunk)
        else:
            text = chunk

        self._buffer += text
        return self._process_buffer()

    def flush(self) -> list[ParserEvent]:
        """Process whatever partial line is still buffered."""
        self._buffer += self._decoder.decode(b"", final=True)
        events: list[ParserEvent] = []
        if self._buffer.strip():
            events = self._process_line(self._buffer.strip())
        self._buffer = ""
        return events

    def reset(self) -> None:
        """Forget all buffered and parsed output."""
        self._decoder.reset()
        self._buffer = ""
        self._lines = []
        self._file_ops = []
        self._completed = False

    @property
    def lines(self) -> list[str]:
        return list(self._lines)

    @property
    def output(self) -> str:
        return "\n".join(self._lines)

    @property
    def file_operations(self) -> list[FileOperation]:
        return list(self._file_ops)

    @property
    def completed(self) -> bool:
        return self._completed

    def _process_buffer(self) -> list[ParserEvent]:
        parts = re.split(r"\r?\n", self._buffer)
        self._buffer = parts.pop()

        events: list[ParserEvent] = []
        for line in parts:
            events.extend(self._process_line(line))

        if len(self._buffer) > self.max_line_length:
            events.extend(self._process_line(self._buffer))
            self._buffer = ""

        return events

    def _process_line(self, line: str) -> list[ParserEvent]:
        # Escape sequences can span chunks, so strip per complete line
        if self.strip_ansi:
            line = strip_ansi(line)
        self._lines.append(line)
        events = [ParserEvent(type="line", line=line)]

        stripped = line.strip()
        if not stripped:
            return events

        found: dict[str, dict] = {}

        question = match_question(stripped)
        if question:
            found[QUESTION] = {"question": question}

        if match_error(stripped):
            found[ERROR] = {"message": stripped}

        file_op = match_file_op(stripped)
        if file_op:
            found[FILE_OP] = {"operation": file_op.operation, "path": file_op.path}

        if match_completion(stripped):
            found[COMPLETE] = {}

        progress = match_progress(stripped)
        if progress:
            found[PROGRESS] = progress

        if not found:
            return events

        matches = tuple(category for category in CLASSIFICATION_ORDER if category in found)
        winner = matches[0]

        if winner == FILE_OP:
            self._file_ops.append(file_op)
        elif winner == COMPLETE:
            self._completed = True

        events.append(ParserEvent(type=winner, line=line, data=found[winner], matches=matches))
        return events


def extract_summary(parser: OutputParser) -> str:
    """
    Pull a human-readable summary out of parsed output.

    Uses an explicit "## Summary" section when present, otherwise the last
    paragraph longer than 20 characters, otherwise "Task completed.".
    """
    output = parser.output

    section = SUMMARY_SECTION_PATTERN.search(output)
    if section and section.group(1).strip():
        return section.group(1).strip()[:MAX_SUMMARY_LENGTH]

    paragraphs = [p.strip() for p in re.split(r"\n\s*\n", output) if p.strip()]
    for paragraph in reversed(paragraphs):
        if len(paragraph) > 20:
            return paragraph[:MAX_SUMMARY_LENGTH]

    return "Task completed."


def create_parser(agent: Optional[str] = None, **kwargs) -> OutputParser:
    """Create a parser for the given agent."""
    return OutputParser(agent=agent, **kwargs)
