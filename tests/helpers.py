"""Helpers shared by the process-level tests."""

import sys

from fetch_harness.harness.adapters.base import HarnessAdapter
from fetch_harness.harness.types import FileOperations, HarnessConfig, OUTPUT_COMPLETE, OUTPUT_FILE_OP


def python_config(script: str, cwd=None, timeout_ms: int = 0) -> HarnessConfig:
    """HarnessConfig that runs a Python snippet as the agent process."""
    return HarnessConfig(
        command=sys.executable,
        args=["-u", "-c", script],
        cwd=str(cwd) if cwd else None,
        timeout_ms=timeout_ms,
    )


class ScriptAdapter(HarnessAdapter):
    """Adapter that runs a Python script instead of a real agent CLI.

    The goal text is ignored; the script decides what the "agent" prints.
    File operations use the "Created path" / "Edited path" line format.
    """

    display_name = "Script"
    description = "Test stand-in agent"

    def __init__(self, script: str, agent: str = "script"):
        self.script = script
        self.agent = agent

    def build_config(self, goal, workspace_path, timeout_ms=None):
        return python_config(self.script, cwd=workspace_path, timeout_ms=timeout_ms)

    def parse_output_line(self, line):
        stripped = line.strip()
        if stripped.startswith(("Created ", "Edited ", "Deleted ")):
            return OUTPUT_FILE_OP
        if stripped.startswith("Done"):
            return OUTPUT_COMPLETE
        return None

    def extract_file_operations(self, output):
        ops = FileOperations()
        for line in output.splitlines():
            line = line.strip()
            if line.startswith("Created "):
                ops.created.append(line[len("Created "):])
            elif line.startswith("Edited "):
                ops.modified.append(line[len("Edited "):])
            elif line.startswith("Deleted "):
                ops.deleted.append(line[len("Deleted "):])
        return ops
