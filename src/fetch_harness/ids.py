"""Identifier generation for tasks, harness executions and progress entries."""

import re
import secrets
import string

# URL-safe alphabet, same character set nanoid uses
ID_ALPHABET = string.ascii_letters + string.digits + "_-"

TASK_PREFIX = "tsk_"
HARNESS_PREFIX = "hrn_"
PROGRESS_PREFIX = "prg_"

_TASK_ID_RE = re.compile(r"^tsk_[A-Za-z0-9_-]{10}$")
_HARNESS_ID_RE = re.compile(r"^hrn_[A-Za-z0-9_-]{8}$")


def _random_suffix(length: int) -> str:
    return "".join(secrets.choice(ID_ALPHABET) for _ in range(length))


def generate_task_id() -> str:
    """Return a new task id, e.g. ``tsk_V1StGXR8_Z``."""
    return TASK_PREFIX + _random_suffix(10)


def generate_harness_id() -> str:
    """Return a new harness id, e.g. ``hrn_x7Kp2mQa``."""
    return HARNESS_PREFIX + _random_suffix(8)


def generate_progress_id() -> str:
    """Return a new progress entry id."""
    return PROGRESS_PREFIX + _random_suffix(8)


def is_valid_task_id(value: str) -> bool:
    """Check whether a string looks like a task id."""
    return bool(_TASK_ID_RE.match(value))


def is_valid_harness_id(value: str) -> bool:
    """Check whether a string looks like a harness id."""
    return bool(_HARNESS_ID_RE.match(value))
