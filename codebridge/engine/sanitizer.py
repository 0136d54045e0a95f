"""Command validation and path sanitization.

Pure functions, no I/O. The command deny-list is a pattern heuristic,
not a shell parser: it catches the obvious destructive forms and is one
layer of defense, not a sandbox.
"""
from __future__ import annotations

import re
from collections.abc import Iterable

from .errors import DangerousCommandError, ValidationError

MAX_COMMAND_LENGTH = 5000
MAX_PROJECT_ID_LENGTH = 100

# Command separators that can precede a new command on the same line.
_CMD_START = r"(?:^|[;&|`(]|\$\(|\n)\s*"

DEFAULT_DENY_PATTERNS: tuple[str, ...] = (
    # Recursive deletion from the filesystem root (or home)
    r"\brm\s+(?:-[a-z]*r[a-z]*f[a-z]*|-[a-z]*f[a-z]*r[a-z]*|(?:-[rf]\s+){2}|--recursive\s+--force\s+|--force\s+--recursive\s+)\s*(?:/|~|\*)(?:\s|$|\*)",
    r"--no-preserve-root\b",
    # Privilege escalation
    _CMD_START + r"sudo\b",
    _CMD_START + r"doas\b",
    _CMD_START + r"su(?:\s+-|\s+root\b|\s*$)",
    r"\bpkexec\b",
    # Permission and ownership changes
    r"\bchmod\s+(?:-[a-z]+\s+)*(?:0?777|a\+rwx|\+s|u\+s|g\+s)\b",
    r"\bchmod\s+-[a-z]*R",
    r"\bchown\s+",
    # Dynamic code evaluation
    r"\beval\s*\(",
    r"\bexec\s*\(",
    r"\bsystem\s*\(",
    _CMD_START + r"eval\s+",
    # Downloading to a file with network tools
    r"\bcurl\b.*(?:\s-o\b|\s-O\b|--output\b|--remote-name\b)",
    r"\bwget\b.*(?:\s-O\b|--output-document\b)",
    r"\b(?:curl|wget)\b.*\|\s*(?:ba|z|da)?sh\b",
    # Environment tampering
    r"\bexport\s+\S*PATH\b",
    r"\bunset\s+",
    r"\bLD_PRELOAD\s*=",
    # Raw disk and fork-bomb forms
    r"\bmkfs(?:\.\w+)?\b",
    r"\bdd\b.*\bof=/dev/",
    r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:",
)

# Characters that are illegal or hazardous in file names on common
# filesystems, plus ASCII control characters.
_ILLEGAL_PATH_CHARS = re.compile(r'[<>:"|?*\x00-\x1f\x7f]')


def compile_deny_patterns(extra: Iterable[str] = ()) -> list[re.Pattern[str]]:
    """Compile the default deny-list plus configured extras (case-insensitive)."""
    compiled: list[re.Pattern[str]] = []
    for pattern in (*DEFAULT_DENY_PATTERNS, *extra):
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE | re.MULTILINE))
        except re.error as exc:
            raise ValueError(f"Invalid deny pattern {pattern!r}: {exc}") from exc
    return compiled


_DEFAULT_COMPILED = compile_deny_patterns()


def find_dangerous_pattern(
    command: str,
    patterns: Iterable[re.Pattern[str]] | None = None,
) -> str | None:
    """Return the first deny-list pattern that matches, or None."""
    for pattern in patterns if patterns is not None else _DEFAULT_COMPILED:
        if pattern.search(command):
            return pattern.pattern
    return None


def validate_command(
    text: object,
    *,
    max_length: int = MAX_COMMAND_LENGTH,
    patterns: Iterable[re.Pattern[str]] | None = None,
) -> str:
    """Validate and normalize a command.

    Strips NUL bytes and surrounding whitespace, then rejects empty,
    over-length and deny-listed input.

    Raises:
        ValidationError: the command is missing, empty or too long.
        DangerousCommandError: the command matches a deny-list pattern.
    """
    if not isinstance(text, str):
        raise ValidationError("Command must be a string")
    command = text.replace("\x00", "").strip()
    if not command:
        raise ValidationError("Command cannot be empty")
    if len(command) > max_length:
        raise ValidationError(
            f"Command exceeds maximum length of {max_length} characters"
        )
    matched = find_dangerous_pattern(command, patterns)
    if matched is not None:
        raise DangerousCommandError(matched)
    return command


def sanitize_path(text: str) -> str:
    """Normalize a user-supplied path into a safe relative path.

    Separators become ``/``, illegal characters and every ``..`` are
    removed, and empty or ``.`` segments are dropped, so the result never
    escapes its root and never starts with ``/``. Idempotent.
    """
    if not text:
        return ""
    normalized = _ILLEGAL_PATH_CHARS.sub("", str(text).replace("\\", "/"))
    # Runs of dots collapse to at most one, so no ".." survives.
    normalized = normalized.replace("..", "")
    parts: list[str] = []
    for segment in normalized.split("/"):
        segment = segment.strip()
        if not segment or segment == ".":
            continue
        parts.append(segment)
    return "/".join(parts)


def validate_project_id(text: object) -> str:
    """Validate a project id and return it in a form safe to use as a directory name."""
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("Invalid project ID")
    if len(text) > MAX_PROJECT_ID_LENGTH:
        raise ValidationError(
            f"Project ID exceeds maximum length of {MAX_PROJECT_ID_LENGTH} characters"
        )
    sanitized = sanitize_path(text)
    if not sanitized or "/" in sanitized:
        raise ValidationError("Invalid project ID")
    return sanitized
