"""
SANDLOOP Context Builder

Each iteration sees only the task and the model's own notes,
never the raw transcript of previous calls. Helpers here also
bound what gets embedded in prompts and normalize what comes back.
"""

from __future__ import annotations

import re

from sandloop.state import IterationContext, Task
from sandloop.workspace.tools import CommandResult

TRUNCATION_MARKER = "\n...[truncated]"

_WHOLE_FENCE = re.compile(r"^```[^\n]*\n(.*?)\n?```$", re.DOTALL)
_ANY_FENCE = re.compile(r"```[^\n]*\n(.*?)```", re.DOTALL)
_ONE_LINE_FENCE = re.compile(r"^```([^`\n]+)```$")


def truncate(text: str, limit: int, marker: str = TRUNCATION_MARKER) -> str:
    """Keep the first `limit` characters and flag the cut."""
    if len(text) <= limit:
        return text
    return text[:limit] + marker


def _section(tag: str, body: str) -> str:
    # A literal closing tag inside the body would end the section early
    safe = body.replace(f"</{tag}>", f"<\\/{tag}>")
    return f"<{tag}>\n{safe}\n</{tag}>"


def build_context(task: Task, notes: str | None, max_chars: int) -> str:
    parts = [_section("task", truncate(task.objective, max_chars))]
    if notes and notes.strip():
        parts.append(_section("notes", truncate(notes.strip(), max_chars)))
    return "\n\n".join(parts)


def render_context(context: IterationContext, max_chars: int) -> str:
    return build_context(context.task, context.notes, max_chars)


def format_command_result(result: CommandResult, limit: int) -> str:
    lines = [f"exit code: {result.exit_code}"]
    if result.timed_out:
        lines.append("timed out: yes")
    lines.append(f"stdout:\n{truncate(result.stdout, limit)}")
    lines.append(f"stderr:\n{truncate(result.stderr, limit)}")
    return "\n".join(lines)


def strip_code_fence(text: str) -> str:
    """Unwrap a fenced response; unfenced text is returned trimmed."""
    stripped = text.strip()

    match = _WHOLE_FENCE.match(stripped)
    if match:
        return match.group(1).strip()

    match = _ONE_LINE_FENCE.match(stripped)
    if match:
        return match.group(1).strip()

    match = _ANY_FENCE.search(stripped)
    if match:
        return match.group(1).strip()

    return stripped


def is_affirmative(text: str) -> bool:
    """First non-blank line starts with "yes", any case."""
    for line in text.splitlines():
        if line.strip():
            return line.strip().lower().startswith("yes")
    return False
