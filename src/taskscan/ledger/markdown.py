"""Markdown phase records.

A phase file is free-form markdown in which checkbox lines are tasks::

    - [ ] Create navigation component
    - [x] Configure ESLint <!-- completed: 2026-10-19T10:00:00+00:00 confidence: 0.79 -->
      - evidence: structural marker eslint.config.js

Only task lines and the evidence lines directly under a completed task are
interpreted. Every other line is carried through a rewrite untouched.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

from taskscan.errors import MalformedRecordError
from taskscan.models import Task

TASK_PATTERN = re.compile(
    r"^(?P<indent>\s*)(?P<bullet>[-*])\s*\[(?P<mark>[ xX])\]\s*(?P<text>.+?)\s*$"
)
COMPLETION_PATTERN = re.compile(
    r"\s*<!--\s*completed:\s*(?P<at>\S+)(?:\s+confidence:\s*(?P<confidence>\S+))?\s*-->\s*$"
)
EVIDENCE_PATTERN = re.compile(r"^(?P<indent>\s+)[-*]\s+evidence:\s*(?P<text>.*?)\s*$")


@dataclass(slots=True)
class PendingCompletion:
    description: str
    confidence: float
    evidence: list[str]
    completed_at: str


def _parse_confidence(raw: str | None, description: str) -> float | None:
    if raw is None:
        return None
    try:
        value = float(raw)
    except ValueError as exc:
        raise MalformedRecordError(
            f"Unparsable confidence '{raw}' for task '{description}'."
        ) from exc
    if not 0.0 <= value <= 1.0:
        raise MalformedRecordError(f"Confidence {value} out of range for task '{description}'.")
    return value


def _format_confidence(value: float) -> str:
    rendered = f"{value:.4f}".rstrip("0").rstrip(".")
    return rendered or "0"


def _sanitize(text: str) -> str:
    return " ".join(text.split())


def parse_phase(text: str) -> list[Task]:
    lines = text.splitlines()
    tasks: list[Task] = []
    seen: set[str] = set()
    current: Task | None = None
    current_indent = 0

    for index, line in enumerate(lines):
        match = TASK_PATTERN.match(line)
        if match:
            body = match.group("text")
            completion = COMPLETION_PATTERN.search(body)
            description = body[: completion.start()].strip() if completion else body.strip()
            if not description:
                raise MalformedRecordError(f"Empty task description on line {index + 1}.")
            if description in seen:
                raise MalformedRecordError(f"Duplicate task description: '{description}'.")
            seen.add(description)

            done = match.group("mark").lower() == "x"
            task = Task(
                description=description,
                status="complete" if done else "pending",
                line=index,
            )
            if completion and done:
                task.completed_at = completion.group("at")
                task.confidence = _parse_confidence(completion.group("confidence"), description)
            tasks.append(task)
            current = task
            current_indent = len(match.group("indent"))
            continue

        evidence = EVIDENCE_PATTERN.match(line)
        if evidence and current is not None and len(evidence.group("indent")) > current_indent:
            current.evidence.append(evidence.group("text"))
            continue

        if line.strip():
            current = None

    return tasks


def _evidence_end(lines: list[str], task_line: int) -> int:
    """Index just past the evidence block that follows a task line."""
    match = TASK_PATTERN.match(lines[task_line])
    indent = len(match.group("indent")) if match else 0
    cursor = task_line + 1
    while cursor < len(lines):
        evidence = EVIDENCE_PATTERN.match(lines[cursor])
        if not evidence or len(evidence.group("indent")) <= indent:
            break
        cursor += 1
    return cursor


def apply_completions(
    text: str, completions: Iterable[PendingCompletion]
) -> tuple[str, list[Task]]:
    """Mark tasks complete in ``text``.

    Tasks that are already complete are left as they are. Returns the new text
    and the tasks this call transitioned, in file order.
    """
    tasks = {task.description: task for task in parse_phase(text)}
    lines = text.splitlines()
    trailing_newline = text.endswith("\n")

    targets: list[tuple[Task, PendingCompletion]] = []
    for completion in completions:
        task = tasks.get(completion.description)
        if task is None:
            raise KeyError(completion.description)
        if task.is_complete or any(existing is task for existing, _ in targets):
            continue
        targets.append((task, completion))

    # Bottom-up so inserted evidence lines do not shift pending targets.
    for task, completion in sorted(targets, key=lambda item: item[0].line or 0, reverse=True):
        line_index = task.line or 0
        match = TASK_PATTERN.match(lines[line_index])
        indent = match.group("indent") if match else ""
        bullet = match.group("bullet") if match else "-"
        lines[line_index] = (
            f"{indent}{bullet} [x] {task.description} <!-- completed: {completion.completed_at} "
            f"confidence: {_format_confidence(completion.confidence)} -->"
        )
        insert_at = _evidence_end(lines, line_index)
        evidence_lines = [
            f"{indent}  - evidence: {_sanitize(item)}"
            for item in completion.evidence
            if item.strip()
        ]
        lines[insert_at:insert_at] = evidence_lines

        task.status = "complete"
        task.confidence = float(_format_confidence(completion.confidence))
        task.completed_at = completion.completed_at
        task.evidence.extend(_sanitize(item) for item in completion.evidence if item.strip())

    rendered = "\n".join(lines)
    if trailing_newline or not text:
        rendered += "\n"
    transitioned = sorted((task for task, _ in targets), key=lambda task: task.line or 0)
    return rendered, transitioned
