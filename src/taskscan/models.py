from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

TaskStatus = Literal["pending", "complete"]
SignalKind = Literal[
    "file-created",
    "file-modified",
    "content-match",
    "structural-marker",
    "external-signal",
]

SIGNAL_KINDS: tuple[SignalKind, ...] = (
    "file-created",
    "file-modified",
    "content-match",
    "structural-marker",
    "external-signal",
)


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class Task:
    description: str
    status: TaskStatus = "pending"
    confidence: float | None = None
    evidence: list[str] = field(default_factory=list)
    completed_at: str | None = None
    line: int | None = None

    @property
    def is_complete(self) -> bool:
        return self.status == "complete"

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "status": self.status,
            "confidence": self.confidence,
            "evidence": list(self.evidence),
            "completed_at": self.completed_at,
        }


@dataclass(slots=True)
class Phase:
    agent: str
    name: str
    number: int
    tasks: list[Task] = field(default_factory=list)
    recorded_at: float = 0.0

    @property
    def status(self) -> str:
        if not self.tasks:
            return "pending"
        done = self.completed_count
        if done == len(self.tasks):
            return "complete"
        if done:
            return "in_progress"
        return "pending"

    @property
    def completed_count(self) -> int:
        return sum(1 for task in self.tasks if task.is_complete)

    @property
    def total_count(self) -> int:
        return len(self.tasks)

    def pending_tasks(self) -> list[Task]:
        return [task for task in self.tasks if not task.is_complete]

    def find_task(self, description: str) -> Task | None:
        for task in self.tasks:
            if task.description == description:
                return task
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent": self.agent,
            "name": self.name,
            "number": self.number,
            "status": self.status,
            "tasks": [task.to_dict() for task in self.tasks],
        }


@dataclass(slots=True, frozen=True)
class EvidenceSignal:
    """One observation suggesting a task may be done. Never persisted."""

    kind: SignalKind
    description: str
    strength: float = 1.0
    path: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.kind, self.description)


@dataclass(slots=True)
class CompletedTask:
    description: str
    confidence: float
    evidence: list[str]
    phase: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "confidence": self.confidence,
            "evidence": list(self.evidence),
            "phase": self.phase,
        }


@dataclass(slots=True)
class PhaseResult:
    phase: str
    tasks_completed: int
    total_tasks: int
    completed_tasks: list[CompletedTask] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "tasksCompleted": self.tasks_completed,
            "totalTasks": self.total_tasks,
            "completedTasks": [task.to_dict() for task in self.completed_tasks],
        }


@dataclass(slots=True)
class ScanResult:
    """Per-agent report of one scan run. Built fresh each run, never persisted.

    ``tasks_completed`` and ``total_tasks`` describe the reported ``phase``;
    ``phases`` has the same counts for every phase. ``completed_tasks`` holds
    every transition of this run, each tagged with its phase.
    """

    agent: str
    phase: str | None
    tasks_completed: int
    total_tasks: int
    completed_tasks: list[CompletedTask] = field(default_factory=list)
    phases: list[PhaseResult] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, agent: str, error: str) -> ScanResult:
        return cls(agent=agent, phase=None, tasks_completed=0, total_tasks=0, error=error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent": self.agent,
            "phase": self.phase,
            "tasksCompleted": self.tasks_completed,
            "totalTasks": self.total_tasks,
            "completedTasks": [task.to_dict() for task in self.completed_tasks],
            "phases": [phase.to_dict() for phase in self.phases],
            "error": self.error,
        }


@dataclass(slots=True)
class RunReport:
    results: list[ScanResult]
    started_at: str
    ended_at: str
    timed_out: bool = False

    @property
    def total_tasks(self) -> int:
        return sum(phase.total_tasks for result in self.results for phase in result.phases)

    @property
    def tasks_completed(self) -> int:
        return sum(phase.tasks_completed for result in self.results for phase in result.phases)

    @property
    def newly_completed(self) -> int:
        return sum(len(result.completed_tasks) for result in self.results)

    @property
    def failed_agents(self) -> list[str]:
        return [result.agent for result in self.results if not result.ok]

    @property
    def success_rate(self) -> float:
        if self.total_tasks == 0:
            return 0.0
        return self.tasks_completed / self.total_tasks

    @property
    def ok(self) -> bool:
        return not self.timed_out and not self.failed_agents

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "ok": self.ok,
            "timed_out": self.timed_out,
            "summary": {
                "total_tasks": self.total_tasks,
                "tasks_completed": self.tasks_completed,
                "newly_completed": self.newly_completed,
                "failed_agents": self.failed_agents,
                "success_rate": round(self.success_rate, 4),
            },
            "results": [result.to_dict() for result in self.results],
        }
