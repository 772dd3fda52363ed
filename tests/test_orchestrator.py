import asyncio
import json
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

from taskscan.config import TaskScanConfig
from taskscan.errors import LedgerIOError
from taskscan.ledger import PhaseLedger
from taskscan.models import EvidenceSignal, Phase, Task
from taskscan.orchestrator import ScanOrchestrator
from taskscan.scanner import EvidenceScanner, EvidenceStrategy, WorkspaceSnapshot

NAVIGATION_SOURCE = """import React from 'react'

export function Navigation() {
  return <nav />
}
"""


def _write(root: Path, relative: str, content: str = "") -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def _write_phase(root: Path, agent: str, name: str, lines: list[str]) -> Path:
    return _write(root, f"agent-todos/{agent}/{name}-todo.md", "\n".join(lines) + "\n")


def _orchestrator(**kwargs: Any) -> ScanOrchestrator:
    return ScanOrchestrator.from_config(TaskScanConfig.default(), **kwargs)


def test_navigation_component_is_detected(tmp_path: Path) -> None:
    phase_path = _write_phase(
        tmp_path,
        "frontend",
        "phase1",
        ["- [ ] Create navigation component", "- [ ] Set up routing"],
    )
    _write(tmp_path, "src/components/Navigation.tsx", NAVIGATION_SOURCE)

    report = _orchestrator().run(tmp_path)

    assert report.ok
    [result] = report.results
    assert result.agent == "frontend"
    assert result.phase == "phase1"
    assert result.tasks_completed == 1
    assert result.total_tasks == 2
    [completed] = result.completed_tasks
    assert completed.description == "Create navigation component"
    assert completed.confidence >= 0.6
    assert completed.phase == "phase1"
    assert "File exists: src/components/Navigation.tsx" in completed.evidence
    assert "Defines Navigation in src/components/Navigation.tsx" in completed.evidence

    text = phase_path.read_text(encoding="utf-8")
    assert "- [x] Create navigation component <!-- completed:" in text
    assert "- [ ] Set up routing" in text


def test_empty_file_alone_is_not_enough(tmp_path: Path) -> None:
    phase_path = _write_phase(tmp_path, "frontend", "phase1", ["- [ ] Create navigation component"])
    _write(tmp_path, "src/components/Navigation.tsx")
    before = phase_path.read_text(encoding="utf-8")

    report = _orchestrator().run(tmp_path)

    [result] = report.results
    assert result.ok
    assert result.completed_tasks == []
    assert result.tasks_completed == 0
    assert phase_path.read_text(encoding="utf-8") == before


def test_second_run_without_changes_is_idempotent(tmp_path: Path) -> None:
    phase_path = _write_phase(tmp_path, "frontend", "phase1", ["- [ ] Create navigation component"])
    _write(tmp_path, "src/components/Navigation.tsx", NAVIGATION_SOURCE)
    orchestrator = _orchestrator()

    first = orchestrator.run(tmp_path)
    after_first = phase_path.read_text(encoding="utf-8")
    second = orchestrator.run(tmp_path)

    assert first.newly_completed == 1
    assert second.newly_completed == 0
    assert second.results[0].tasks_completed == 1
    assert second.results[0].total_tasks == 1
    assert phase_path.read_text(encoding="utf-8") == after_first


def test_completed_tasks_stay_complete_without_evidence(tmp_path: Path) -> None:
    phase_path = _write_phase(
        tmp_path,
        "frontend",
        "phase1",
        ["- [x] Deploy staging <!-- completed: 2026-10-01T00:00:00+00:00 confidence: 1 -->"],
    )
    before = phase_path.read_text(encoding="utf-8")

    report = _orchestrator().run(tmp_path)

    [result] = report.results
    assert result.tasks_completed == result.total_tasks == 1
    assert result.completed_tasks == []
    assert phase_path.read_text(encoding="utf-8") == before


def test_malformed_agent_does_not_block_others(tmp_path: Path) -> None:
    _write_phase(tmp_path, "backend", "phase1", ["- [ ] Same task", "- [ ] Same task"])
    _write_phase(tmp_path, "frontend", "phase1", ["- [ ] Create navigation component"])
    _write(tmp_path, "src/components/Navigation.tsx", NAVIGATION_SOURCE)

    report = _orchestrator().run(tmp_path)

    results = {result.agent: result for result in report.results}
    assert not results["backend"].ok
    assert "Duplicate task description" in (results["backend"].error or "")
    assert results["backend"].tasks_completed == 0
    assert results["frontend"].ok
    assert results["frontend"].tasks_completed == 1
    assert report.failed_agents == ["backend"]
    assert report.ok is False


def test_agents_without_phase_records_are_omitted(tmp_path: Path) -> None:
    (tmp_path / "agent-todos" / "idle-agent").mkdir(parents=True)
    _write_phase(tmp_path, "frontend", "phase1", ["- [ ] Create navigation component"])

    results = asyncio.run(_orchestrator().scan_and_update(tmp_path))

    assert [result.agent for result in results] == ["frontend"]


def test_phases_are_reported_in_order_with_active_phase(tmp_path: Path) -> None:
    _write_phase(tmp_path, "frontend", "phase1", ["- [ ] Configure ESLint"])
    _write_phase(tmp_path, "frontend", "phase2", ["- [ ] Create navigation component"])
    _write(tmp_path, "eslint.config.js", "export default []\n")

    [result] = asyncio.run(_orchestrator().scan_and_update(tmp_path))

    assert [phase.phase for phase in result.phases] == ["phase1", "phase2"]
    assert result.phases[0].tasks_completed == 1
    assert result.phases[1].tasks_completed == 0
    assert result.phase == "phase2"
    assert result.to_dict()["tasksCompleted"] == 0
    assert result.to_dict()["totalTasks"] == 1
    assert [item.phase for item in result.completed_tasks] == ["phase1"]


def test_status_file_is_refreshed(tmp_path: Path) -> None:
    _write_phase(tmp_path, "frontend", "phase1", ["- [ ] Create navigation component"])
    _write(tmp_path, "src/components/Navigation.tsx", NAVIGATION_SOURCE)

    _orchestrator().run(tmp_path)

    status = json.loads(
        (tmp_path / "agent-todos" / "frontend" / "phase-status.json").read_text(encoding="utf-8")
    )
    assert status["status"] == "complete"
    assert status["completed_phases"] == [1]


def test_event_hook_receives_completions(tmp_path: Path) -> None:
    _write_phase(tmp_path, "frontend", "phase1", ["- [ ] Create navigation component"])
    _write(tmp_path, "src/components/Navigation.tsx", NAVIGATION_SOURCE)
    events: list[dict[str, Any]] = []

    _orchestrator(event_hook=events.append).run(tmp_path)

    assert [event["event"] for event in events] == ["task_completed"]
    assert events[0]["description"] == "Create navigation component"


def test_ledger_write_failure_is_surfaced(tmp_path: Path, monkeypatch) -> None:
    _write_phase(tmp_path, "frontend", "phase1", ["- [ ] Create navigation component"])
    _write(tmp_path, "src/components/Navigation.tsx", NAVIGATION_SOURCE)

    def _fail(self: PhaseLedger, agent: str, phase: str, completions: Any) -> list[Task]:
        raise LedgerIOError("disk full", agent=agent, phase=phase)

    monkeypatch.setattr(PhaseLedger, "mark_complete_batch", _fail)

    report = _orchestrator().run(tmp_path)

    [result] = report.results
    assert result.error == "phase1: disk full"
    assert result.completed_tasks == []
    assert report.ok is False


class SlowStrategy(EvidenceStrategy):
    name = "slow"

    def __init__(self, agent: str, delay: float) -> None:
        self.agent = agent
        self.delay = delay

    def observe(
        self, snapshot: WorkspaceSnapshot, phase: Phase, task: Task
    ) -> list[EvidenceSignal]:
        if phase.agent == self.agent:
            time.sleep(self.delay)
        return []


def test_timeout_keeps_finished_work_and_flags_the_rest(tmp_path: Path) -> None:
    frontend_phase = _write_phase(
        tmp_path, "frontend", "phase1", ["- [ ] Create navigation component"]
    )
    _write_phase(tmp_path, "slowpoke", "phase1", ["- [ ] Create navigation component"])
    _write(tmp_path, "src/components/Navigation.tsx", NAVIGATION_SOURCE)
    config = TaskScanConfig.default()
    scanner = EvidenceScanner.from_config(config, [SlowStrategy("slowpoke", 3.0)])
    orchestrator = ScanOrchestrator.from_config(config, scanner=scanner)

    started = time.monotonic()
    report = orchestrator.run(tmp_path, timeout=0.5)
    elapsed = time.monotonic() - started

    results = {result.agent: result for result in report.results}
    assert report.timed_out is True
    assert report.ok is False
    assert results["slowpoke"].error == "timed out"
    assert results["frontend"].ok
    assert results["frontend"].tasks_completed == 1
    assert "- [x] Create navigation component" in frontend_phase.read_text(encoding="utf-8")
    assert elapsed < 2.0


def test_run_with_no_agents_returns_empty_report(tmp_path: Path) -> None:
    report = _orchestrator().run(tmp_path)

    assert report.results == []
    assert report.ok is True
    assert report.success_rate == 0.0


def test_run_totals_cover_every_phase(tmp_path: Path) -> None:
    _write_phase(tmp_path, "frontend", "phase1", ["- [ ] Configure ESLint"])
    _write_phase(tmp_path, "frontend", "phase2", ["- [ ] Create navigation component"])
    _write(tmp_path, "eslint.config.js", "export default []\n")

    report = _orchestrator().run(tmp_path)

    [result] = report.results
    assert (result.tasks_completed, result.total_tasks) == (0, 1)
    assert report.tasks_completed == 1
    assert report.total_tasks == 2
    assert report.newly_completed == 1


def test_libraries_named_in_a_task_do_not_complete_it(tmp_path: Path) -> None:
    phase_path = _write_phase(
        tmp_path, "frontend", "phase1", ["- [ ] Configure ESLint for React/TypeScript"]
    )
    _write(
        tmp_path,
        "package.json",
        json.dumps({"dependencies": {"react": "18"}, "devDependencies": {"typescript": "5"}}),
    )
    before = phase_path.read_text(encoding="utf-8")

    report = _orchestrator().run(tmp_path)

    assert report.newly_completed == 0
    assert phase_path.read_text(encoding="utf-8") == before


def test_unlistable_agent_is_reported_as_failed(tmp_path: Path, monkeypatch) -> None:
    _write_phase(tmp_path, "frontend", "phase1", ["- [ ] Create navigation component"])
    _write_phase(tmp_path, "locked", "phase1", ["- [ ] Create navigation component"])
    _write(tmp_path, "src/components/Navigation.tsx", NAVIGATION_SOURCE)
    original_iterdir = Path.iterdir

    def _iterdir(self: Path):
        if self.name == "locked":
            raise PermissionError(13, "Permission denied", str(self))
        return original_iterdir(self)

    monkeypatch.setattr(Path, "iterdir", _iterdir)

    report = _orchestrator().run(tmp_path)

    results = {result.agent: result for result in report.results}
    assert "Permission denied" in (results["locked"].error or "")
    assert results["frontend"].tasks_completed == 1
    assert report.failed_agents == ["locked"]
    assert report.ok is False


def test_concurrent_runs_record_each_completion_once(tmp_path: Path) -> None:
    phase_path = _write_phase(
        tmp_path,
        "frontend",
        "phase1",
        ["- [ ] Create navigation component", "- [ ] Set up routing"],
    )
    _write(tmp_path, "src/components/Navigation.tsx", NAVIGATION_SOURCE)

    with ThreadPoolExecutor(max_workers=4) as pool:
        reports = list(pool.map(lambda _: _orchestrator().run(tmp_path), range(4)))

    assert all(report.ok for report in reports)
    assert sum(report.newly_completed for report in reports) == 1
    text = phase_path.read_text(encoding="utf-8")
    assert text.count("- [x] Create navigation component") == 1
    assert text.count("  - evidence: Defines Navigation in src/components/Navigation.tsx") == 1
    assert "- [ ] Set up routing" in text


def test_timeout_covers_a_slow_workspace_capture(tmp_path: Path, monkeypatch) -> None:
    phase_path = _write_phase(tmp_path, "frontend", "phase1", ["- [ ] Create navigation component"])
    _write(tmp_path, "src/components/Navigation.tsx", NAVIGATION_SOURCE)
    before = phase_path.read_text(encoding="utf-8")
    original_capture = WorkspaceSnapshot.capture

    def _slow_capture(cls, *args: Any, **kwargs: Any) -> WorkspaceSnapshot:
        time.sleep(3.0)
        return original_capture(*args, **kwargs)

    monkeypatch.setattr(WorkspaceSnapshot, "capture", classmethod(_slow_capture))

    started = time.monotonic()
    report = _orchestrator().run(tmp_path, timeout=0.3)
    elapsed = time.monotonic() - started

    assert elapsed < 2.0
    assert report.timed_out is True
    assert [(result.agent, result.error) for result in report.results] == [
        ("frontend", "timed out")
    ]
    assert phase_path.read_text(encoding="utf-8") == before
