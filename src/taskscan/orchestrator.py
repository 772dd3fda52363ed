from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

from taskscan.config import TaskScanConfig
from taskscan.errors import IOFailure, MalformedRecordError, NotFoundError, TaskScanError
from taskscan.ledger import PendingCompletion, PhaseLedger
from taskscan.models import (
    CompletedTask,
    Phase,
    PhaseResult,
    RunReport,
    ScanResult,
    Task,
    utcnow_iso,
)
from taskscan.scanner import EvidenceScanner, WorkspaceSnapshot
from taskscan.scorer import Assessment, ConfidenceScorer

logger = logging.getLogger(__name__)

ScanEventHook = Callable[[dict[str, Any]], None]
LedgerFactory = Callable[[Path], PhaseLedger]


class ScanOrchestrator:
    """Scans every agent's pending tasks and reconciles completions into the ledger.

    Agents run concurrently, bounded by ``max_workers``. Within an agent,
    phases are evaluated in order. Filesystem work runs in worker threads and
    never holds a ledger lock; each phase's accepted completions are written
    in a single ledger batch.
    """

    def __init__(
        self,
        scanner: EvidenceScanner,
        scorer: ConfidenceScorer,
        *,
        ledger_factory: LedgerFactory | None = None,
        max_workers: int = 4,
        ignore_dirs: Iterable[str] = (),
        max_file_bytes: int = 262144,
        write_status_file: bool = True,
        event_hook: ScanEventHook | None = None,
    ) -> None:
        self.scanner = scanner
        self.scorer = scorer
        self.ledger_factory = ledger_factory or PhaseLedger
        self.max_workers = max(1, int(max_workers))
        self.ignore_dirs = list(ignore_dirs)
        self.max_file_bytes = max_file_bytes
        self.write_status_file = write_status_file
        self.event_hook = event_hook

    @classmethod
    def from_config(
        cls,
        config: TaskScanConfig,
        *,
        scanner: EvidenceScanner | None = None,
        event_hook: ScanEventHook | None = None,
    ) -> ScanOrchestrator:
        def _ledger(root: Path) -> PhaseLedger:
            return PhaseLedger(
                root,
                todo_dir=config.ledger.todo_dir,
                phase_pattern=config.ledger.phase_pattern,
                lock_timeout_seconds=config.ledger.lock_timeout_seconds,
            )

        return cls(
            scanner or EvidenceScanner.from_config(config),
            ConfidenceScorer.from_config(config),
            ledger_factory=_ledger,
            max_workers=config.scan.max_workers,
            ignore_dirs=config.scan.ignore_dirs,
            max_file_bytes=config.scan.max_file_bytes,
            write_status_file=config.ledger.write_status_file,
            event_hook=event_hook,
        )

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _assess_phase(
        self, snapshot: WorkspaceSnapshot, phase: Phase, deadline: float | None = None
    ) -> list[tuple[Task, Assessment]]:
        accepted: list[tuple[Task, Assessment]] = []
        for task in phase.pending_tasks():
            if deadline is not None and time.monotonic() >= deadline:
                logger.info("Deadline reached during %s/%s", phase.agent, phase.name)
                return []
            try:
                signals = self.scanner.scan(snapshot, phase, task)
                assessment = self.scorer.evaluate(task, signals)
            except Exception as exc:
                logger.warning(
                    "Evidence evaluation failed for %s/%s %r: %s",
                    phase.agent,
                    phase.name,
                    task.description,
                    exc,
                )
                continue
            logger.debug(
                "%s/%s %r: confidence %.2f from %d signal(s)",
                phase.agent,
                phase.name,
                task.description,
                assessment.confidence,
                len(assessment.evidence),
            )
            if assessment.complete:
                accepted.append((task, assessment))
        return accepted

    @staticmethod
    def _apply_in_memory(phase: Phase, transitioned: list[Task]) -> Phase:
        by_description = {task.description: task for task in transitioned}
        for index, task in enumerate(phase.tasks):
            replacement = by_description.get(task.description)
            if replacement is not None:
                phase.tasks[index] = replacement
        return phase

    @staticmethod
    async def _in_worker(
        executor: ThreadPoolExecutor, func: Callable[..., Any], *args: Any, **kwargs: Any
    ) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(executor, functools.partial(func, *args, **kwargs))

    @staticmethod
    def _remaining(deadline: float | None) -> float | None:
        if deadline is None:
            return None
        return max(0.0, deadline - time.monotonic())

    async def _reconcile_phase(
        self,
        ledger: PhaseLedger,
        snapshot: WorkspaceSnapshot,
        phase: Phase,
        executor: ThreadPoolExecutor,
        deadline: float | None,
    ) -> tuple[Phase, list[CompletedTask]]:
        accepted = await self._in_worker(executor, self._assess_phase, snapshot, phase, deadline)
        if not accepted:
            return phase, []

        completed_at = utcnow_iso()
        batch = [
            PendingCompletion(
                description=task.description,
                confidence=assessment.confidence,
                evidence=assessment.evidence,
                completed_at=completed_at,
            )
            for task, assessment in accepted
        ]
        transitioned = await self._in_worker(
            executor, ledger.mark_complete_batch, phase.agent, phase.name, batch
        )
        completed = [
            CompletedTask(
                description=task.description,
                confidence=task.confidence if task.confidence is not None else 0.0,
                evidence=list(task.evidence),
                phase=phase.name,
            )
            for task in transitioned
        ]
        for item in completed:
            self._emit(
                {
                    "event": "task_completed",
                    "agent": phase.agent,
                    "phase": phase.name,
                    "description": item.description,
                    "confidence": item.confidence,
                }
            )

        try:
            refreshed = await self._in_worker(executor, ledger.load_phase, phase.agent, phase.name)
        except TaskScanError as exc:
            logger.warning("Could not re-read %s/%s after write: %s", phase.agent, phase.name, exc)
            refreshed = self._apply_in_memory(phase, transitioned)
        return refreshed, completed

    @staticmethod
    def _build_result(
        agent: str,
        phases: list[Phase],
        completed_by_phase: dict[str, list[CompletedTask]],
        error: str | None,
    ) -> ScanResult:
        active = next((phase for phase in phases if phase.status != "complete"), phases[-1])
        phase_results = [
            PhaseResult(
                phase=phase.name,
                tasks_completed=phase.completed_count,
                total_tasks=phase.total_count,
                completed_tasks=completed_by_phase.get(phase.name, []),
            )
            for phase in phases
        ]
        return ScanResult(
            agent=agent,
            phase=active.name,
            tasks_completed=active.completed_count,
            total_tasks=active.total_count,
            completed_tasks=[
                item for phase in phases for item in completed_by_phase.get(phase.name, [])
            ],
            phases=phase_results,
            error=error,
        )

    async def _scan_agent(
        self,
        ledger: PhaseLedger,
        snapshot: WorkspaceSnapshot,
        agent: str,
        semaphore: asyncio.Semaphore,
        executor: ThreadPoolExecutor,
        deadline: float | None,
    ) -> ScanResult | None:
        async with semaphore:
            try:
                phases = await self._in_worker(executor, ledger.load_phases, agent)
            except NotFoundError:
                logger.info("Agent %s has no phases on record; skipping", agent)
                return None
            except (IOFailure, MalformedRecordError) as exc:
                logger.error("Agent %s failed to load: %s", agent, exc)
                self._emit({"event": "agent_failed", "agent": agent, "error": str(exc)})
                return ScanResult.failed(agent, str(exc))

            completed_by_phase: dict[str, list[CompletedTask]] = {}
            errors: list[str] = []
            for index, phase in enumerate(phases):
                try:
                    refreshed, completed = await self._reconcile_phase(
                        ledger, snapshot, phase, executor, deadline
                    )
                except TaskScanError as exc:
                    # Write failures stay visible on the agent's result.
                    logger.error("Ledger update failed for %s/%s: %s", agent, phase.name, exc)
                    errors.append(f"{phase.name}: {exc}")
                    continue
                phases[index] = refreshed
                if completed:
                    completed_by_phase[phase.name] = completed

            if self.write_status_file:
                try:
                    await self._in_worker(executor, ledger.write_status, agent, phases)
                except TaskScanError as exc:
                    logger.warning("Could not refresh status file for %s: %s", agent, exc)

            error = "; ".join(errors) if errors else None
            if error:
                self._emit({"event": "agent_failed", "agent": agent, "error": error})
            return self._build_result(agent, phases, completed_by_phase, error)

    def _timed_out(self, agent: str) -> ScanResult:
        logger.error("Agent %s did not finish before the run timeout", agent)
        self._emit({"event": "agent_failed", "agent": agent, "error": "timed out"})
        return ScanResult.failed(agent, "timed out")

    async def _scan(
        self, workspace_root: Path, timeout: float | None
    ) -> tuple[list[ScanResult], bool]:
        deadline = time.monotonic() + timeout if timeout and timeout > 0 else None
        ledger = self.ledger_factory(workspace_root)
        todo_rel = ledger.todo_root.relative_to(ledger.workspace_root).as_posix()
        # Shut down without waiting: a timed-out run returns while a strategy
        # may still be running in one of these threads.
        executor = ThreadPoolExecutor(
            max_workers=self.max_workers + 1, thread_name_prefix="taskscan"
        )
        try:
            try:
                snapshot = await asyncio.wait_for(
                    self._in_worker(
                        executor,
                        WorkspaceSnapshot.capture,
                        workspace_root,
                        ignore_dirs=self.ignore_dirs,
                        exclude=[todo_rel],
                        max_file_bytes=self.max_file_bytes,
                    ),
                    timeout=self._remaining(deadline),
                )
            except TimeoutError:
                logger.error("Workspace capture did not finish before the run timeout")
                agents = await self._in_worker(executor, ledger.list_agents)
                return [self._timed_out(agent) for agent in agents], True
            agents = await self._in_worker(executor, ledger.list_agents)
            logger.info(
                "Scanning %d agent(s) over %d file(s) in %s",
                len(agents),
                len(snapshot.files),
                snapshot.root,
            )

            semaphore = asyncio.Semaphore(self.max_workers)
            jobs = {
                agent: asyncio.create_task(
                    self._scan_agent(ledger, snapshot, agent, semaphore, executor, deadline)
                )
                for agent in agents
            }
            if not jobs:
                return [], False

            _done, pending = await asyncio.wait(
                jobs.values(), timeout=self._remaining(deadline)
            )
            for job in pending:
                job.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        results: list[ScanResult] = []
        for agent, job in jobs.items():
            if job in pending:
                results.append(self._timed_out(agent))
                continue
            exc = job.exception()
            if exc is not None:
                logger.error("Agent %s failed: %s", agent, exc)
                self._emit({"event": "agent_failed", "agent": agent, "error": str(exc)})
                results.append(ScanResult.failed(agent, str(exc)))
                continue
            result = job.result()
            if result is not None:
                results.append(result)
        return results, bool(pending)

    async def scan_and_update(
        self, workspace_root: Path, *, timeout: float | None = None
    ) -> list[ScanResult]:
        """Scan a workspace and record detected completions.

        Returns one result per agent with at least one phase on record. Agents
        that failed carry ``error``; completions recorded before a timeout stay
        recorded. ``timeout`` bounds the whole call, workspace capture included.
        """
        results, _timed_out = await self._scan(workspace_root, timeout)
        return results

    def run(self, workspace_root: Path, *, timeout: float | None = None) -> RunReport:
        started_at = utcnow_iso()
        results, timed_out = asyncio.run(self._scan(workspace_root, timeout))
        report = RunReport(
            results=results,
            started_at=started_at,
            ended_at=utcnow_iso(),
            timed_out=timed_out,
        )
        logger.info(
            "Scan finished: %d newly completed, %d/%d complete, %d failed agent(s)",
            report.newly_completed,
            report.tasks_completed,
            report.total_tasks,
            len(report.failed_agents),
        )
        return report
