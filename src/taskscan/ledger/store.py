from __future__ import annotations

import fnmatch
import json
import logging
import os
import re
import shutil
import tempfile
import threading
import time
import weakref
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from taskscan.errors import (
    LedgerIOError,
    LedgerLockTimeoutError,
    MalformedRecordError,
    NotFoundError,
)
from taskscan.ledger.markdown import PendingCompletion, apply_completions, parse_phase
from taskscan.models import Phase, Task, utcnow_iso

logger = logging.getLogger(__name__)

PHASE_NUMBER_PATTERN = re.compile(r"(\d+)")
STATUS_FILE = "phase-status.json"


class _PhaseThreadLock:
    """A ``threading.Lock`` that can live in a weak-value registry."""

    __slots__ = ("_lock", "__weakref__")

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def acquire(self, timeout: float = -1) -> bool:
        return self._lock.acquire(timeout=timeout)

    def release(self) -> None:
        self._lock.release()


class PhaseLedger:
    """Agent -> phase -> task records kept as markdown files in the workspace.

    Each agent is a directory under ``<workspace>/<todo_dir>`` and each phase a
    file matching ``phase_pattern`` inside it. Writes to one phase are
    serialized by a per-phase thread lock and a lock file; writes to different
    phases never wait on each other.
    """

    _registry_lock = threading.Lock()
    # Entries drop out once no writer holds a reference to the lock.
    _thread_locks: weakref.WeakValueDictionary[str, _PhaseThreadLock] = (
        weakref.WeakValueDictionary()
    )

    def __init__(
        self,
        workspace_root: Path,
        *,
        todo_dir: str = "agent-todos",
        phase_pattern: str = "phase*-todo.md",
        lock_timeout_seconds: float = 3.0,
    ) -> None:
        self.workspace_root = workspace_root.resolve()
        self.todo_root = self.workspace_root / todo_dir
        self.phase_pattern = phase_pattern
        self.lock_timeout_seconds = lock_timeout_seconds

    @staticmethod
    def _phase_name(path: Path) -> str:
        stem = path.stem
        if stem.endswith("-todo"):
            stem = stem[: -len("-todo")]
        return stem

    @staticmethod
    def _phase_number(path: Path) -> int:
        match = PHASE_NUMBER_PATTERN.search(path.stem)
        return int(match.group(1)) if match else 0

    def _agent_dir(self, agent: str) -> Path:
        if not agent or "/" in agent or "\\" in agent or agent in {".", ".."}:
            raise NotFoundError(f"Invalid agent identifier: {agent!r}", agent=agent)
        return self.todo_root / agent

    def _phase_files(self, agent: str) -> list[Path]:
        agent_dir = self._agent_dir(agent)
        if not agent_dir.is_dir():
            return []
        try:
            files = [
                path
                for path in agent_dir.iterdir()
                if fnmatch.fnmatch(path.name, self.phase_pattern) and path.is_file()
            ]
        except OSError as exc:
            raise LedgerIOError(f"Cannot list phases for {agent}: {exc}", agent=agent) from exc
        return sorted(files, key=lambda path: (self._phase_number(path), path.name))

    def _phase_file(self, agent: str, phase: str) -> Path:
        for path in self._phase_files(agent):
            if self._phase_name(path) == phase:
                return path
        raise NotFoundError(
            f"Phase '{phase}' not found for agent '{agent}'.", agent=agent, phase=phase
        )

    def _read_text(self, path: Path, agent: str, phase: str) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise NotFoundError(
                f"Phase '{phase}' not found for agent '{agent}'.", agent=agent, phase=phase
            ) from exc
        except (OSError, UnicodeDecodeError) as exc:
            raise LedgerIOError(f"Cannot read {path}: {exc}", agent=agent, phase=phase) from exc

    def _build_phase(self, agent: str, path: Path, text: str) -> Phase:
        phase_name = self._phase_name(path)
        try:
            tasks = parse_phase(text)
        except MalformedRecordError as exc:
            raise MalformedRecordError(
                f"{path.name}: {exc}", agent=agent, phase=phase_name
            ) from exc
        try:
            recorded_at = path.stat().st_mtime
        except OSError:
            recorded_at = 0.0
        return Phase(
            agent=agent,
            name=phase_name,
            number=self._phase_number(path),
            tasks=tasks,
            recorded_at=recorded_at,
        )

    def list_agents(self) -> list[str]:
        if not self.todo_root.is_dir():
            return []
        try:
            candidates = sorted(entry for entry in self.todo_root.iterdir() if entry.is_dir())
        except OSError as exc:
            raise LedgerIOError(f"Cannot list agents under {self.todo_root}: {exc}") from exc
        agents: list[str] = []
        for entry in candidates:
            try:
                if not self._phase_files(entry.name):
                    continue
            except LedgerIOError as exc:
                # load_phases raises again and the agent is reported as failed.
                logger.warning("%s", exc)
            agents.append(entry.name)
        return agents

    def load_phases(self, agent: str) -> list[Phase]:
        files = self._phase_files(agent)
        if not files:
            raise NotFoundError(f"No phases recorded for agent '{agent}'.", agent=agent)
        return [
            self._build_phase(agent, path, self._read_text(path, agent, self._phase_name(path)))
            for path in files
        ]

    def load_phase(self, agent: str, phase: str) -> Phase:
        path = self._phase_file(agent, phase)
        return self._build_phase(agent, path, self._read_text(path, agent, phase))

    @classmethod
    def _thread_lock(cls, path: Path) -> _PhaseThreadLock:
        key = str(path)
        with cls._registry_lock:
            lock = cls._thread_locks.get(key)
            if lock is None:
                lock = _PhaseThreadLock()
                cls._thread_locks[key] = lock
            return lock

    @contextmanager
    def _phase_lock(self, path: Path, agent: str, phase: str) -> Iterator[None]:
        thread_lock = self._thread_lock(path)
        if not thread_lock.acquire(timeout=self.lock_timeout_seconds):
            raise LedgerLockTimeoutError(
                f"Timed out waiting for phase lock on {path.name}.", agent=agent, phase=phase
            )
        lock_file = path.with_name(f".{path.name}.lock")
        try:
            start = time.monotonic()
            while True:
                try:
                    fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                    os.write(fd, str(os.getpid()).encode("utf-8"))
                    os.close(fd)
                    break
                except FileExistsError as exc:
                    if time.monotonic() - start > self.lock_timeout_seconds:
                        raise LedgerLockTimeoutError(
                            f"Timed out waiting for phase lock on {path.name}.",
                            agent=agent,
                            phase=phase,
                        ) from exc
                    time.sleep(0.02)
            try:
                yield
            finally:
                try:
                    lock_file.unlink()
                except FileNotFoundError:
                    pass
        finally:
            thread_lock.release()

    @staticmethod
    def _atomic_write(path: Path, content: str) -> None:
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
            temp_path = handle.name
        try:
            # NamedTemporaryFile creates 0600. A new file takes the umask default
            # from touch(); an existing one keeps its mode.
            if not path.exists():
                path.touch()
            shutil.copymode(path, temp_path)
            os.replace(temp_path, path)
        except OSError:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def mark_complete_batch(
        self,
        agent: str,
        phase: str,
        completions: Iterable[PendingCompletion],
    ) -> list[Task]:
        """Record a phase's accepted completions in one durable write.

        The phase file is re-read under the lock, so a task completed by a
        concurrent writer is skipped rather than overwritten. Returns only the
        tasks this call transitioned.
        """
        batch = list(completions)
        path = self._phase_file(agent, phase)
        with self._phase_lock(path, agent, phase):
            text = self._read_text(path, agent, phase)
            try:
                updated, transitioned = apply_completions(text, batch)
            except MalformedRecordError as exc:
                raise MalformedRecordError(f"{path.name}: {exc}", agent=agent, phase=phase) from exc
            except KeyError as exc:
                raise NotFoundError(
                    f"Task {exc.args[0]!r} not found in phase '{phase}' of agent '{agent}'.",
                    agent=agent,
                    phase=phase,
                ) from exc
            if not transitioned:
                return []
            try:
                self._atomic_write(path, updated)
            except OSError as exc:
                raise LedgerIOError(
                    f"Cannot write {path}: {exc}", agent=agent, phase=phase
                ) from exc
        for task in transitioned:
            logger.info(
                "Recorded completion %s/%s: %r (confidence %.2f)",
                agent,
                phase,
                task.description,
                task.confidence or 0.0,
            )
        return transitioned

    def mark_complete(
        self,
        agent: str,
        phase: str,
        description: str,
        confidence: float,
        evidence: list[str],
    ) -> Task:
        completion = PendingCompletion(
            description=description,
            confidence=confidence,
            evidence=list(evidence),
            completed_at=utcnow_iso(),
        )
        transitioned = self.mark_complete_batch(agent, phase, [completion])
        if transitioned:
            return transitioned[0]
        existing = self.load_phase(agent, phase).find_task(description)
        if existing is None:
            raise NotFoundError(
                f"Task {description!r} not found in phase '{phase}' of agent '{agent}'.",
                agent=agent,
                phase=phase,
            )
        return existing

    def write_status(self, agent: str, phases: list[Phase] | None = None) -> dict[str, Any]:
        """Refresh the agent's ``phase-status.json`` summary."""
        phases = phases if phases is not None else self.load_phases(agent)
        if not phases:
            raise NotFoundError(f"No phases recorded for agent '{agent}'.", agent=agent)
        status_path = self._agent_dir(agent) / STATUS_FILE
        payload: dict[str, Any] = {}
        if status_path.exists():
            try:
                existing = json.loads(status_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                existing = None
            if isinstance(existing, dict):
                payload = existing

        completed = [phase.number for phase in phases if phase.status == "complete"]
        current = next((phase for phase in phases if phase.status != "complete"), phases[-1])
        if len(completed) == len(phases):
            overall = "complete"
        elif any(phase.completed_count for phase in phases):
            overall = "in_progress"
        else:
            overall = "ready"
        payload.update(
            {
                "current_phase": current.number,
                "total_phases": len(phases),
                "completed_phases": completed,
                "status": overall,
                "tasks_completed": current.completed_count,
                "tasks_total": current.total_count,
                "updated_at": utcnow_iso(),
            }
        )
        try:
            self._atomic_write(
                status_path, json.dumps(payload, ensure_ascii=False, indent=2) + "\n"
            )
        except OSError as exc:
            raise LedgerIOError(f"Cannot write {status_path}: {exc}", agent=agent) from exc
        return payload
