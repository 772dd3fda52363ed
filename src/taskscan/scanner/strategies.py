from __future__ import annotations

import json
import re
import tomllib
from abc import ABC, abstractmethod
from collections.abc import Iterable

from taskscan.models import EvidenceSignal, Phase, Task
from taskscan.scanner.keywords import KeywordExtractor, normalize
from taskscan.scanner.snapshot import FileEntry, WorkspaceSnapshot

DEFINITION_PATTERNS = [
    re.compile(
        r"\bexport\s+(?:default\s+)?(?:async\s+)?"
        r"(?:function\*?|const|let|var|class|interface|type|enum)\s+([A-Za-z_$][\w$]*)"
    ),
    re.compile(r"\bexport\s+default\s+([A-Za-z_$][\w$]*)\s*;?\s*$", re.MULTILINE),
    re.compile(r"\bmodule\.exports\s*=\s*([A-Za-z_$][\w$]*)"),
    re.compile(r"^\s*(?:async\s+)?def\s+([A-Za-z_]\w*)", re.MULTILINE),
    re.compile(r"^\s*class\s+([A-Za-z_]\w*)", re.MULTILINE),
    re.compile(r"^\s*(?:async\s+)?function\s+([A-Za-z_$][\w$]*)", re.MULTILINE),
]
REQUIREMENT_NAME_PATTERN = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._-]*)")


class EvidenceStrategy(ABC):
    name: str = "strategy"

    @abstractmethod
    def observe(
        self, snapshot: WorkspaceSnapshot, phase: Phase, task: Task
    ) -> list[EvidenceSignal]:
        """Return the signals this heuristic sees for one task."""


class FileExistenceStrategy(EvidenceStrategy):
    """A file named after the task's subject exists.

    A non-empty match touched at or after the phase record was written also
    counts as a modification.
    """

    name = "file-existence"

    def __init__(self, keywords: KeywordExtractor, *, max_matches: int = 3) -> None:
        self.keywords = keywords
        self.max_matches = max_matches

    def matching_files(self, snapshot: WorkspaceSnapshot, task: Task) -> list[FileEntry]:
        terms = self.keywords.keywords(task.description)
        if not terms:
            return []
        matches = [
            entry for entry in snapshot.files if self.keywords.name_matches(entry.stem, terms)
        ]
        return matches[: self.max_matches]

    def observe(
        self, snapshot: WorkspaceSnapshot, phase: Phase, task: Task
    ) -> list[EvidenceSignal]:
        signals: list[EvidenceSignal] = []
        for entry in self.matching_files(snapshot, task):
            signals.append(
                EvidenceSignal(
                    kind="file-created",
                    description=f"File exists: {entry.path}",
                    path=entry.path,
                )
            )
            if entry.size > 0 and entry.mtime >= phase.recorded_at:
                signals.append(
                    EvidenceSignal(
                        kind="file-modified",
                        description=f"File changed since phase was planned: {entry.path}",
                        path=entry.path,
                    )
                )
        return signals


class ContentMatchStrategy(EvidenceStrategy):
    """A relevant source file exports or defines something named after the task."""

    name = "content-match"

    def __init__(
        self,
        keywords: KeywordExtractor,
        *,
        source_roots: Iterable[str] = ("src",),
        source_extensions: Iterable[str] = (".py", ".js", ".ts", ".tsx", ".jsx"),
        max_matches: int = 3,
    ) -> None:
        self.keywords = keywords
        self.source_roots = tuple(root.strip("/") for root in source_roots if root.strip("/"))
        self.source_extensions = {ext.lower() for ext in source_extensions}
        self.max_matches = max_matches

    def _relevant(self, entry: FileEntry, terms: list[str]) -> bool:
        if entry.suffix not in self.source_extensions:
            return False
        if self.keywords.name_matches(entry.stem, terms):
            return True
        return any(
            entry.path == root or entry.path.startswith(f"{root}/") for root in self.source_roots
        )

    @staticmethod
    def definitions(snapshot: WorkspaceSnapshot, path: str) -> list[str]:
        def _collect() -> list[str]:
            text = snapshot.read_text(path)
            if not text:
                return []
            names: list[str] = []
            for pattern in DEFINITION_PATTERNS:
                names.extend(match.group(1) for match in pattern.finditer(text))
            return list(dict.fromkeys(names))

        return snapshot.cached(("definitions", path), _collect)

    def observe(
        self, snapshot: WorkspaceSnapshot, phase: Phase, task: Task
    ) -> list[EvidenceSignal]:
        terms = self.keywords.keywords(task.description)
        if not terms:
            return []
        signals: list[EvidenceSignal] = []
        for entry in snapshot.files:
            if not self._relevant(entry, terms):
                continue
            for identifier in self.definitions(snapshot, entry.path):
                if self.keywords.name_matches(identifier, terms):
                    signals.append(
                        EvidenceSignal(
                            kind="content-match",
                            description=f"Defines {identifier} in {entry.path}",
                            path=entry.path,
                        )
                    )
                    break
            if len(signals) >= self.max_matches:
                break
        return signals


class StructuralMarkerStrategy(EvidenceStrategy):
    """An expected structural element for the task's category is present."""

    name = "structural-marker"

    def __init__(self, keywords: KeywordExtractor, markers: dict[str, list[str]]) -> None:
        self.keywords = keywords
        self.markers = {key.lower(): list(patterns) for key, patterns in markers.items()}

    def observe(
        self, snapshot: WorkspaceSnapshot, phase: Phase, task: Task
    ) -> list[EvidenceSignal]:
        signals: list[EvidenceSignal] = []
        seen: set[str] = set()
        for token in dict.fromkeys(self.keywords.tokens(task.description)):
            for pattern in self.markers.get(token, []):
                found = snapshot.glob(pattern)
                if not found:
                    continue
                marker = found[0] + ("/" if pattern.endswith("/") else "")
                if marker not in seen:
                    seen.add(marker)
                    signals.append(
                        EvidenceSignal(
                            kind="structural-marker",
                            description=f"Structural marker for '{token}': {marker}",
                            path=found[0],
                        )
                    )
                break
        return signals


class DependencyManifestStrategy(EvidenceStrategy):
    """The package a task is about (its first non-generic keyword) is declared in a manifest."""

    name = "dependency-manifest"
    MANIFESTS = ("package.json", "pyproject.toml", "requirements.txt", "requirements-dev.txt")

    def __init__(self, keywords: KeywordExtractor, *, strength: float = 0.8) -> None:
        self.keywords = keywords
        self.strength = strength

    @staticmethod
    def _package_json(text: str) -> set[str]:
        payload = json.loads(text)
        if not isinstance(payload, dict):
            return set()
        names: set[str] = set()
        for section in ("dependencies", "devDependencies", "peerDependencies"):
            deps = payload.get(section)
            if isinstance(deps, dict):
                names.update(str(name) for name in deps)
        return names

    @staticmethod
    def _pyproject(text: str) -> set[str]:
        payload = tomllib.loads(text)
        project = payload.get("project", {})
        requirements = list(project.get("dependencies", []))
        for extra in project.get("optional-dependencies", {}).values():
            requirements.extend(extra)
        return DependencyManifestStrategy._requirements("\n".join(requirements))

    @staticmethod
    def _requirements(text: str) -> set[str]:
        names: set[str] = set()
        for line in text.splitlines():
            if line.strip().startswith(("#", "-")):
                continue
            match = REQUIREMENT_NAME_PATTERN.match(line)
            if match:
                names.add(match.group(1))
        return names

    def declared(self, snapshot: WorkspaceSnapshot) -> dict[str, str]:
        """Normalized dependency name -> manifest path, for root-level manifests."""

        def _collect() -> dict[str, str]:
            found: dict[str, str] = {}
            for manifest in self.MANIFESTS:
                text = snapshot.read_text(manifest)
                if not text:
                    continue
                try:
                    if manifest == "package.json":
                        names = self._package_json(text)
                    elif manifest == "pyproject.toml":
                        names = self._pyproject(text)
                    else:
                        names = self._requirements(text)
                except (json.JSONDecodeError, tomllib.TOMLDecodeError, AttributeError):
                    continue
                for name in names:
                    found.setdefault(normalize(name.rsplit("/", maxsplit=1)[-1]), manifest)
            return found

        return snapshot.cached(("manifests",), _collect)

    def observe(
        self, snapshot: WorkspaceSnapshot, phase: Phase, task: Task
    ) -> list[EvidenceSignal]:
        # Only the task's subject counts, not libraries it merely mentions.
        subject = self.keywords.subject(task.description)
        if subject is None:
            return []
        manifest = self.declared(snapshot).get(subject)
        if manifest is None:
            return []
        return [
            EvidenceSignal(
                kind="structural-marker",
                description=f"Dependency {subject} declared in {manifest}",
                strength=self.strength,
                path=manifest,
            )
        ]
