from __future__ import annotations

import logging
from collections.abc import Iterable

from taskscan.config import TaskScanConfig
from taskscan.models import EvidenceSignal, Phase, Task
from taskscan.scanner.keywords import KeywordExtractor
from taskscan.scanner.snapshot import WorkspaceSnapshot
from taskscan.scanner.strategies import (
    ContentMatchStrategy,
    DependencyManifestStrategy,
    EvidenceStrategy,
    FileExistenceStrategy,
    StructuralMarkerStrategy,
)

logger = logging.getLogger(__name__)


def default_strategies(config: TaskScanConfig) -> list[EvidenceStrategy]:
    keywords = KeywordExtractor(
        stopwords=config.keywords.stopwords,
        min_length=config.keywords.min_length,
        generic_terms=config.keywords.generic_terms,
    )
    return [
        FileExistenceStrategy(keywords),
        ContentMatchStrategy(
            keywords,
            source_roots=config.keywords.source_roots,
            source_extensions=config.keywords.source_extensions,
        ),
        StructuralMarkerStrategy(keywords, config.structural.markers),
        DependencyManifestStrategy(keywords, strength=config.structural.dependency_strength),
    ]


class EvidenceScanner:
    """Runs every strategy for a task and merges what they observe."""

    def __init__(self, strategies: Iterable[EvidenceStrategy]) -> None:
        self.strategies = list(strategies)

    @classmethod
    def from_config(
        cls,
        config: TaskScanConfig,
        extra_strategies: Iterable[EvidenceStrategy] = (),
    ) -> EvidenceScanner:
        return cls([*default_strategies(config), *extra_strategies])

    def scan(self, snapshot: WorkspaceSnapshot, phase: Phase, task: Task) -> list[EvidenceSignal]:
        signals: list[EvidenceSignal] = []
        seen: set[tuple[str, str]] = set()
        for strategy in self.strategies:
            try:
                observed = strategy.observe(snapshot, phase, task)
            except Exception as exc:
                # Degrades to no evidence from this strategy; the task stays pending.
                logger.warning(
                    "Strategy %s failed for %s/%s %r: %s",
                    strategy.name,
                    phase.agent,
                    phase.name,
                    task.description,
                    exc,
                )
                continue
            for signal in observed:
                if signal.key in seen:
                    continue
                seen.add(signal.key)
                signals.append(signal)
        return signals
