from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from taskscan.config import TaskScanConfig
from taskscan.errors import ConfigError
from taskscan.models import SIGNAL_KINDS, EvidenceSignal, Task

DEFAULT_WEIGHTS: dict[str, float] = {
    "content-match": 0.7,
    "structural-marker": 0.65,
    "external-signal": 0.5,
    "file-created": 0.3,
    "file-modified": 0.2,
}
DEFAULT_THRESHOLD = 0.6


@dataclass(slots=True)
class Assessment:
    confidence: float
    complete: bool
    evidence: list[str] = field(default_factory=list)


class ConfidenceScorer:
    """Combines evidence signals into one confidence with a probabilistic OR.

    ``confidence = 1 - prod(1 - weight_i * strength_i)`` over distinct
    ``(kind, description)`` signals, so one strong signal can cross the
    threshold alone, weak ones can cross it together, and repeats add nothing.
    """

    def __init__(
        self,
        weights: Mapping[str, float] | None = None,
        *,
        threshold: float = DEFAULT_THRESHOLD,
    ) -> None:
        merged = dict(DEFAULT_WEIGHTS)
        merged.update(weights or {})
        unknown = sorted(set(merged) - set(SIGNAL_KINDS))
        if unknown:
            raise ConfigError(f"Unknown signal kinds in weights: {', '.join(unknown)}")
        for kind, weight in merged.items():
            if not 0.0 <= float(weight) <= 1.0:
                raise ConfigError(f"Weight for {kind} must be within [0, 1], got {weight}")
        if not 0.0 <= float(threshold) <= 1.0:
            raise ConfigError(f"Threshold must be within [0, 1], got {threshold}")
        self.weights = {kind: float(weight) for kind, weight in merged.items()}
        self.threshold = float(threshold)

    @classmethod
    def from_config(cls, config: TaskScanConfig) -> ConfidenceScorer:
        return cls(config.weights.as_mapping(), threshold=config.scan.threshold)

    def signal_weight(self, signal: EvidenceSignal) -> float:
        strength = min(1.0, max(0.0, float(signal.strength)))
        return self.weights.get(signal.kind, 0.0) * strength

    @staticmethod
    def distinct(signals: Iterable[EvidenceSignal]) -> list[EvidenceSignal]:
        unique: dict[tuple[str, str], EvidenceSignal] = {}
        for signal in signals:
            current = unique.get(signal.key)
            if current is None or signal.strength > current.strength:
                unique[signal.key] = signal
        return list(unique.values())

    def score(self, signals: Iterable[EvidenceSignal]) -> float:
        remaining = 1.0
        for signal in self.distinct(signals):
            remaining *= 1.0 - self.signal_weight(signal)
        return round(1.0 - remaining, 4)

    def evaluate(self, task: Task, signals: Iterable[EvidenceSignal]) -> Assessment:
        unique = self.distinct(signals)
        confidence = self.score(unique)
        return Assessment(
            confidence=confidence,
            # Completed tasks are never re-scored.
            complete=task.status == "pending" and confidence >= self.threshold,
            evidence=[signal.description for signal in unique],
        )
