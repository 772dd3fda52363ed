from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from taskscan.errors import ConfigError

DEFAULT_STOPWORDS = [
    "a",
    "an",
    "and",
    "add",
    "basic",
    "build",
    "configure",
    "create",
    "define",
    "for",
    "from",
    "implement",
    "in",
    "initial",
    "install",
    "integrate",
    "into",
    "make",
    "new",
    "of",
    "on",
    "set",
    "setup",
    "the",
    "to",
    "up",
    "use",
    "with",
    "write",
]

DEFAULT_GENERIC_TERMS = [
    "app",
    "class",
    "component",
    "components",
    "config",
    "configuration",
    "file",
    "files",
    "function",
    "index",
    "logic",
    "main",
    "model",
    "module",
    "page",
    "project",
    "service",
    "structure",
    "support",
    "system",
    "type",
    "types",
    "utils",
]


@dataclass(slots=True)
class ScanConfig:
    threshold: float = 0.6
    max_workers: int = 4
    timeout_seconds: float = 0.0
    max_file_bytes: int = 262144
    ignore_dirs: list[str] = field(
        default_factory=lambda: [
            ".git",
            ".taskscan",
            ".venv",
            "__pycache__",
            "build",
            "dist",
            "node_modules",
        ]
    )


@dataclass(slots=True)
class WeightsConfig:
    content_match: float = 0.7
    structural_marker: float = 0.65
    external_signal: float = 0.5
    file_created: float = 0.3
    file_modified: float = 0.2

    def as_mapping(self) -> dict[str, float]:
        return {
            "content-match": self.content_match,
            "structural-marker": self.structural_marker,
            "external-signal": self.external_signal,
            "file-created": self.file_created,
            "file-modified": self.file_modified,
        }


@dataclass(slots=True)
class KeywordsConfig:
    min_length: int = 3
    stopwords: list[str] = field(default_factory=lambda: list(DEFAULT_STOPWORDS))
    generic_terms: list[str] = field(default_factory=lambda: list(DEFAULT_GENERIC_TERMS))
    source_roots: list[str] = field(
        default_factory=lambda: ["src", "app", "lib", "components", "pages"]
    )
    source_extensions: list[str] = field(
        default_factory=lambda: [".py", ".js", ".jsx", ".ts", ".tsx", ".vue", ".svelte"]
    )


@dataclass(slots=True)
class StructuralConfig:
    dependency_strength: float = 0.8
    markers: dict[str, list[str]] = field(
        default_factory=lambda: {
            "eslint": ["eslint.config.*", ".eslintrc*"],
            "prettier": [".prettierrc*", "prettier.config.*"],
            "tailwind": ["tailwind.config.*"],
            "typescript": ["tsconfig.json"],
            "vite": ["vite.config.*"],
            "structure": ["src/"],
            "test": ["tests/", "test/", "__tests__/"],
            "tests": ["tests/", "test/", "__tests__/"],
            "route": ["**/routes/*", "**/router.*", "**/routes.*"],
            "routing": ["**/routes/*", "**/router.*", "**/routes.*"],
            "docker": ["Dockerfile", "docker-compose.*"],
            "readme": ["README*"],
        }
    )


@dataclass(slots=True)
class LedgerConfig:
    todo_dir: str = "agent-todos"
    phase_pattern: str = "phase*-todo.md"
    lock_timeout_seconds: float = 3.0
    write_status_file: bool = True


@dataclass(slots=True)
class TaskScanConfig:
    scan: ScanConfig = field(default_factory=ScanConfig)
    weights: WeightsConfig = field(default_factory=WeightsConfig)
    keywords: KeywordsConfig = field(default_factory=KeywordsConfig)
    structural: StructuralConfig = field(default_factory=StructuralConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)

    @classmethod
    def default(cls) -> TaskScanConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> TaskScanConfig:
        try:
            config = cls(
                scan=ScanConfig(**data.get("scan", {})),
                weights=WeightsConfig(**data.get("weights", {})),
                keywords=KeywordsConfig(**data.get("keywords", {})),
                structural=StructuralConfig(**data.get("structural", {})),
                ledger=LedgerConfig(**data.get("ledger", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Unknown configuration key: {exc}") from exc
        config.validate()
        return config

    def validate(self) -> None:
        if not 0.0 <= float(self.scan.threshold) <= 1.0:
            raise ConfigError(f"scan.threshold must be within [0, 1], got {self.scan.threshold}")
        if int(self.scan.max_workers) < 1:
            raise ConfigError("scan.max_workers must be at least 1")
        if float(self.scan.timeout_seconds) < 0:
            raise ConfigError("scan.timeout_seconds must not be negative")
        for kind, weight in self.weights.as_mapping().items():
            if not 0.0 <= float(weight) <= 1.0:
                raise ConfigError(f"weights.{kind.replace('-', '_')} must be within [0, 1]")
        if not 0.0 <= float(self.structural.dependency_strength) <= 1.0:
            raise ConfigError("structural.dependency_strength must be within [0, 1]")
        if int(self.keywords.min_length) < 1:
            raise ConfigError("keywords.min_length must be at least 1")
        if not self.ledger.todo_dir.strip():
            raise ConfigError("ledger.todo_dir must not be empty")
        if Path(self.ledger.todo_dir).is_absolute():
            raise ConfigError("ledger.todo_dir must be relative to the workspace")

    def to_dict(self) -> dict:
        return {
            "scan": {
                "threshold": self.scan.threshold,
                "max_workers": self.scan.max_workers,
                "timeout_seconds": self.scan.timeout_seconds,
                "max_file_bytes": self.scan.max_file_bytes,
                "ignore_dirs": list(self.scan.ignore_dirs),
            },
            "weights": {
                "content_match": self.weights.content_match,
                "structural_marker": self.weights.structural_marker,
                "external_signal": self.weights.external_signal,
                "file_created": self.weights.file_created,
                "file_modified": self.weights.file_modified,
            },
            "keywords": {
                "min_length": self.keywords.min_length,
                "stopwords": list(self.keywords.stopwords),
                "generic_terms": list(self.keywords.generic_terms),
                "source_roots": list(self.keywords.source_roots),
                "source_extensions": list(self.keywords.source_extensions),
            },
            "structural": {
                "dependency_strength": self.structural.dependency_strength,
                "markers": {key: list(value) for key, value in self.structural.markers.items()},
            },
            "ledger": {
                "todo_dir": self.ledger.todo_dir,
                "phase_pattern": self.ledger.phase_pattern,
                "lock_timeout_seconds": self.ledger.lock_timeout_seconds,
                "write_status_file": self.ledger.write_status_file,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        if rendered.endswith("."):
            rendered += "0"
        return rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    if isinstance(value, dict):
        items = ", ".join(f"{json.dumps(key)} = {_toml_value(item)}" for key, item in value.items())
        return "{ " + items + " }" if items else "{}"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: TaskScanConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ["scan", "weights", "keywords", "ledger"]:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    lines.append("[structural]")
    lines.append(
        f"dependency_strength = {_toml_value(data['structural']['dependency_strength'])}"
    )
    lines.append("")
    lines.append("[structural.markers]")
    for key, value in data["structural"]["markers"].items():
        lines.append(f"{json.dumps(key)} = {_toml_value(value)}")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> TaskScanConfig:
    if not path.exists():
        return TaskScanConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return TaskScanConfig.from_dict(data)


def save_config(path: Path, config: TaskScanConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
