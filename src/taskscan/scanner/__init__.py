from taskscan.scanner.keywords import KeywordExtractor
from taskscan.scanner.scanner import EvidenceScanner, default_strategies
from taskscan.scanner.snapshot import FileEntry, WorkspaceSnapshot
from taskscan.scanner.strategies import (
    ContentMatchStrategy,
    DependencyManifestStrategy,
    EvidenceStrategy,
    FileExistenceStrategy,
    StructuralMarkerStrategy,
)

__all__ = [
    "ContentMatchStrategy",
    "DependencyManifestStrategy",
    "EvidenceScanner",
    "EvidenceStrategy",
    "FileEntry",
    "FileExistenceStrategy",
    "KeywordExtractor",
    "StructuralMarkerStrategy",
    "WorkspaceSnapshot",
    "default_strategies",
]
