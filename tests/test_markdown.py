import pytest

from taskscan.errors import MalformedRecordError
from taskscan.ledger import PendingCompletion, apply_completions, parse_phase

PHASE_TEXT = """# Phase 1: Foundation

Some notes about the phase.

- [ ] Create navigation component
- [x] Configure ESLint <!-- completed: 2026-10-19T10:00:00+00:00 confidence: 0.65 -->
  - evidence: Structural marker for 'eslint': eslint.config.js
- [ ] Set up routing

## Notes
- keep this line
"""


def _completion(description: str, confidence: float = 0.79) -> PendingCompletion:
    return PendingCompletion(
        description=description,
        confidence=confidence,
        evidence=["File exists: src/Navigation.tsx", "Defines Navigation in src/Navigation.tsx"],
        completed_at="2026-10-19T12:00:00+00:00",
    )


def test_parse_phase_reads_tasks_and_completion_metadata() -> None:
    tasks = parse_phase(PHASE_TEXT)

    assert [task.description for task in tasks] == [
        "Create navigation component",
        "Configure ESLint",
        "Set up routing",
    ]
    assert [task.status for task in tasks] == ["pending", "complete", "pending"]
    assert tasks[1].confidence == 0.65
    assert tasks[1].completed_at == "2026-10-19T10:00:00+00:00"
    assert tasks[1].evidence == ["Structural marker for 'eslint': eslint.config.js"]
    assert tasks[0].line == 4


def test_parse_phase_accepts_manual_checkmarks_without_metadata() -> None:
    tasks = parse_phase("* [X] Write README\n")

    assert tasks[0].is_complete
    assert tasks[0].confidence is None


def test_parse_phase_rejects_duplicate_descriptions() -> None:
    with pytest.raises(MalformedRecordError, match="Duplicate"):
        parse_phase("- [ ] Set up routing\n- [x] Set up routing\n")


def test_parse_phase_rejects_unparsable_confidence() -> None:
    with pytest.raises(MalformedRecordError, match="Unparsable confidence"):
        parse_phase("- [x] Set up routing <!-- completed: 2026-10-19 confidence: high -->\n")
    with pytest.raises(MalformedRecordError, match="out of range"):
        parse_phase("- [x] Set up routing <!-- completed: 2026-10-19 confidence: 1.7 -->\n")


def test_apply_completions_rewrites_only_target_lines() -> None:
    updated, transitioned = apply_completions(
        PHASE_TEXT, [_completion("Create navigation component")]
    )

    assert [task.description for task in transitioned] == ["Create navigation component"]
    assert transitioned[0].confidence == 0.79
    assert (
        "- [x] Create navigation component "
        "<!-- completed: 2026-10-19T12:00:00+00:00 confidence: 0.79 -->"
    ) in updated
    assert "  - evidence: Defines Navigation in src/Navigation.tsx" in updated
    assert "Some notes about the phase." in updated
    assert "- keep this line" in updated
    assert "- [ ] Set up routing" in updated
    assert updated.endswith("\n")

    reparsed = {task.description: task for task in parse_phase(updated)}
    assert reparsed["Create navigation component"].evidence == [
        "File exists: src/Navigation.tsx",
        "Defines Navigation in src/Navigation.tsx",
    ]
    assert reparsed["Configure ESLint"].confidence == 0.65


def test_apply_completions_skips_already_completed_tasks() -> None:
    updated, transitioned = apply_completions(
        PHASE_TEXT, [_completion("Configure ESLint", confidence=0.99)]
    )

    assert transitioned == []
    assert updated == PHASE_TEXT


def test_apply_completions_handles_several_tasks_in_one_pass() -> None:
    updated, transitioned = apply_completions(
        PHASE_TEXT,
        [_completion("Set up routing", 0.65), _completion("Create navigation component")],
    )

    assert [task.description for task in transitioned] == [
        "Create navigation component",
        "Set up routing",
    ]
    assert all(task.is_complete for task in parse_phase(updated))


def test_apply_completions_unknown_task_raises_key_error() -> None:
    with pytest.raises(KeyError):
        apply_completions(PHASE_TEXT, [_completion("Deploy to production")])
