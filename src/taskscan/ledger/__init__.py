from taskscan.ledger.markdown import PendingCompletion, apply_completions, parse_phase
from taskscan.ledger.store import PhaseLedger

__all__ = ["PendingCompletion", "PhaseLedger", "apply_completions", "parse_phase"]
