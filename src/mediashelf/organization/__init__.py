"""Organization: target paths, atomic moves and the transaction log."""

from .engine import OrganizationEngine
from .executor import MoveExecutor
from .journal import TRANSACTIONS_FILENAME, TransactionLog
from .models import MoveOutcome, MovePhase, RecoveryOutcome, TransactionLogEntry
from .paths import PathGenerator, sanitize_component

__all__ = [
    "OrganizationEngine",
    "MoveExecutor",
    "TransactionLog",
    "TRANSACTIONS_FILENAME",
    "MoveOutcome",
    "MovePhase",
    "RecoveryOutcome",
    "TransactionLogEntry",
    "PathGenerator",
    "sanitize_component",
]
