"""Run history persistence."""

from stagegate.persistence.run_history import (
    RunHistoryDB,
    RunHistoryError,
    RunHistoryMigrationError,
)

__all__ = ["RunHistoryDB", "RunHistoryError", "RunHistoryMigrationError"]
