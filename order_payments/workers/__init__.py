"""One-shot maintenance workers."""
from .ledger_retention import run_purge

__all__ = ["run_purge"]
