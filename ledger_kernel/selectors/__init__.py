"""Read-only selectors."""

from ledger_kernel.selectors.ledger_selector import LedgerSelector

__all__ = ["LedgerSelector"]
