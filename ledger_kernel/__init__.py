"""
Ledger Kernel - posting core

A multi-tenant double-entry ledger with:
- Draft -> posted -> voided-by-reversal journal lifecycle
- Additive, never-rewritten ledger balances
- Period lifecycle with closing guards
- Idempotent draft creation
- Named (advisory) locks for cross-process serialisation
"""

__version__ = "0.1.0"
