"""
HealthFin Kernel

Persistence and infrastructure core for the health financing statement
engine:
- Quarterly execution ledger with per-quarter compare-and-swap
- Period locking checked before every write
- Checksummed report snapshots
- Idempotent recalculation queue for cascaded quarters
"""

__version__ = "0.1.0"
