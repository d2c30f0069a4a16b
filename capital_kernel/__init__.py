"""
Capital Kernel - Fund Allocation / Capital-Call Reconciliation Engine

Tracks fund-to-deal commitments with:
- Committed, called and paid amounts under hard invariants
- A single pure status-derivation rule
- Append-only payment ledger that reconciles to cached totals
- Batched reads that avoid per-row round-trips
- A unified, chronologically ordered calendar feed
"""

__version__ = "0.1.0"
