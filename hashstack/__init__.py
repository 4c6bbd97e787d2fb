"""
hashstack - a proof-of-work, hash-linked ledger and change log.

Every write to a tracked mapping becomes a JSON Patch, mined into a block
and appended to an append-only chain.
"""

__version__ = "0.1.0"
