# Row and payload schemas for the hashstack ledger.

from .rows import BlockRow, COLUMNS
from .patch import PatchOp, PatchOperation

__all__ = [
    "BlockRow",
    "COLUMNS",
    "PatchOp",
    "PatchOperation",
]
