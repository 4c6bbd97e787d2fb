# Core ledger services
from .hasher import Hasher, ABSENT_PREVIOUS_HASH
from .block import Block
from .errors import (
    LedgerError,
    GenesisViolation,
    GenesisViolationError,
    ChainViolationError,
    AdmissionRejectedError,
    MiningTimeoutError,
    PatchReplayError,
)
from .ledger import Ledger, DEFAULT_DIFFICULTY
from .patch import Differ, PatchDiffer
from .tracker import ChangeTrackingStore

__all__ = [
    "Hasher",
    "ABSENT_PREVIOUS_HASH",
    "Block",
    "LedgerError",
    "GenesisViolation",
    "GenesisViolationError",
    "ChainViolationError",
    "AdmissionRejectedError",
    "MiningTimeoutError",
    "PatchReplayError",
    "Ledger",
    "DEFAULT_DIFFICULTY",
    "Differ",
    "PatchDiffer",
    "ChangeTrackingStore",
]
