"""Ledger exception hierarchy."""

from enum import Enum
from typing import Optional


class LedgerError(Exception):
    """Base exception for ledger errors."""
    pass


class GenesisViolation(str, Enum):
    """Which clause of the genesis rule was broken."""
    INDEX_NOT_ZERO = "INDEX_NOT_ZERO"
    HAS_PREVIOUS_HASH = "HAS_PREVIOUS_HASH"
    INVALID_HASH = "INVALID_HASH"


class GenesisViolationError(LedgerError):
    """Raised when the first block breaks the genesis rule."""

    def __init__(self, code: GenesisViolation, message: str):
        super().__init__(message)
        self.code = code


class ChainViolationError(LedgerError):
    """Raised when a non-genesis block breaks contiguity, linkage or its hash."""

    def __init__(self, index: int, message: Optional[str] = None):
        super().__init__(message or f"Block {index} is invalid!")
        self.index = index


class AdmissionRejectedError(LedgerError):
    """Raised when a candidate block cannot be appended to the chain head."""
    pass


class MiningTimeoutError(LedgerError):
    """Raised when mining gives up after its iteration budget."""

    def __init__(self, attempts: int, difficulty: int):
        super().__init__(
            f"No hash with {difficulty} leading zeros found "
            f"after {attempts} attempts"
        )
        self.attempts = attempts
        self.difficulty = difficulty


class PatchReplayError(LedgerError):
    """Raised when a block payload is not a replayable patch."""
    pass
