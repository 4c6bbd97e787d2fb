"""
Block Model

A block is one record of the chain. It commits to its predecessor through
previous_hash, and to its own content through hash.

Each block:
- Is created with nonce 0
- Is mined until its hash meets the difficulty target
- Is immutable once mined (changing any committed field breaks its hash)
"""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from .errors import MiningTimeoutError
from .hasher import Hasher


class Block(BaseModel):
    """
    A single ledger record.

    CHAIN INTEGRITY FIELDS:
    - previous_hash: None ONLY for genesis (index == 0)
    - hash: SHA-256 over index, timestamp, previous_hash, data and nonce
    """

    index: int = Field(
        ...,
        ge=0,
        description="Position in the chain. Genesis is 0."
    )

    timestamp: int = Field(
        ...,
        description="Creation time in milliseconds since the epoch"
    )

    previous_hash: Optional[str] = Field(
        default=None,
        description="Hash of the preceding block. None for genesis."
    )

    data: str = Field(
        default="",
        description="Opaque payload (a serialized patch for tracked stores)"
    )

    nonce: int = Field(
        default=0,
        ge=0,
        description="Proof-of-work counter found by mining"
    )

    hash: Optional[str] = Field(
        default=None,
        description="Hex SHA-256 of the canonical string form"
    )

    @field_validator("previous_hash", "hash", mode="before")
    @classmethod
    def _empty_hash_is_absent(cls, value: Any) -> Any:
        if value == "":
            return None
        return value

    @field_validator("data", mode="before")
    @classmethod
    def _decode_bytes(cls, value: Any) -> Any:
        if isinstance(value, (bytes, bytearray)):
            return bytes(value).decode("utf-8")
        return value

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, value: Any) -> Any:
        # Persisted rows store the timestamp as text
        if isinstance(value, str):
            return int(value.strip())
        return value

    @property
    def is_genesis(self) -> bool:
        return self.index == 0

    def canonical_string(self) -> str:
        return Hasher.canonical_string(
            self.index, self.timestamp, self.previous_hash, self.data, self.nonce
        )

    def __str__(self) -> str:
        return self.canonical_string()

    def calculate_hash(self) -> str:
        """Recompute the hash from the committed fields. No side effects."""
        return Hasher.hash_block_fields(
            self.index, self.timestamp, self.previous_hash, self.data, self.nonce
        )

    def mine_block(self, difficulty: int, max_iterations: Optional[int] = None) -> str:
        """
        Search for a nonce whose hash starts with `difficulty` zeros.

        Resets the nonce to 0, then increments it and rehashes until the
        target is met. The search is unbounded unless max_iterations is set.

        Args:
            difficulty: Required number of leading '0' hex characters
            max_iterations: Give up after this many nonce increments

        Returns:
            The winning hash (also stored on the block)

        Raises:
            MiningTimeoutError: If max_iterations is exhausted
            ValueError: If difficulty is negative
        """
        self.nonce = 0
        self.hash = self.calculate_hash()

        while not Hasher.meets_difficulty(self.hash, difficulty):
            if max_iterations is not None and self.nonce >= max_iterations:
                raise MiningTimeoutError(self.nonce, difficulty)
            self.nonce += 1
            self.hash = self.calculate_hash()

        return self.hash

    def describe(self) -> str:
        """Human-readable one-line summary."""
        created = datetime.fromtimestamp(self.timestamp / 1000, tz=timezone.utc)
        return (
            f"Block #{self.index} [previous_hash: {self.previous_hash}, "
            f"timestamp: {created.isoformat()}, data: {self.data}, "
            f"hash: {self.hash}]"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert block to dictionary for export."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Block":
        """Create block from an exported dictionary."""
        return cls.model_validate(data)
