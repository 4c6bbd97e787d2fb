"""
Persisted Row Schema

The block table layout shared by every durable store:

    blockchain (
        id            INTEGER PRIMARY KEY,   -- block index
        timestamp     TEXT,                  -- milliseconds since epoch
        previousHash  TEXT,                  -- NULL for genesis
        data          TEXT,
        hash          TEXT,
        nonce         INTEGER
    )

Column names are kept exactly as existing databases have them.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class BlockRow(BaseModel):
    """One row of the blockchain table."""

    model_config = ConfigDict(populate_by_name=True)

    id: int = Field(..., ge=0, description="Block index")
    timestamp: str = Field(..., description="Milliseconds since epoch, as text")
    previous_hash: Optional[str] = Field(
        default=None,
        alias="previousHash",
        description="Hash of the preceding block. NULL for genesis."
    )
    data: str = Field(default="")
    hash: str = Field(..., description="Hex SHA-256 of the block")
    nonce: int = Field(default=0, ge=0)

    def as_params(self) -> tuple:
        """Positional parameters in column order."""
        return (
            self.id,
            self.timestamp,
            self.previous_hash,
            self.data,
            self.hash,
            self.nonce,
        )

    @classmethod
    def from_tuple(cls, row: tuple) -> "BlockRow":
        """Build from a (id, timestamp, previousHash, data, hash, nonce) row."""
        return cls(
            id=row[0],
            timestamp=str(row[1]),
            previous_hash=row[2],
            data=row[3] if row[3] is not None else "",
            hash=row[4],
            nonce=row[5] if row[5] is not None else 0,
        )


COLUMNS = ("id", "timestamp", "previousHash", "data", "hash", "nonce")
