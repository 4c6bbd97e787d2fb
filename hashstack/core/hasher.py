"""
Block Hashing

Builds the canonical string form of a block and commits to it with SHA-256.
Same fields → same hash. Always.

If this changes, every stored chain stops verifying.
Every change here must be backward-compatible or versioned.

CANONICAL STRING RULES:
1. Field order: index, timestamp, previous_hash, data, nonce
2. No separators between fields (the string is a commitment, not an encoding;
   fields cannot be recovered from it)
3. Integers: base-10, no padding
4. Missing previous_hash: replaced by ABSENT_PREVIOUS_HASH ("undefined")
5. Encoding: UTF-8
6. Digest: SHA-256, lowercase hex (64 characters)
"""

import hashlib
from typing import Optional


# Marker folded into the canonical string for the genesis block.
# Changing it changes every downstream hash.
ABSENT_PREVIOUS_HASH = "undefined"

HASH_HEX_LENGTH = 64


class Hasher:
    """
    Canonical string construction, hashing and difficulty checks.

    IMMUTABLE CONTRACT:
    - Same (index, timestamp, previous_hash, data, nonce) → same hash
    - Forever
    - Across platforms
    """

    @staticmethod
    def canonical_string(
        index: int,
        timestamp: int,
        previous_hash: Optional[str],
        data: str,
        nonce: int,
    ) -> str:
        """
        Concatenate the committed fields with no delimiters.

        An absent (or empty) previous hash becomes ABSENT_PREVIOUS_HASH.
        """
        return f"{index}{timestamp}{previous_hash or ABSENT_PREVIOUS_HASH}{data}{nonce}"

    @staticmethod
    def hash_text(text: str) -> str:
        """Hex-encoded SHA-256 of the UTF-8 bytes of text."""
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    @classmethod
    def hash_block_fields(
        cls,
        index: int,
        timestamp: int,
        previous_hash: Optional[str],
        data: str,
        nonce: int,
    ) -> str:
        """
        Hash the five committed block fields.

        Returns:
            Hex-encoded SHA-256 hash (64 characters, lowercase)
        """
        return cls.hash_text(
            cls.canonical_string(index, timestamp, previous_hash, data, nonce)
        )

    @staticmethod
    def meets_difficulty(block_hash: Optional[str], difficulty: int) -> bool:
        """
        Check that the first `difficulty` hex characters are all '0'.

        Difficulty 0 accepts any hash, including a missing one.

        Raises:
            ValueError: If difficulty is negative
        """
        if difficulty < 0:
            raise ValueError(f"Difficulty must be >= 0, got {difficulty}")
        if difficulty == 0:
            return True
        if not block_hash:
            return False
        return block_hash[:difficulty] == "0" * difficulty

    @staticmethod
    def count_leading_zeros(block_hash: str) -> int:
        """Number of leading '0' hex characters."""
        return len(block_hash) - len(block_hash.lstrip("0"))

    @staticmethod
    def constant_time_compare(a: Optional[str], b: Optional[str]) -> bool:
        """
        Compare two strings in constant time.

        None never equals anything, including another None.
        """
        if a is None or b is None:
            return False
        if len(a) != len(b):
            return False

        result = 0
        for x, y in zip(a, b):
            result |= ord(x) ^ ord(y)

        return result == 0
