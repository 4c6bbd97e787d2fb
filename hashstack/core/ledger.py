"""
Ledger - The Heart of the System

This is an append-only, hash-linked, proof-of-work ledger.
Nothing is edited. Blocks are mined and appended.

The ledger:
- Creates candidate blocks on top of the chain head
- Mines them against the difficulty target
- Validates them (genesis rule, admission rule)
- Persists them through a BlockStore
- Re-verifies the whole chain on load

Rules (enforced in code):
- Genesis has index 0, no previous hash, and a correct hash
- Every later block has index = previous index + 1
- Every later block carries the previous block's hash
- Every block's hash matches its recomputed hash

ARCHITECTURE NOTE:
Storage is delegated to the BlockStore abstraction.
- Ledger: hashing, mining, validation, in-memory chain
- BlockStore: durable append, ordered load

The store is written first; the in-memory chain only grows after the store
accepted the block, so a failed write leaves both sides unchanged.
"""

import json
import time
from datetime import datetime, timezone
from threading import RLock
from typing import Callable, Iterable, Optional, TYPE_CHECKING

from ..observability import get_logger, get_metrics
from .block import Block
from .errors import (
    AdmissionRejectedError,
    ChainViolationError,
    GenesisViolation,
    GenesisViolationError,
)
from .hasher import Hasher

if TYPE_CHECKING:
    from ..db.store import BlockStore


logger = get_logger(__name__)

DEFAULT_DIFFICULTY = 1


def _now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


class Ledger:
    """
    The blockchain engine.

    CHAIN INTEGRITY GUARANTEES:
    - Indexes are contiguous (0, 1, 2, ...)
    - previous_hash is None ONLY for the genesis block
    - Every block is validated on append AND on load
    - The chain never shrinks or reorders

    CONCURRENCY:
    - add_block and commit are serialized by a re-entrant lock, so
      concurrent writers cannot interleave validate/persist/append
    """

    def __init__(
        self,
        block_store: Optional["BlockStore"] = None,
        difficulty: int = DEFAULT_DIFFICULTY,
        max_mining_iterations: Optional[int] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        """
        Initialize an empty Ledger.

        Args:
            block_store: BlockStore for persistence.
                        If None, creates an InMemoryBlockStore.
            difficulty: Leading zero hex digits required of a mined hash.
            max_mining_iterations: Nonce budget per block (None = unbounded).
            clock: Returns the current time in milliseconds.
        """
        if difficulty < 0:
            raise ValueError(f"Difficulty must be >= 0, got {difficulty}")

        # Import here to avoid circular imports
        if block_store is None:
            from ..db.store import InMemoryBlockStore
            block_store = InMemoryBlockStore()

        self._block_store = block_store
        self._difficulty = difficulty
        self._max_mining_iterations = max_mining_iterations
        self._clock = clock or _now_ms
        self._blocks: list[Block] = []
        self._write_lock = RLock()

    @property
    def block_store(self) -> "BlockStore":
        """Get the underlying block store."""
        return self._block_store

    @property
    def difficulty(self) -> int:
        return self._difficulty

    @property
    def max_mining_iterations(self) -> Optional[int]:
        return self._max_mining_iterations

    @property
    def blocks(self) -> list[Block]:
        """Copies of every block, in index order."""
        return [block.model_copy() for block in self._blocks]

    @property
    def block_count(self) -> int:
        return len(self._blocks)

    def latest_block(self) -> Optional[Block]:
        """The chain head, or None for an empty chain."""
        if not self._blocks:
            return None
        return self._blocks[-1].model_copy()

    # ================================================================
    # BLOCK CREATION
    # ================================================================

    def new_block(self, data: str) -> Block:
        """
        Build and mine a block on top of the current head.

        The block is NOT appended. Pass it to add_block().

        Raises:
            MiningTimeoutError: If max_mining_iterations is exhausted
        """
        latest = self.latest_block()

        block = Block(
            index=latest.index + 1 if latest is not None else 0,
            timestamp=self._clock(),
            previous_hash=latest.hash if latest is not None else None,
            data=data,
        )
        block.hash = block.calculate_hash()

        start = time.perf_counter()
        block.mine_block(self._difficulty, self._max_mining_iterations)
        latency_ms = (time.perf_counter() - start) * 1000

        get_metrics().record_mining(block.nonce + 1, latency_ms)
        logger.debug(
            "Block mined",
            index=block.index,
            nonce=block.nonce,
            difficulty=self._difficulty,
            duration_ms=round(latency_ms, 2),
        )
        return block

    def add_block(self, block: Block) -> Block:
        """
        Append a mined block to the chain.

        This is APPEND ONLY. No updates. No deletes. Ever.

        Flow:
        1. Validate against the chain head
        2. Persist through the BlockStore
        3. Append to the in-memory chain

        Raises:
            AdmissionRejectedError: If the block is not a valid successor
            BlockStoreError: If the store could not persist it
        """
        with self._write_lock:
            previous = self._blocks[-1] if self._blocks else None

            if not self.is_valid_new_block(block, previous):
                get_metrics().record_rejection()
                logger.warning(
                    "Block rejected",
                    index=block.index,
                    head_index=previous.index if previous is not None else None,
                )
                raise AdmissionRejectedError(
                    f"Block {block.index} is not a valid successor of "
                    f"{'the empty chain' if previous is None else f'block {previous.index}'}"
                )

            stored = block.model_copy()
            self._block_store.append(stored)
            self._blocks.append(stored)

            get_metrics().record_append()
            logger.info("Block appended", index=stored.index, hash=stored.hash)
            return stored.model_copy()

    def commit(self, data: str) -> Block:
        """Mine a block carrying data and append it."""
        with self._write_lock:
            return self.add_block(self.new_block(data))

    # ================================================================
    # VALIDATION
    # ================================================================

    def is_valid_new_block(
        self,
        new_block: Optional[Block],
        previous_block: Optional[Block],
    ) -> bool:
        """
        Admission predicate.

        - Both present: index contiguity, hash linkage, correct hash.
        - No previous block and index 0: the genesis rule.
        - Anything else: invalid.
        """
        if new_block is None:
            return False

        if previous_block is None:
            if new_block.index != 0:
                return False
            try:
                return self.validate_first_block(new_block)
            except GenesisViolationError:
                return False

        if new_block.index != previous_block.index + 1:
            return False

        if new_block.previous_hash is None or new_block.previous_hash != previous_block.hash:
            return False

        if new_block.hash is None or not Hasher.constant_time_compare(
            new_block.calculate_hash(), new_block.hash
        ):
            return False

        return True

    def validate_first_block(self, block: Optional[Block] = None) -> bool:
        """
        Apply the genesis rule to block, or to blocks[0] if omitted.

        An empty chain is trivially valid.

        Raises:
            GenesisViolationError: With a code naming the broken clause
        """
        first = block if block is not None else (self._blocks[0] if self._blocks else None)
        if first is None:
            return True

        if first.index != 0:
            raise GenesisViolationError(
                GenesisViolation.INDEX_NOT_ZERO,
                f"First block is not at index 0 (got {first.index})",
            )

        if first.previous_hash is not None:
            raise GenesisViolationError(
                GenesisViolation.HAS_PREVIOUS_HASH,
                f"First block has a previous hash: {first.previous_hash}",
            )

        if first.hash is None or not Hasher.constant_time_compare(
            first.calculate_hash(), first.hash
        ):
            raise GenesisViolationError(
                GenesisViolation.INVALID_HASH,
                "First block has invalid or missing hash",
            )

        return True

    def validate_block_chain(self) -> bool:
        """
        Verify the whole chain.

        This is the single authority for internal consistency. Run on load
        and available for on-demand re-verification.

        Raises:
            GenesisViolationError: If blocks[0] breaks the genesis rule
            ChainViolationError: Naming the first offending index
        """
        self.validate_first_block()

        for position in range(1, len(self._blocks)):
            current = self._blocks[position]
            previous = self._blocks[position - 1]

            if not self.is_valid_new_block(current, previous):
                raise ChainViolationError(position)

        return True

    def verify_chain_integrity(self) -> bool:
        """Boolean form of validate_block_chain()."""
        try:
            return self.validate_block_chain()
        except (GenesisViolationError, ChainViolationError) as e:
            logger.warning("Chain integrity check failed", error=str(e))
            return False

    # ================================================================
    # LOADING
    # ================================================================

    @classmethod
    def load_from_blocks(
        cls,
        blocks: Iterable[Block],
        verify: bool = True,
        block_store: Optional["BlockStore"] = None,
        **kwargs,
    ) -> "Ledger":
        """
        Build a ledger from already-persisted blocks.

        The ENTIRE chain is validated before the ledger is returned, so rows
        injected directly into the database are caught here.

        Args:
            blocks: Blocks in any order (sorted by index here)
            verify: If True (default), validate the entire chain
            block_store: Store the blocks came from
            **kwargs: difficulty, max_mining_iterations, clock

        Raises:
            GenesisViolationError, ChainViolationError: If the chain is invalid
        """
        ordered = sorted((block.model_copy() for block in blocks), key=lambda b: b.index)

        if block_store is None:
            from ..db.store import InMemoryBlockStore
            block_store = InMemoryBlockStore(ordered)

        ledger = cls(block_store=block_store, **kwargs)
        ledger._blocks = ordered

        if verify and ledger._blocks:
            ledger.validate_block_chain()

        logger.info("Ledger loaded", block_count=len(ledger._blocks), verified=verify)
        return ledger

    @classmethod
    def load_from_store(
        cls,
        block_store: "BlockStore",
        verify: bool = True,
        **kwargs,
    ) -> "Ledger":
        """
        Load a ledger from a BlockStore.

        This is the recommended way to initialize a Ledger in production.
        """
        blocks = block_store.list_all()
        return cls.load_from_blocks(blocks, verify=verify, block_store=block_store, **kwargs)

    # ================================================================
    # EXPORT
    # ================================================================

    def to_json(self) -> str:
        """Serialize the chain and its difficulty to JSON."""
        return json.dumps(
            {
                "difficulty": self._difficulty,
                "blocks": [block.to_dict() for block in self._blocks],
            },
            indent=2,
        )

    def describe(self) -> str:
        return "\n".join(block.describe() for block in self._blocks)

    def close(self) -> None:
        """Release the underlying store."""
        self._block_store.close()
