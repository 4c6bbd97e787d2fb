"""
Change-Tracking Store

A key-value mapping whose every write is recorded on a Ledger.

Each write:
1. Snapshots the state before the write
2. Applies the write to the live mapping
3. Diffs old snapshot → live state (JSON Patch)
4. Mines the serialized diff into a block and appends it

Replaying every payload in block order onto {} rebuilds the mapping.
"""

from typing import Any, Iterable, Iterator, Optional

from ..observability import get_logger
from .block import Block
from .ledger import Ledger
from .patch import Differ, PatchDiffer


logger = get_logger(__name__)


class ChangeTrackingStore:
    """
    Mapping with an explicit, ledgered mutation path.

    set(), delete() and update() are the only ways to change state.
    Reads never touch the ledger.
    """

    def __init__(
        self,
        ledger: Ledger,
        differ: Optional[Differ] = None,
        initial: Optional[dict[str, Any]] = None,
    ):
        """
        Args:
            ledger: Ledger that receives one block per write
            differ: Diff implementation (defaults to PatchDiffer)
            initial: Contents to apply on top of what the ledger already
                records, committed as a single block if non-empty

        Raises:
            PatchReplayError: If a block on ledger is not a tracked-store patch
        """
        self._ledger = ledger
        self._differ = differ or PatchDiffer()
        self._state: dict[str, Any] = self.replay(ledger.blocks, differ=self._differ)
        # Last committed snapshot - never handed out
        self._committed: dict[str, Any] = self._differ.clone(self._state)

        if initial:
            self.update(initial)

    @classmethod
    def from_ledger(cls, ledger: Ledger, differ: Optional[Differ] = None) -> "ChangeTrackingStore":
        """Rebuild the tracked mapping from the payloads already on ledger."""
        return cls(ledger, differ=differ)

    @staticmethod
    def replay(blocks: Iterable[Block], differ: Optional[Differ] = None) -> dict[str, Any]:
        """
        Apply each block's patch, in index order, to an empty mapping.

        Raises:
            PatchReplayError: If a payload is not a valid, applicable patch
        """
        differ = differ or PatchDiffer()
        state: dict[str, Any] = {}
        for block in sorted(blocks, key=lambda b: b.index):
            state = differ.apply(state, differ.deserialize(block.data))
        return state

    @property
    def ledger(self) -> Ledger:
        return self._ledger

    # ================================================================
    # READS
    # ================================================================

    def get(self, key: str, default: Any = None) -> Any:
        return self._state.get(key, default)

    def __getitem__(self, key: str) -> Any:
        return self._state[key]

    def __contains__(self, key: object) -> bool:
        return key in self._state

    def __len__(self) -> int:
        return len(self._state)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._state))

    def keys(self) -> list[str]:
        return list(self._state)

    def snapshot(self) -> dict[str, Any]:
        """Deep copy of the current contents."""
        return self._differ.clone(self._state)

    # ================================================================
    # WRITES
    # ================================================================

    def set(self, key: str, value: Any) -> Block:
        """
        Assign key and record the change. Returns the appended block.

        value is stored in its JSON form (see PatchDiffer.normalize), so
        the live mapping always equals what replay rebuilds.
        """
        self._check_key(key)
        value = self._differ.normalize(value)
        return self._record(lambda state: state.__setitem__(key, value))

    def delete(self, key: str) -> Block:
        """
        Remove key and record the change.

        Raises:
            KeyError: If key is absent (nothing is recorded)
        """
        self._check_key(key)
        if key not in self._state:
            raise KeyError(key)
        return self._record(lambda state: state.pop(key))

    def update(self, values: dict[str, Any]) -> Block:
        """Assign several keys as one recorded change."""
        for key in values:
            self._check_key(key)
        values = self._differ.normalize(dict(values))
        return self._record(lambda state: state.update(values))

    def __setitem__(self, key: str, value: Any) -> None:
        self.set(key, value)

    def __delitem__(self, key: str) -> None:
        self.delete(key)

    @staticmethod
    def _check_key(key: Any) -> None:
        if not isinstance(key, str):
            raise TypeError(f"Keys must be str, got {type(key).__name__}")

    def _record(self, mutate) -> Block:
        """
        Apply mutate to the live mapping and ledger the resulting diff.

        On any failure the live mapping is restored to the last committed
        snapshot and the error propagates.
        """
        old = self._differ.clone(self._committed)
        try:
            mutate(self._state)
            operations = self._differ.diff(old, self._state)
            block = self._ledger.commit(self._differ.serialize(operations))
        except Exception:
            self._state = self._differ.clone(self._committed)
            logger.warning("Tracked write rolled back", keys=len(self._state))
            raise

        self._committed = self._differ.clone(self._state)
        logger.debug("Tracked write recorded", index=block.index, operations=len(operations))
        return block
