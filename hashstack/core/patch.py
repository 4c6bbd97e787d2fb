"""
Structural Diff

Turns two snapshots of a mapping into a JSON Patch (RFC 6902) operation list,
and applies such lists back. The diff itself is jsonpatch's; this module only
fixes how patches are cloned, serialized and validated for the ledger.
"""

import copy
import json
from typing import Any, Protocol

import jsonpatch
from pydantic import ValidationError

from ..schemas import PatchOperation
from .errors import PatchReplayError


class Differ(Protocol):
    """What a ChangeTrackingStore needs from a diff implementation."""

    def diff(self, old: dict, new: dict) -> list[dict[str, Any]]: ...

    def clone(self, state: dict) -> dict: ...

    def normalize(self, value: Any) -> Any: ...

    def apply(self, state: dict, operations: list[dict[str, Any]]) -> dict: ...

    def serialize(self, operations: list[dict[str, Any]]) -> str: ...

    def deserialize(self, data: str) -> list[dict[str, Any]]: ...


class PatchDiffer:
    """JSON Patch differ backed by the jsonpatch library."""

    def diff(self, old: dict, new: dict) -> list[dict[str, Any]]:
        """Ordered operations transforming old into new."""
        return list(jsonpatch.make_patch(old, new).patch)

    def clone(self, state: dict) -> dict:
        """Deep, independent copy of state."""
        return copy.deepcopy(state)

    def normalize(self, value: Any) -> Any:
        """
        The JSON form of value, as replay will reconstruct it.

        Tuples become lists and non-str mapping keys become strings.

        Raises:
            TypeError: If value has no JSON form
            ValueError: If value contains NaN or infinity
        """
        return json.loads(json.dumps(value, allow_nan=False))

    def apply(self, state: dict, operations: list[dict[str, Any]]) -> dict:
        """
        Apply operations to a copy of state.

        Raises:
            PatchReplayError: If an operation does not apply
        """
        try:
            return jsonpatch.apply_patch(state, operations, in_place=False)
        except (jsonpatch.JsonPatchException, jsonpatch.JsonPointerException) as e:
            raise PatchReplayError(f"Patch does not apply: {e}") from e

    def serialize(self, operations: list[dict[str, Any]]) -> str:
        """Compact JSON with sorted keys, so equal patches give equal payloads."""
        return json.dumps(
            operations,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )

    def deserialize(self, data: str) -> list[dict[str, Any]]:
        """
        Parse a block payload back into validated operations.

        Raises:
            PatchReplayError: If data is not a JSON list of patch operations
        """
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError as e:
            raise PatchReplayError(f"Payload is not JSON: {e}") from e

        if not isinstance(parsed, list):
            raise PatchReplayError(
                f"Payload must be a list of operations, got {type(parsed).__name__}"
            )

        operations = []
        for position, raw in enumerate(parsed):
            try:
                operations.append(PatchOperation.model_validate(raw).to_dict())
            except ValidationError as e:
                raise PatchReplayError(f"Invalid operation at position {position}: {e}") from e

        return operations
