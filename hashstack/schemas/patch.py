"""
Patch Operation Schema

RFC 6902 (JSON Patch) operations as carried in tracked-store block payloads.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class PatchOp(str, Enum):
    ADD = "add"
    REMOVE = "remove"
    REPLACE = "replace"
    MOVE = "move"
    COPY = "copy"
    TEST = "test"


class PatchOperation(BaseModel):
    """A single JSON Patch operation."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    op: PatchOp
    path: str = Field(..., description="JSON Pointer to the target location")
    value: Any = None
    from_: Optional[str] = Field(
        default=None,
        alias="from",
        description="Source pointer for move and copy"
    )

    @model_validator(mode="after")
    def _check_operands(self) -> "PatchOperation":
        if self.op in (PatchOp.MOVE, PatchOp.COPY) and self.from_ is None:
            raise ValueError(f"'{self.op.value}' operation requires 'from'")
        if self.op in (PatchOp.ADD, PatchOp.REPLACE, PatchOp.TEST) and "value" not in self.model_fields_set:
            raise ValueError(f"'{self.op.value}' operation requires 'value'")
        return self

    def to_dict(self) -> dict[str, Any]:
        """Wire form, omitting operands the op does not use."""
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)
