"""Auto-incrementing counters for sequential numbering."""

from datetime import datetime
from typing import Any
from uuid import UUID

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field

from docseq.core.db import MongoModel

# Values copied from reference fields into a counter's key
ReferenceValue = str | int | float | bool | datetime | UUID | ObjectId | list[Any] | dict[str, Any] | None

# Field name -> value, stored ordered by field name; None for global counters
ReferenceKey = dict[str, ReferenceValue]

DEFAULT_COLLECTION_NAME = "counters"
DEFAULT_INC_FIELD = "_id"


class CounterRecord(MongoModel):
    """Atomic counter for one (scope, reference) pair.

    Uses MongoDB atomic operations to prevent duplicates.
    Indexed on (scope_id, reference) - unique.
    """

    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    scope_id: str
    reference: ReferenceKey | None = None
    value: int = Field(0, ge=0)  # Current value; next allocation returns value + 1


class CounterOptions(BaseModel):
    """Raw counter options as supplied by the caller."""

    id: str | None = None  # Scope id; defaults to inc_field in global mode
    inc_field: str = DEFAULT_INC_FIELD
    reference_fields: str | list[str] | None = None
    collection_name: str | None = None  # None selects the configured default collection


class CounterConfiguration(BaseModel):
    """Validated counter configuration. Build it with `configure`."""

    model_config = ConfigDict(frozen=True)

    scope_id: str
    inc_field: str
    reference_fields: tuple[str, ...] | None = None
    collection_name: str = DEFAULT_COLLECTION_NAME

    @property
    def is_scoped(self) -> bool:
        return self.reference_fields is not None
