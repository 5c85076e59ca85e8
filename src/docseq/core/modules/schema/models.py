"""Record schemas and the persistence lifecycle they expose to plugins."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from docseq.errors import SchemaError

if TYPE_CHECKING:
    from docseq.core.modules.counter.binding import CounterBinding

Record = dict[str, Any]


class FieldType(StrEnum):
    """Available field types for record schemas."""

    STRING = "string"
    BOOLEAN = "boolean"
    INT = "int"
    FLOAT = "float"
    DATETIME = "datetime"
    UUID = "uuid"
    DICT = "dict"


NUMERIC_FIELD_TYPES = frozenset({FieldType.INT, FieldType.FLOAT})


class PersistenceEvent(StrEnum):
    """Which write a save hook is running for."""

    CREATE = "create"  # Record does not exist yet
    UPDATE = "update"  # Record already persisted


# Receives the pending record and the lifecycle event, returns the record to persist.
# Raising aborts the pending write.
SaveHook = Callable[[Record, PersistenceEvent], Awaitable[Record]]


class SchemaField(BaseModel):
    """Field declaration in a record schema."""

    id: str = Field(..., description="Field name in the stored document")
    type: FieldType = Field(..., description="Field data type")
    required: bool = Field(False, description="Whether the field must be present when the record is written")

    @property
    def is_numeric(self) -> bool:
        return self.type in NUMERIC_FIELD_TYPES


class Schema:
    """Declared shape of the records stored in one collection.

    Fields can be added dynamically at setup time, which is how plugins such as
    counters declare the fields they write.
    """

    primary_field = "_id"

    def __init__(self, name: str, fields: list[SchemaField] | None = None) -> None:
        self.name = name  # Collection name
        self._fields: dict[str, SchemaField] = {}
        self._hooks: list[SaveHook] = []
        self.counters: dict[str, CounterBinding] = {}
        for field in fields or []:
            self.add_field(field)

    @property
    def fields(self) -> list[SchemaField]:
        return list(self._fields.values())

    @property
    def hooks(self) -> list[SaveHook]:
        return list(self._hooks)

    def get_field(self, field_id: str) -> SchemaField | None:
        return self._fields.get(field_id)

    def has_field(self, field_id: str) -> bool:
        return field_id in self._fields

    def add_field(self, field: SchemaField) -> None:
        """Declare a new field. Raises SchemaError if the name is already taken."""
        if not field.id:
            raise SchemaError("Field name must not be empty")
        if field.id in self._fields:
            raise SchemaError(f"Field '{field.id}' already declared in schema '{self.name}'")
        self._fields[field.id] = field

    def add_hook(self, hook: SaveHook) -> None:
        """Register a hook run before every write, in registration order."""
        self._hooks.append(hook)
