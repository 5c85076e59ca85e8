"""Wiring between a record schema and a counter store."""

from collections.abc import Mapping
from typing import Any

import pydantic
import structlog

from docseq.core.modules.counter.models import DEFAULT_COLLECTION_NAME, CounterConfiguration, CounterOptions, ReferenceKey
from docseq.core.modules.counter.store import CounterStore
from docseq.core.modules.schema.models import FieldType, PersistenceEvent, Record, Schema, SchemaField
from docseq.errors import ConfigurationError, SchemaError

logger = structlog.get_logger(__name__)


def _validate_field_name(name: str, option: str) -> None:
    if not name:
        raise ConfigurationError(f"{option} must not contain empty field names")
    if "." in name or name.startswith("$"):
        raise ConfigurationError(f"Invalid field name in {option}: '{name}'")


def configure(
    options: CounterOptions | Mapping[str, Any] | None = None, default_collection: str = DEFAULT_COLLECTION_NAME
) -> CounterConfiguration:
    """Validate counter options into an immutable configuration.

    Never touches storage, so a bad configuration fails before any database access.
    An unset collection_name resolves to default_collection.

    Raises:
        ConfigurationError: If inc_field is empty, or reference fields are given
            without an explicit counter id, or a field name is invalid.
    """
    if options is None:
        opts = CounterOptions()
    elif isinstance(options, CounterOptions):
        opts = options
    else:
        try:
            opts = CounterOptions.model_validate(options)
        except pydantic.ValidationError as e:
            raise ConfigurationError(f"Invalid counter options: {e}") from e

    if not opts.inc_field:
        raise ConfigurationError("inc_field option is mandatory")
    if opts.collection_name == "":
        raise ConfigurationError("collection_name option must not be empty")

    reference_fields: tuple[str, ...] | None = None
    if opts.reference_fields is not None:
        fields = [opts.reference_fields] if isinstance(opts.reference_fields, str) else list(opts.reference_fields)
        if not fields:
            raise ConfigurationError("reference_fields must name at least one field")
        for name in fields:
            _validate_field_name(name, "reference_fields")
        if len(set(fields)) != len(fields):
            raise ConfigurationError(f"reference_fields contains duplicates: {fields}")
        if not opts.id:
            raise ConfigurationError("Cannot use reference fields without specifying a counter id")
        reference_fields = tuple(fields)

    return CounterConfiguration(
        scope_id=opts.id or opts.inc_field,
        inc_field=opts.inc_field,
        reference_fields=reference_fields,
        collection_name=opts.collection_name or default_collection,
    )


def ensure_field(schema: Schema, inc_field: str) -> None:
    """Declare inc_field as an integer field, or check the existing declaration is numeric."""
    field = schema.get_field(inc_field)
    if field is None:
        schema.add_field(SchemaField(id=inc_field, type=FieldType.INT))
        return
    if not field.is_numeric:
        raise SchemaError(f"Auto increment field '{inc_field}' already present and not of a numeric type ({field.type})")


class CounterBinding:
    """Assigns counter values to records of one schema as they are created."""

    def __init__(self, store: CounterStore, schema: Schema, config: CounterConfiguration) -> None:
        self.store = store
        self.schema = schema
        self.config = config

    @property
    def scope_id(self) -> str:
        return self.config.scope_id

    def initialize(self) -> None:
        """Prepare the schema: declare the counter field, register the save hook."""
        if self.scope_id in self.schema.counters:
            raise ConfigurationError(f"Counter '{self.scope_id}' already bound to schema '{self.schema.name}'")
        ensure_field(self.schema, self.config.inc_field)
        self.schema.add_hook(self.before_save)
        self.schema.counters[self.scope_id] = self

    def derive_reference_key(self, record: Mapping[str, Any]) -> ReferenceKey | None:
        """Build the reference key from the record's in-memory values, None for global counters.

        Fields missing from the record contribute None.
        """
        if self.config.reference_fields is None:
            return None
        return {field: record.get(field) for field in self.config.reference_fields}

    async def before_save(self, record: Record, event: PersistenceEvent) -> Record:
        """Allocate the next value into inc_field when the record is being created.

        Updates pass through untouched, even if they change inc_field.
        Storage errors propagate so the pending insert is aborted.
        """
        if event != PersistenceEvent.CREATE:
            return record

        reference = self.derive_reference_key(record)
        value = await self.store.allocate_next(self.scope_id, reference)
        record[self.config.inc_field] = value
        logger.debug("counter_assigned", schema=self.schema.name, field=self.config.inc_field, value=value)
        return record

    async def reset(self, scope_id: str | None = None, reference: ReferenceKey | None = None) -> int:
        """Reset counters of a scope (this binding's by default) to 0, return how many matched."""
        return await self.store.reset_all(scope_id or self.scope_id, reference)

    async def current(self, reference: ReferenceKey | None = None) -> int:
        """Get the last value allocated for a reference of this binding's scope."""
        return await self.store.get_current(self.scope_id, reference)
