from typing import Any
from uuid import UUID, uuid4

import structlog
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from docseq.core.core import Service
from docseq.core.modules.schema.models import PersistenceEvent, Record, Schema
from docseq.errors import NotFoundError, StorageError, ValidationError

logger = structlog.get_logger(__name__)


class RecordService(Service):
    """Persists schema records, running the schema's save hooks before each write."""

    async def _run_hooks(self, schema: Schema, record: Record, event: PersistenceEvent) -> Record:
        for hook in schema.hooks:
            record = await hook(record, event)
        return record

    async def insert(self, schema: Schema, record: Record) -> Record:
        """Create a record.

        Required fields are checked first, so an invalid record never consumes a
        counter value. Fields filled by bound counters are exempt. Hooks then run
        with PersistenceEvent.CREATE on a copy of the record. Any hook error
        aborts the insert, nothing is written.
        """
        generated = {binding.config.inc_field for binding in schema.counters.values()}
        missing = [
            field.id
            for field in schema.fields
            if field.required and field.id not in generated and record.get(field.id) is None
        ]
        if missing:
            raise ValidationError(f"Missing required fields for '{schema.name}': {', '.join(missing)}")

        pending = await self._run_hooks(schema, dict(record), PersistenceEvent.CREATE)
        pending.setdefault(schema.primary_field, uuid4())

        try:
            await self.database.get_collection(schema.name).insert_one(pending)
        except PyMongoError as e:
            raise StorageError(f"Insert into '{schema.name}' failed: {e}") from e

        logger.debug("record_inserted", schema=schema.name, record_id=pending[schema.primary_field])
        return pending

    async def update(self, schema: Schema, record_id: UUID | int | str, changes: Record) -> Record:
        """Apply a partial update. Hooks run with PersistenceEvent.UPDATE on the changes."""
        changes = await self._run_hooks(schema, dict(changes), PersistenceEvent.UPDATE)
        changes.pop(schema.primary_field, None)
        if not changes:
            return await self.get(schema, record_id)

        try:
            doc = await self.database.get_collection(schema.name).find_one_and_update(
                {schema.primary_field: record_id},
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            raise StorageError(f"Update of '{schema.name}' failed: {e}") from e

        if doc is None:
            raise NotFoundError(f"Record not found in '{schema.name}': {record_id}")
        return doc

    async def get(self, schema: Schema, record_id: UUID | int | str) -> Record:
        """Get record by primary key."""
        try:
            doc = await self.database.get_collection(schema.name).find_one({schema.primary_field: record_id})
        except PyMongoError as e:
            raise StorageError(f"Lookup in '{schema.name}' failed: {e}") from e
        if not doc:
            raise NotFoundError(f"Record not found in '{schema.name}': {record_id}")
        return doc
