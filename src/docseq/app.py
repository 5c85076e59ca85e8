from collections.abc import AsyncGenerator, Mapping
from contextlib import asynccontextmanager
from typing import Any
from uuid import UUID

from docseq.config import Config
from docseq.core.core import Core
from docseq.core.modules.counter.binding import CounterBinding
from docseq.core.modules.counter.models import CounterOptions, ReferenceKey
from docseq.core.modules.schema.models import Record, Schema
from docseq.errors import NotFoundError
from docseq.logging import setup_logging


class App:
    """Facade for record and counter operations, delegates to Core services."""

    def __init__(self, config: Config) -> None:
        setup_logging(config.debug)
        self._core = Core(config)

    @asynccontextmanager
    async def lifespan(self) -> AsyncGenerator[None]:
        """Application lifespan management - delegates to Core."""
        async with self._core.lifespan():
            yield

    async def bind_counter(self, schema: Schema, options: CounterOptions | Mapping[str, Any] | None = None) -> CounterBinding:
        """Attach an auto-increment counter to a schema."""
        return await self._core.services.counter.bind(schema, options)

    async def insert(self, schema: Schema, record: Record) -> Record:
        """Create a record; bound counters fill their fields first."""
        return await self._core.services.record.insert(schema, record)

    async def update(self, schema: Schema, record_id: UUID | int | str, changes: Record) -> Record:
        """Partially update a record. Counters are never reallocated."""
        return await self._core.services.record.update(schema, record_id, changes)

    async def get(self, schema: Schema, record_id: UUID | int | str) -> Record:
        return await self._core.services.record.get(schema, record_id)

    async def reset_counter(self, schema: Schema, scope_id: str, reference: ReferenceKey | None = None) -> int:
        """Reset a counter bound to the schema, return how many counter records matched."""
        return await self._resolve_binding(schema, scope_id).reset(scope_id, reference)

    def _resolve_binding(self, schema: Schema, scope_id: str) -> CounterBinding:
        """Resolve scope id to the schema's binding. Raises NotFoundError if not bound."""
        binding = schema.counters.get(scope_id)
        if binding is None:
            raise NotFoundError(f"No counter '{scope_id}' bound to schema '{schema.name}'")
        return binding
