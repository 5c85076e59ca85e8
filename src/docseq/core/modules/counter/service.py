from collections.abc import Mapping
from typing import Any

import structlog
from pymongo.asynchronous.database import AsyncDatabase

from docseq.core.core import Service
from docseq.core.modules.counter.binding import CounterBinding, configure
from docseq.core.modules.counter.models import DEFAULT_COLLECTION_NAME, CounterOptions, ReferenceKey
from docseq.core.modules.counter.store import DEFAULT_MAX_RETRIES, CounterStore
from docseq.core.modules.schema.models import Schema

logger = structlog.get_logger(__name__)


class CounterService(Service):
    """Owns one CounterStore per counters collection and binds counters to schemas."""

    def __init__(self, database: AsyncDatabase[dict[str, Any]]) -> None:
        super().__init__(database)
        self._stores: dict[str, CounterStore] = {}
        self._indexed: set[str] = set()
        self._started = False

    @property
    def default_collection(self) -> str:
        if self._core is None:
            return DEFAULT_COLLECTION_NAME
        return self.core.config.counters_collection

    @property
    def _max_retries(self) -> int:
        if self._core is None:
            return DEFAULT_MAX_RETRIES
        return self.core.config.allocate_max_retries

    async def on_start(self) -> None:
        """Create indexes for every store known so far."""
        self.get_store()
        for store in list(self._stores.values()):
            await self._ensure_indexes(store)
        self._started = True

    def get_store(self, collection_name: str | None = None) -> CounterStore:
        """Get (or create) the store for a counters collection."""
        name = collection_name or self.default_collection
        if name not in self._stores:
            self._stores[name] = CounterStore(self.database.get_collection(name), max_retries=self._max_retries)
        return self._stores[name]

    async def bind(self, schema: Schema, options: CounterOptions | Mapping[str, Any] | None = None) -> CounterBinding:
        """Configure a counter on a schema and wire it into the schema's save hooks.

        Options are validated before any database access. An unset collection
        name resolves to the configured counters collection.
        """
        config = configure(options, default_collection=self.default_collection)

        store = self.get_store(config.collection_name)
        binding = CounterBinding(store, schema, config)
        binding.initialize()
        if self._started:
            await self._ensure_indexes(store)

        logger.info(
            "counter_bound",
            schema=schema.name,
            scope_id=config.scope_id,
            inc_field=config.inc_field,
            reference_fields=config.reference_fields,
            collection=config.collection_name,
        )
        return binding

    async def reset_counter(
        self, scope_id: str, reference: ReferenceKey | None = None, collection_name: str | None = None
    ) -> int:
        """Reset counters of a scope to 0, return how many matched."""
        return await self.get_store(collection_name).reset_all(scope_id, reference)

    async def _ensure_indexes(self, store: CounterStore) -> None:
        if store.collection_name in self._indexed:
            return
        await store.ensure_indexes()
        self._indexed.add(store.collection_name)
