from typing import Any
from uuid import uuid4

import pydantic
import structlog
from pymongo import ReturnDocument
from pymongo.asynchronous.collection import AsyncCollection
from pymongo.errors import DuplicateKeyError, PyMongoError

from docseq.core.modules.counter.models import CounterRecord, ReferenceKey
from docseq.errors import StorageError

logger = structlog.get_logger(__name__)

DEFAULT_MAX_RETRIES = 5


def normalize_reference(reference: ReferenceKey | None) -> ReferenceKey | None:
    """Order reference fields by name; MongoDB compares subdocuments field by field in order."""
    if not reference:
        return None
    return dict(sorted(reference.items()))


class CounterStore:
    """Counter records of one collection, mutated only through atomic updates.

    A counter is identified by (scope_id, reference). Global counters have a
    null reference. Counters are created lazily by the first allocation and are
    never deleted here.
    """

    def __init__(self, collection: AsyncCollection[dict[str, Any]], max_retries: int = DEFAULT_MAX_RETRIES) -> None:
        self._collection = collection
        self._max_retries = max(1, max_retries)

    @property
    def collection_name(self) -> str:
        return self._collection.name

    async def ensure_indexes(self) -> None:
        """Create the unique (scope_id, reference) index backing concurrent upserts."""
        try:
            await self._collection.create_index([("scope_id", 1), ("reference", 1)], unique=True)
        except PyMongoError as e:
            raise StorageError(f"Cannot create counter index on '{self.collection_name}': {e}") from e

    async def allocate_next(self, scope_id: str, reference: ReferenceKey | None = None) -> int:
        """Atomically increment and return the next value for a scope and reference.

        The first allocation for an unseen key creates the counter and returns 1.
        Two upserts racing to create the same counter make one of them fail on
        the unique index; that attempt is retried and then increments the
        counter the winner created.

        Raises:
            StorageError: If the database call fails or conflicts persist past max_retries.
        """
        query = {"scope_id": scope_id, "reference": normalize_reference(reference)}
        for attempt in range(1, self._max_retries + 1):
            try:
                result = await self._collection.find_one_and_update(
                    query,
                    {"$inc": {"value": 1}, "$setOnInsert": {"_id": uuid4()}},
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                )
            except DuplicateKeyError:
                logger.warning("counter_upsert_conflict", collection=self.collection_name, attempt=attempt, **query)
                continue
            except PyMongoError as e:
                logger.error("counter_allocate_failed", collection=self.collection_name, error=str(e), **query)
                raise StorageError(f"Counter allocation failed for scope '{scope_id}': {e}") from e

            value = int(result["value"])
            logger.debug("counter_allocated", collection=self.collection_name, value=value, **query)
            return value

        raise StorageError(f"Counter allocation for scope '{scope_id}' still conflicting after {self._max_retries} attempts")

    async def reset_all(self, scope_id: str, reference: ReferenceKey | None = None) -> int:
        """Set every matching counter back to 0 and return how many matched.

        Matching is partial: each given reference field must equal the stored
        one, fields not given are ignored. No reference (or an empty one)
        resets the whole scope. Matching nothing is not an error.
        """
        query: dict[str, Any] = {"scope_id": scope_id}
        for field, value in (reference or {}).items():
            query[f"reference.{field}"] = value

        try:
            result = await self._collection.update_many(query, {"$set": {"value": 0}})
        except PyMongoError as e:
            logger.error("counter_reset_failed", collection=self.collection_name, query=query, error=str(e))
            raise StorageError(f"Counter reset failed for scope '{scope_id}': {e}") from e

        logger.debug("counter_reset", collection=self.collection_name, query=query, matched=result.matched_count)
        return result.matched_count

    async def get_current(self, scope_id: str, reference: ReferenceKey | None = None) -> int:
        """Get the current value without incrementing, 0 if the counter does not exist."""
        try:
            doc = await self._collection.find_one({"scope_id": scope_id, "reference": normalize_reference(reference)})
        except PyMongoError as e:
            raise StorageError(f"Counter lookup failed for scope '{scope_id}': {e}") from e
        if doc:
            return int(doc["value"])
        return 0

    async def list_counters(self, scope_id: str) -> list[CounterRecord]:
        """Get all counters of a scope."""
        try:
            return await CounterRecord.list_cursor(self._collection.find({"scope_id": scope_id}))
        except PyMongoError as e:
            raise StorageError(f"Counter listing failed for scope '{scope_id}': {e}") from e
        except pydantic.ValidationError as e:
            raise StorageError(f"Malformed counter record in scope '{scope_id}': {e}") from e
