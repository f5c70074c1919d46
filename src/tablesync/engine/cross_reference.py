"""
Cross-reference resolution between linked-record ids and display labels.

The left endpoint stores links as record ids; the spreadsheet shows labels.
CrossReferenceResolver translates both ways against the linked table's label
field and keeps a per-table cache so repeated runs don't re-read the same
foreign table on every row.

Cache rules:
  - one entry per foreign table: id -> label, normalised label -> id, filled_at
  - an entry older than ttl_seconds is dropped as a whole and refetched
  - lookups fetch only what the cache cannot answer and merge the result in
  - concurrent lookups against one table share a lock, so a cold cache is
    filled once rather than once per caller

Fetch and create failures never raise: the affected keys come back as
missing, with a warning the orchestrator copies into the run report.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from tablesync.engine.contracts import EndpointClient, RowSelector
from tablesync.engine.rate_limiter import RateLimiter
from tablesync.engine.retry import RetryExecutor
from tablesync.engine.values import FieldValue, Row, TextValue
from tablesync.errors import ErrorKind, root_message

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0


def normalize_label(label: str) -> str:
    return " ".join(label.split()).casefold()


@dataclass
class LabelLookup:
    resolved: Dict[str, str] = field(default_factory=dict)
    missing: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class IdLookup:
    resolved: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    missing: List[str] = field(default_factory=list)
    created: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


@dataclass
class _TableCache:
    filled_at: float
    labels_by_id: Dict[str, str] = field(default_factory=dict)
    ids_by_label: Dict[str, str] = field(default_factory=dict)
    complete: bool = False

    def merge(self, row_id: str, label: str) -> None:
        self.labels_by_id[row_id] = label
        if label:
            self.ids_by_label.setdefault(normalize_label(label), row_id)


class CrossReferenceResolver:
    """Id/label translation for linked tables on one endpoint."""

    def __init__(
        self,
        client: EndpointClient,
        limiter: RateLimiter,
        retry: RetryExecutor,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        label_fields: Optional[Mapping[str, str]] = None,
    ):
        """
        Args:
            client: endpoint that owns the linked tables.
            limiter: the endpoint's shared rate limiter.
            retry: retry executor for every fetch/create.
            ttl_seconds: cache lifetime per table.
            clock: monotonic clock in seconds (injectable for tests).
            label_fields: table -> field id holding the label. Tables not
                listed use their schema's primary field.
        """
        self.client = client
        self.limiter = limiter
        self.retry = retry
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._label_fields: Dict[str, str] = dict(label_fields or {})
        self._caches: Dict[str, _TableCache] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # ─── Public API ───────────────────────────────────────────────────────────

    def invalidate(self, table: str) -> None:
        self._caches.pop(table, None)

    def use_label_fields(self, label_fields: Mapping[str, str]) -> None:
        """Set the label field of some tables, dropping caches filled from a different field."""
        for table, field_id in label_fields.items():
            if self._label_fields.get(table) != field_id:
                self._label_fields[table] = field_id
                self.invalidate(table)

    def cached_tables(self) -> List[str]:
        return [t for t in self._caches if self._fresh(t) is not None]

    async def resolve_ids_to_labels(self, table: str, ids: Iterable[str]) -> LabelLookup:
        """
        Map record ids in `table` to their labels.

        Returns:
            LabelLookup; ids that could not be found are listed in `missing`.
        """
        wanted = _unique(ids)
        result = LabelLookup()
        if not wanted:
            return result

        async with self._lock_for(table):
            cache = self._cache_for(table)
            uncached = [i for i in wanted if i not in cache.labels_by_id]
            if uncached and not cache.complete:
                try:
                    label_field = await self._label_field(table)
                    rows = await self._call(
                        lambda: self.client.list_rows(RowSelector(table=table, ids=tuple(uncached))),
                        f"fetch {len(uncached)} linked record(s) from {table}",
                    )
                    for row in rows:
                        if row.id is not None:
                            cache.merge(row.id, label_of(row.get(label_field)))
                except Exception as exc:
                    self._warn(result.warnings, f"Could not fetch linked records from {table}: {root_message(exc)}")

            for row_id in wanted:
                label = cache.labels_by_id.get(row_id)
                if label is None:
                    result.missing.append(row_id)
                else:
                    result.resolved[row_id] = label
        return result

    async def resolve_labels_to_ids(
        self,
        table: str,
        labels: Iterable[str],
        create_missing: bool = False,
    ) -> IdLookup:
        """
        Map labels to record ids in `table`, matching case-insensitively.

        Args:
            table: the linked table.
            labels: labels as they appear on the spreadsheet.
            create_missing: create records for labels that don't exist yet.

        Returns:
            IdLookup keyed by the labels exactly as given; `labels` maps each
            resolved label to the spelling stored in the linked table.
        """
        wanted = [label for label in _unique(labels) if label.strip()]
        result = IdLookup()
        if not wanted:
            return result

        async with self._lock_for(table):
            cache = self._cache_for(table)
            unknown = [label for label in wanted if normalize_label(label) not in cache.ids_by_label]
            if unknown and not cache.complete:
                try:
                    await self._fill_table(table, cache)
                except Exception as exc:
                    self._warn(result.warnings, f"Could not read linked table {table}: {root_message(exc)}")

            still_missing = []
            for label in wanted:
                row_id = cache.ids_by_label.get(normalize_label(label))
                if row_id is None:
                    still_missing.append(label)
                else:
                    result.resolved[label] = row_id
                    result.labels[label] = cache.labels_by_id.get(row_id) or label

            if still_missing and create_missing:
                await self._create(table, cache, still_missing, result)
                still_missing = [label for label in still_missing if label not in result.created]
            result.missing.extend(still_missing)
        return result

    # ─── Internals ────────────────────────────────────────────────────────────

    def _lock_for(self, table: str) -> asyncio.Lock:
        lock = self._locks.get(table)
        if lock is None:
            lock = self._locks[table] = asyncio.Lock()
        return lock

    def _fresh(self, table: str) -> Optional[_TableCache]:
        cache = self._caches.get(table)
        if cache is None:
            return None
        if self._clock() - cache.filled_at >= self.ttl_seconds:
            logger.debug("Cross-reference cache for %s expired", table)
            del self._caches[table]
            return None
        return cache

    def _cache_for(self, table: str) -> _TableCache:
        cache = self._fresh(table)
        if cache is None:
            cache = self._caches[table] = _TableCache(filled_at=self._clock())
        return cache

    async def _label_field(self, table: str) -> str:
        label_field = self._label_fields.get(table)
        if label_field:
            return label_field
        schema = await self._call(lambda: self.client.get_schema(table), f"read schema of {table}")
        if not schema.primary_field_id:
            raise LookupError(f"table {table} has no primary field")
        self._label_fields[table] = schema.primary_field_id
        return schema.primary_field_id

    async def _fill_table(self, table: str, cache: _TableCache) -> None:
        label_field = await self._label_field(table)
        rows = await self._call(
            lambda: self.client.list_rows(RowSelector(table=table)),
            f"read linked table {table}",
        )
        for row in rows:
            if row.id is not None:
                cache.merge(row.id, label_of(row.get(label_field)))
        cache.complete = True
        logger.info("Cached %d label(s) for linked table %s", len(rows), table)

    async def _create(self, table: str, cache: _TableCache, labels: List[str], result: IdLookup) -> None:
        try:
            label_field = await self._label_field(table)
        except Exception as exc:
            self._warn(result.warnings, f"Could not create records in {table}: {root_message(exc)}")
            return

        size = max(1, self.client.max_batch_size)
        for start in range(0, len(labels), size):
            batch = labels[start:start + size]
            new_rows = [Row(id=None, fields={label_field: TextValue(label)}) for label in batch]
            try:
                created = await self._call(
                    lambda rows=new_rows: self.client.create_rows(rows, table=table),
                    f"create {len(batch)} linked record(s) in {table}",
                )
            except Exception as exc:
                self._warn(result.warnings, f"Could not create {len(batch)} record(s) in {table}: {root_message(exc)}")
                continue
            for label, row in zip(batch, created):
                if row.id is None:
                    continue
                cache.merge(row.id, label)
                result.created[label] = row.id
                result.resolved[label] = row.id
                result.labels[label] = label

    async def _call(self, operation, description: str):
        return await self.retry.retry(
            lambda: self.limiter.execute(operation),
            description=description,
            default_kind=ErrorKind.FETCH,
        )

    @staticmethod
    def _warn(warnings: List[str], message: str) -> None:
        logger.warning(message)
        warnings.append(message)


def label_of(value: Optional[FieldValue]) -> str:
    """Display text for a label field value."""
    if value is None:
        return ""
    if isinstance(value, TextValue):
        return value.value.strip()
    norm = value.normalized()
    if norm is None:
        return ""
    if isinstance(norm, list):
        return ", ".join(str(v) for v in norm)
    return str(norm)


def _unique(items: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for item in items:
        if item is None or item in seen:
            continue
        seen.add(item)
        out.append(item)
    return out
