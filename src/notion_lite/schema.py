"""Data source schema cache.

Schemas (property name -> {id, type}) are the only upstream state kept
between invocations. The cache is an explicit object handed to operations
that build property patches; it persists through a save-back callback so
tests can run with a purely in-memory cache.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .config import SchemaCacheEntry, SchemaProperty
from .errors import CliError, ErrorCode
from .transport import NotionTransport

logger = logging.getLogger("notion-lite")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SchemaCache:
    """TTL cache of data source schemas."""

    def __init__(
        self,
        entries: Optional[dict[str, SchemaCacheEntry]] = None,
        ttl: timedelta = timedelta(hours=24),
        save: Optional[Callable[[], None]] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.entries = entries if entries is not None else {}
        self.ttl = ttl
        self._save = save
        self._clock = clock

    def is_stale(self, entry: SchemaCacheEntry) -> bool:
        refreshed_at = _parse_timestamp(entry.last_refreshed)
        if refreshed_at is None:
            return True
        return self._clock() - refreshed_at > self.ttl

    def get_fresh(self, data_source_id: str) -> Optional[dict[str, SchemaProperty]]:
        """Cached properties if present and younger than the TTL."""
        entry = self.entries.get(data_source_id)
        if entry is None or self.is_stale(entry):
            return None
        return entry.properties

    def put(self, data_source_id: str, properties: dict[str, SchemaProperty]) -> None:
        self.entries[data_source_id] = SchemaCacheEntry(
            data_source_id=data_source_id,
            last_refreshed=self._clock().isoformat(),
            properties=properties,
        )
        if self._save is not None:
            self._save()


async def hydrate_data_source_schema(
    transport: NotionTransport,
    cache: SchemaCache,
    data_source_id: str,
    force_refresh: bool = False,
) -> dict[str, SchemaProperty]:
    """Return the data source's property schema, refreshing when stale.

    In Notion API 2025-09-03 the schema lives on the data source, not on the
    database container.
    """
    if not force_refresh:
        cached = cache.get_fresh(data_source_id)
        if cached is not None:
            return cached

    data_source = await transport.retrieve_data_source(data_source_id)
    if data_source.get("object") != "data_source":
        raise CliError(ErrorCode.INVALID_INPUT, "Expected a data source object.")

    properties = {
        name: SchemaProperty(id=prop.get("id") or "", type=prop.get("type") or "unknown")
        for name, prop in (data_source.get("properties") or {}).items()
        if isinstance(prop, dict)
    }
    logger.info(
        f"Refreshed schema for data source {data_source_id} ({len(properties)} properties)"
    )
    cache.put(data_source_id, properties)
    return properties
