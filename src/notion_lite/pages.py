"""Page, data source and search operations."""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from .errors import CliError, ErrorCode
from .properties import UnknownPropertyError, build_properties_payload
from .schema import SchemaCache, hydrate_data_source_schema
from .transport import MAX_PAGE_SIZE, NotionTransport
from .versioning import as_page, with_page_mutation_retry
from .views import (
    render_page,
    to_compact_data_source,
    to_full_data_source,
    to_search_result,
)

logger = logging.getLogger("notion-lite")


@dataclass
class PageContext:
    """What page mutations need: the transport and the schema cache."""
    transport: NotionTransport
    schema_cache: SchemaCache


def _pagination(response: dict, returned: int) -> dict:
    return {
        "has_more": bool(response.get("has_more")),
        "next_cursor": response.get("next_cursor"),
        "returned": returned,
    }


def _clamp_page_size(limit: int) -> int:
    return min(max(1, limit), MAX_PAGE_SIZE)


def as_data_source(value: dict) -> dict:
    if not isinstance(value, dict) or value.get("object") != "data_source":
        raise CliError(ErrorCode.INVALID_INPUT, "Expected a data source object.")
    return value


def extract_parent_data_source_id(page: dict) -> Optional[str]:
    parent = page.get("parent")
    if not isinstance(parent, dict):
        return None
    if parent.get("type") == "data_source_id" and isinstance(parent.get("data_source_id"), str):
        return parent["data_source_id"]
    if parent.get("type") == "database_id" and isinstance(parent.get("database_id"), str):
        return parent["database_id"]
    return None


async def build_properties_for_data_source(
    ctx: PageContext,
    data_source_id: str,
    patch: dict[str, Any],
) -> dict:
    """Build a property patch, forcing one schema refresh on an unknown property."""
    schema = await hydrate_data_source_schema(ctx.transport, ctx.schema_cache, data_source_id)
    try:
        return build_properties_payload(patch, schema)
    except UnknownPropertyError as e:
        logger.info(f"Unknown property {e.property_name!r}, refreshing schema {data_source_id}")
        schema = await hydrate_data_source_schema(
            ctx.transport, ctx.schema_cache, data_source_id, force_refresh=True
        )
        return build_properties_payload(patch, schema)


# =============================================================================
# Search / data sources
# =============================================================================

def _matches_search_filters(
    item: dict,
    scope: Optional[str],
    created_by: Optional[str],
    created_after: Optional[str],
    created_before: Optional[str],
) -> bool:
    if scope:
        parent = item.get("parent") or {}
        parent_type = parent.get("type")
        if not parent_type or parent.get(parent_type) != scope:
            return False
    if created_by and (item.get("created_by") or {}).get("id") != created_by:
        return False
    # ISO 8601 timestamps from Notion compare correctly as strings
    created_time = item.get("created_time") or ""
    if created_after and created_time <= created_after:
        return False
    if created_before and created_time >= created_before:
        return False
    return True


async def search_workspace(
    transport: NotionTransport,
    query: str,
    limit: int,
    cursor: Optional[str] = None,
    scope: Optional[str] = None,
    created_by: Optional[str] = None,
    created_after: Optional[str] = None,
    created_before: Optional[str] = None,
    scan_limit: int = 500,
) -> dict:
    """Search the workspace, applying scope/creator/date filters client-side.

    Each upstream page requests at most as many hits as are still wanted, so
    every scanned hit is processed and the returned cursor never skips any.
    """
    if not query or not query.strip():
        raise CliError(ErrorCode.INVALID_INPUT, "search requires a non-empty --query value.")

    results: list[dict] = []
    scanned = 0
    has_more = True
    next_cursor = cursor

    while len(results) < limit and scanned < scan_limit and has_more:
        body: dict = {
            "query": query,
            "page_size": min(MAX_PAGE_SIZE, scan_limit - scanned, limit - len(results)),
        }
        if next_cursor:
            body["start_cursor"] = next_cursor

        response = await transport.search(body)
        for item in response.get("results") or []:
            scanned += 1
            if isinstance(item, dict) and _matches_search_filters(
                item, scope, created_by, created_after, created_before
            ):
                results.append(to_search_result(item))

        has_more = bool(response.get("has_more"))
        next_cursor = response.get("next_cursor") if has_more else None

    return {
        "results": results,
        "scan_count": scanned,
        "pagination": {
            "has_more": has_more,
            "next_cursor": next_cursor,
            "returned": len(results),
        },
    }


async def list_data_sources(
    transport: NotionTransport,
    limit: int,
    query: Optional[str] = None,
    cursor: Optional[str] = None,
) -> dict:
    body: dict = {
        "page_size": _clamp_page_size(limit),
        "filter": {"property": "object", "value": "data_source"},
    }
    if query and query.strip():
        body["query"] = query
    if cursor:
        body["start_cursor"] = cursor

    response = await transport.search(body)
    data_sources = [
        to_compact_data_source(as_data_source(item)) for item in response.get("results") or []
    ]
    return {"data_sources": data_sources, "pagination": _pagination(response, len(data_sources))}


async def get_data_source(transport: NotionTransport, data_source_id: str, view: str) -> dict:
    data_source = as_data_source(await transport.retrieve_data_source(data_source_id))
    if view == "full":
        return to_full_data_source(data_source)
    return to_compact_data_source(data_source)


async def query_data_source_pages(
    transport: NotionTransport,
    data_source_id: str,
    limit: int,
    view: str,
    cursor: Optional[str] = None,
    filter_obj: Optional[dict] = None,
    sorts: Optional[list] = None,
    fields: Optional[list[str]] = None,
) -> dict:
    body: dict = {"page_size": _clamp_page_size(limit)}
    if cursor:
        body["start_cursor"] = cursor
    if filter_obj:
        body["filter"] = filter_obj
    if sorts:
        body["sorts"] = sorts

    response = await transport.query_data_source(data_source_id, body)
    records = [
        render_page(as_page(item), view, fields) for item in response.get("results") or []
    ]
    return {"records": records, "pagination": _pagination(response, len(records))}


# =============================================================================
# Pages
# =============================================================================

async def get_page(
    transport: NotionTransport,
    page_id: str,
    view: str,
    fields: Optional[list[str]] = None,
) -> dict:
    page = as_page(await transport.retrieve_page(page_id))
    return render_page(page, view, fields)


async def create_page(
    ctx: PageContext,
    parent_data_source_id: str,
    properties_patch: dict[str, Any],
    view: str = "compact",
    fields: Optional[list[str]] = None,
) -> dict:
    properties = await build_properties_for_data_source(
        ctx, parent_data_source_id, properties_patch
    )
    page = as_page(await ctx.transport.create_page({
        "parent": {"data_source_id": parent_data_source_id},
        "properties": properties,
    }))
    return render_page(page, view, fields)


async def update_page(
    ctx: PageContext,
    page_id: str,
    patch: dict[str, Any],
    view: str = "compact",
    fields: Optional[list[str]] = None,
) -> dict:
    async def apply(current_page: dict) -> dict:
        data_source_id = extract_parent_data_source_id(current_page)
        if not data_source_id:
            raise CliError(
                ErrorCode.INVALID_INPUT,
                "Page is not part of a data source. This command supports data-source pages.",
            )
        properties = await build_properties_for_data_source(ctx, data_source_id, patch)
        return as_page(await ctx.transport.update_page(page_id, {"properties": properties}))

    updated = await with_page_mutation_retry(ctx.transport, page_id, apply)
    return render_page(updated, view, fields)


async def _set_archived(
    ctx: PageContext,
    page_id: str,
    archived: bool,
    view: str,
    fields: Optional[list[str]],
) -> dict:
    async def apply(current_page: dict) -> dict:
        return as_page(await ctx.transport.update_page(page_id, {"archived": archived}))

    updated = await with_page_mutation_retry(ctx.transport, page_id, apply)
    return render_page(updated, view, fields)


async def archive_page(
    ctx: PageContext,
    page_id: str,
    view: str = "compact",
    fields: Optional[list[str]] = None,
) -> dict:
    return await _set_archived(ctx, page_id, True, view, fields)


async def unarchive_page(
    ctx: PageContext,
    page_id: str,
    view: str = "compact",
    fields: Optional[list[str]] = None,
) -> dict:
    return await _set_archived(ctx, page_id, False, view, fields)


def read_relation_ids(page: dict, property_name: str) -> list[str]:
    properties = page.get("properties")
    if not isinstance(properties, dict):
        raise CliError(ErrorCode.INVALID_INPUT, f"Page does not include property {property_name}.")
    prop = properties.get(property_name)
    if not isinstance(prop, dict):
        raise CliError(
            ErrorCode.INVALID_INPUT, f"Property {property_name} was not found on the page."
        )
    if prop.get("type") != "relation":
        raise CliError(
            ErrorCode.INVALID_INPUT, f"Property {property_name} is not a relation property."
        )
    return [r["id"] for r in prop.get("relation") or [] if isinstance(r, dict) and r.get("id")]


async def set_relation(
    ctx: PageContext,
    from_id: str,
    to_id: str,
    property_name: str,
    mode: str = "add",
    view: str = "compact",
) -> dict:
    """Add or remove to_id in from_id's relation property."""
    if mode not in ("add", "remove"):
        raise CliError(ErrorCode.INVALID_INPUT, "Relation mode must be add or remove.")

    async def apply(current_page: dict) -> dict:
        ids = read_relation_ids(current_page, property_name)
        if mode == "add" and to_id not in ids:
            ids.append(to_id)
        elif mode == "remove":
            ids = [i for i in ids if i != to_id]
        return as_page(await ctx.transport.update_page(from_id, {
            "properties": {property_name: {"relation": [{"id": i} for i in ids]}},
        }))

    updated = await with_page_mutation_retry(ctx.transport, from_id, apply)
    return render_page(updated, view)

