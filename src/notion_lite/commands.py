"""Command actions shared by the CLI and the MCP server.

Each action takes a Runtime and the invocation's request id and returns an
ActionResult. Mutating actions run through execute_mutation so a duplicate
invocation replays instead of applying twice.
"""

import json
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union

from .audit import append_audit_log
from .blocks import (
    InsertPosition,
    Selector,
    get_blocks,
    insert_blocks,
    list_sibling_blocks,
    replace_block_range,
    resolve_in_listing,
    select_blocks,
)
from .bulk import create_pages_bulk
from .config import (
    DEFAULT_TOKEN_ENV,
    AppConfig,
    build_initial_config,
    get_config_path,
    get_idempotency_db_path,
    load_config,
    load_config_or_none,
    resolve_token,
    save_config,
)
from .errors import CliError, ErrorCode
from .idempotency import IdempotencyStore
from .markdown import markdown_to_blocks
from .mutation import AuditSink, execute_mutation
from .output import ActionResult
from .pages import (
    PageContext,
    archive_page,
    create_page,
    get_data_source,
    get_page,
    list_data_sources,
    query_data_source_pages,
    search_workspace,
    set_relation,
    unarchive_page,
    update_page,
)
from .schema import SchemaCache
from .transport import NotionTransport, RateLimiter

logger = logging.getLogger("notion-lite")


# =============================================================================
# Runtime
# =============================================================================

@dataclass
class Runtime:
    """Everything one command invocation needs."""
    config: AppConfig
    transport: NotionTransport
    schema_cache: SchemaCache
    idempotency_db_path: Path
    config_path: Optional[Path] = None
    audit: AuditSink = append_audit_log

    @property
    def pages(self) -> PageContext:
        return PageContext(self.transport, self.schema_cache)

    async def mutate(
        self,
        request_id: str,
        command_name: str,
        request_shape: Any,
        run: Callable[[], Awaitable[Any]],
        target_ids: Optional[list[str]] = None,
        entity: Optional[str] = None,
    ) -> Any:
        with IdempotencyStore(self.idempotency_db_path) as store:
            return await execute_mutation(
                store=store,
                command_name=command_name,
                request_id=request_id,
                request_shape=request_shape,
                run=run,
                target_ids=target_ids,
                entity=entity,
                audit=self.audit,
            )


@asynccontextmanager
async def open_runtime(
    token_file: Optional[str] = None,
    timeout_ms: Optional[int] = None,
    config_path: Optional[Path] = None,
    limiter: Optional[RateLimiter] = None,
) -> AsyncIterator[Runtime]:
    """Load config and credentials, yield a Runtime, close the transport after.

    Pass limiter to share one request lane across several runtimes.
    """
    config = load_config(config_path)
    token = resolve_token(config, token_file)
    timeout_ms = parse_positive_int(timeout_ms, "timeout-ms", config.defaults.timeout_ms)

    def save() -> None:
        save_config(config, config_path)

    schema_cache = SchemaCache(
        config.schema_cache,
        ttl=timedelta(hours=config.defaults.schema_ttl_hours),
        save=save,
    )
    db_path = (
        config_path.parent / "idempotency.db" if config_path else get_idempotency_db_path()
    )

    async with NotionTransport(token, timeout=timeout_ms / 1000, limiter=limiter) as transport:
        yield Runtime(
            config=config,
            transport=transport,
            schema_cache=schema_cache,
            idempotency_db_path=db_path,
            config_path=config_path,
        )


# =============================================================================
# Option parsing
# =============================================================================

def resolve_view(value: Optional[str], fallback: str) -> str:
    view = value or fallback
    if view not in ("compact", "full"):
        raise CliError(ErrorCode.INVALID_INPUT, "--view must be either compact or full.")
    return view


def parse_positive_int(value: Union[int, str, None], label: str, fallback: int) -> int:
    if value is None:
        return fallback
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise CliError(ErrorCode.INVALID_INPUT, f"--{label} must be a positive integer.")
    if parsed < 1:
        raise CliError(ErrorCode.INVALID_INPUT, f"--{label} must be a positive integer.")
    return parsed


def parse_fields(value: Union[str, list[str], None]) -> Optional[list[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.split(",")
    fields = [f.strip() for f in value if f and f.strip()]
    return fields or None


def parse_json_option(label: str, raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError as e:
        raise CliError(ErrorCode.INVALID_INPUT, f"--{label} is not valid JSON: {e}")


def require_object_json(label: str, raw: Union[str, dict]) -> dict:
    parsed = parse_json_option(label, raw) if isinstance(raw, str) else raw
    if not isinstance(parsed, dict):
        raise CliError(ErrorCode.INVALID_INPUT, f"--{label} must be a JSON object.")
    return parsed


def require_array_json(label: str, raw: Union[str, list]) -> list:
    parsed = parse_json_option(label, raw) if isinstance(raw, str) else raw
    if not isinstance(parsed, list):
        raise CliError(ErrorCode.INVALID_INPUT, f"--{label} must be a JSON array.")
    return parsed


def parse_sort_json(raw: Optional[str]) -> Optional[list]:
    if not raw:
        return None
    parsed = parse_json_option("sort-json", raw)
    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        return [parsed]
    raise CliError(
        ErrorCode.INVALID_INPUT, "--sort-json must be a JSON object or array of objects."
    )


def load_block_content(
    blocks_json: Union[str, list, None] = None,
    markdown: Optional[str] = None,
    markdown_file: Optional[str] = None,
) -> list[dict]:
    """Blocks from exactly one of --blocks-json, --markdown or --markdown-file."""
    given = [v for v in (blocks_json, markdown, markdown_file) if v is not None]
    if len(given) != 1:
        raise CliError(
            ErrorCode.INVALID_INPUT,
            "Provide exactly one of --blocks-json, --markdown or --markdown-file.",
        )

    if blocks_json is not None:
        blocks = require_array_json("blocks-json", blocks_json)
        if not all(isinstance(b, dict) for b in blocks):
            raise CliError(ErrorCode.INVALID_INPUT, "--blocks-json must contain block objects.")
        return blocks

    if markdown_file is not None:
        try:
            markdown = Path(markdown_file).expanduser().read_text(encoding="utf-8")
        except OSError as e:
            raise CliError(
                ErrorCode.INVALID_INPUT, f"Could not read markdown file {markdown_file}: {e}"
            )
    return markdown_to_blocks(markdown or "")


def parse_selector(raw: Union[str, dict], label: str) -> Selector:
    value = parse_json_option(label, raw) if isinstance(raw, str) else raw
    return Selector.parse(value, label)


# =============================================================================
# Auth / doctor
# =============================================================================

async def auth_action(
    request_id: str,
    token_env: Optional[str] = None,
    token_file: Optional[str] = None,
    timeout_ms: Optional[int] = None,
    config_path: Optional[Path] = None,
) -> ActionResult:
    """Write the config (creating defaults) and verify the token if present."""
    existing = load_config_or_none(config_path)
    config = existing or build_initial_config()
    config.notion_api_key_env = token_env or config.notion_api_key_env or DEFAULT_TOKEN_ENV
    save_config(config, config_path)

    data = {
        "token_env": config.notion_api_key_env,
        "config_path": str(config_path or get_config_path()),
    }
    if not token_file and not os.environ.get(config.notion_api_key_env, "").strip():
        data.update({
            "token_present": False,
            "verified": False,
            "message": f"Set {config.notion_api_key_env} in your environment to enable API calls.",
        })
        return ActionResult(data)

    async with open_runtime(token_file, timeout_ms, config_path) as rt:
        await rt.transport.search({"page_size": 1})

    data.update({"token_present": True, "verified": True, "message": "Authentication verified."})
    return ActionResult(data)


async def doctor_action(rt: Runtime, request_id: str) -> ActionResult:
    await rt.transport.search({"page_size": 1})
    return ActionResult({
        "config_path": str(rt.config_path or get_config_path()),
        "notion_api_key_env": rt.config.notion_api_key_env,
        "status": "ok",
    })


# =============================================================================
# Reads
# =============================================================================

async def search_action(
    rt: Runtime,
    request_id: str,
    query: str,
    limit: Optional[int] = None,
    cursor: Optional[str] = None,
    scope: Optional[str] = None,
    created_by: Optional[str] = None,
    created_after: Optional[str] = None,
    created_before: Optional[str] = None,
) -> ActionResult:
    result = await search_workspace(
        rt.transport,
        query,
        limit=parse_positive_int(limit, "limit", rt.config.defaults.limit),
        cursor=cursor,
        scope=scope,
        created_by=created_by,
        created_after=created_after,
        created_before=created_before,
        scan_limit=rt.config.defaults.search_scan_limit,
    )
    return ActionResult(
        {"results": result["results"], "scan_count": result["scan_count"]},
        result["pagination"],
    )


async def list_data_sources_action(
    rt: Runtime,
    request_id: str,
    query: Optional[str] = None,
    limit: Optional[int] = None,
    cursor: Optional[str] = None,
) -> ActionResult:
    result = await list_data_sources(
        rt.transport,
        limit=parse_positive_int(limit, "limit", rt.config.defaults.limit),
        query=query,
        cursor=cursor,
    )
    return ActionResult({"data_sources": result["data_sources"]}, result["pagination"])


async def get_data_source_action(
    rt: Runtime,
    request_id: str,
    data_source_id: str,
    view: Optional[str] = None,
) -> ActionResult:
    view = resolve_view(view, rt.config.defaults.view)
    data_source = await get_data_source(rt.transport, data_source_id, view)
    return ActionResult({"data_source": data_source})


async def query_data_source_action(
    rt: Runtime,
    request_id: str,
    data_source_id: str,
    filter_json: Optional[str] = None,
    sort_json: Optional[str] = None,
    limit: Optional[int] = None,
    cursor: Optional[str] = None,
    view: Optional[str] = None,
    fields: Union[str, list[str], None] = None,
) -> ActionResult:
    result = await query_data_source_pages(
        rt.transport,
        data_source_id,
        limit=parse_positive_int(limit, "limit", rt.config.defaults.limit),
        view=resolve_view(view, rt.config.defaults.view),
        cursor=cursor,
        filter_obj=require_object_json("filter-json", filter_json) if filter_json else None,
        sorts=parse_sort_json(sort_json),
        fields=parse_fields(fields),
    )
    return ActionResult({"records": result["records"]}, result["pagination"])


async def get_page_action(
    rt: Runtime,
    request_id: str,
    page_id: str,
    view: Optional[str] = None,
    fields: Union[str, list[str], None] = None,
) -> ActionResult:
    page = await get_page(
        rt.transport, page_id, resolve_view(view, rt.config.defaults.view), parse_fields(fields)
    )
    return ActionResult({"page": page})


async def get_blocks_action(
    rt: Runtime,
    request_id: str,
    block_id: str,
    max_blocks: Optional[int] = None,
    depth: Optional[int] = None,
    view: Optional[str] = None,
) -> ActionResult:
    result = await get_blocks(
        rt.transport,
        block_id,
        max_blocks=parse_positive_int(max_blocks, "max-blocks", rt.config.defaults.max_blocks),
        depth=parse_positive_int(depth, "depth", 1),
        view=resolve_view(view, rt.config.defaults.view),
    )
    return ActionResult(result)


async def select_blocks_action(
    rt: Runtime,
    request_id: str,
    scope_id: str,
    selector: Union[str, dict],
    max_blocks: Optional[int] = None,
) -> ActionResult:
    result = await select_blocks(
        rt.transport,
        scope_id,
        parse_selector(selector, "selector-json"),
        max_blocks=parse_positive_int(max_blocks, "max-blocks", rt.config.defaults.max_blocks),
    )
    return ActionResult(result)


# =============================================================================
# Page mutations
# =============================================================================

async def create_page_action(
    rt: Runtime,
    request_id: str,
    parent_data_source_id: str,
    properties: Union[str, dict],
    view: Optional[str] = None,
    fields: Union[str, list[str], None] = None,
) -> ActionResult:
    patch = require_object_json("properties-json", properties)
    view = resolve_view(view, rt.config.defaults.view)
    fields = parse_fields(fields)

    page = await rt.mutate(
        request_id,
        "pages.create",
        {
            "parent_data_source_id": parent_data_source_id,
            "properties": patch,
            "view": view,
            "fields": fields,
        },
        lambda: create_page(rt.pages, parent_data_source_id, patch, view, fields),
        target_ids=[parent_data_source_id],
        entity="page",
    )
    return ActionResult({"page": page})


async def create_pages_bulk_action(
    rt: Runtime,
    request_id: str,
    parent_data_source_id: str,
    items: Union[str, list],
    concurrency: Optional[int] = None,
    view: Optional[str] = None,
    fields: Union[str, list[str], None] = None,
) -> ActionResult:
    items = require_array_json("items-json", items)
    concurrency = parse_positive_int(
        concurrency, "concurrency", rt.config.defaults.bulk_create_concurrency
    )
    view = resolve_view(view, rt.config.defaults.view)
    fields = parse_fields(fields)

    # One idempotency record per item: a retry replays created items and
    # re-runs failed ones.
    async def run_item(index: int, item: dict, create: Callable[[], Awaitable[dict]]) -> dict:
        return await rt.mutate(
            request_id,
            "pages.create",
            {
                "parent_data_source_id": parent_data_source_id,
                "properties": item["properties"],
                "index": index,
                "view": view,
                "fields": fields,
            },
            create,
            target_ids=[parent_data_source_id],
            entity="page",
        )

    result = await create_pages_bulk(
        rt.pages, parent_data_source_id, items, view, fields, concurrency, run_item=run_item
    )
    return ActionResult(result)


async def update_page_action(
    rt: Runtime,
    request_id: str,
    page_id: str,
    patch: Union[str, dict],
    view: Optional[str] = None,
    fields: Union[str, list[str], None] = None,
) -> ActionResult:
    patch = require_object_json("patch-json", patch)
    view = resolve_view(view, rt.config.defaults.view)
    fields = parse_fields(fields)

    page = await rt.mutate(
        request_id,
        "pages.update",
        {"id": page_id, "patch": patch, "view": view, "fields": fields},
        lambda: update_page(rt.pages, page_id, patch, view, fields),
        target_ids=[page_id],
        entity="page",
    )
    return ActionResult({"page": page})


async def archive_page_action(
    rt: Runtime,
    request_id: str,
    page_id: str,
    archived: bool = True,
    view: Optional[str] = None,
    fields: Union[str, list[str], None] = None,
) -> ActionResult:
    view = resolve_view(view, rt.config.defaults.view)
    fields = parse_fields(fields)
    operation = archive_page if archived else unarchive_page

    page = await rt.mutate(
        request_id,
        "pages.archive" if archived else "pages.unarchive",
        {"id": page_id, "view": view, "fields": fields},
        lambda: operation(rt.pages, page_id, view, fields),
        target_ids=[page_id],
        entity="page",
    )
    return ActionResult({"page": page})


async def relate_action(
    rt: Runtime,
    request_id: str,
    from_id: str,
    property_name: str,
    to_id: str,
    mode: str = "add",
) -> ActionResult:
    page = await rt.mutate(
        request_id,
        "pages.relate" if mode == "add" else "pages.unrelate",
        {"from_id": from_id, "property": property_name, "to_id": to_id},
        lambda: set_relation(rt.pages, from_id, to_id, property_name, mode),
        target_ids=[from_id, to_id],
        entity="page",
    )
    return ActionResult({"page": page})


# =============================================================================
# Block mutations
# =============================================================================

async def resolve_insert_position(
    rt: Runtime,
    parent_id: str,
    position: Optional[str] = None,
    after_id: Optional[str] = None,
    after_selector: Union[str, dict, None] = None,
    max_blocks: Optional[int] = None,
) -> InsertPosition:
    """Turn --position / --after-id / --after-selector-json into an InsertPosition."""
    given = [v for v in (position, after_id, after_selector) if v is not None]
    if len(given) > 1:
        raise CliError(
            ErrorCode.INVALID_INPUT,
            "Use only one of --position, --after-id or --after-selector-json.",
        )
    if after_id is not None:
        return InsertPosition.after(after_id)
    if after_selector is not None:
        selector = parse_selector(after_selector, "after-selector-json")
        limit = parse_positive_int(max_blocks, "max-blocks", rt.config.defaults.max_blocks)
        siblings, truncated = await list_sibling_blocks(rt.transport, parent_id, limit)
        index = resolve_in_listing(siblings, truncated, selector, "After selector")
        return InsertPosition.after(str(siblings[index].get("id")))
    if position in (None, "end"):
        return InsertPosition.end()
    if position == "start":
        return InsertPosition.start()
    raise CliError(ErrorCode.INVALID_INPUT, "--position must be start or end.")


async def insert_blocks_action(
    rt: Runtime,
    request_id: str,
    parent_id: str,
    blocks: list[dict],
    position: Optional[str] = None,
    after_id: Optional[str] = None,
    after_selector: Union[str, dict, None] = None,
    dry_run: bool = False,
    max_blocks: Optional[int] = None,
) -> ActionResult:
    anchor = await resolve_insert_position(
        rt, parent_id, position, after_id, after_selector, max_blocks
    )
    result = await rt.mutate(
        request_id,
        "blocks.insert.dry_run" if dry_run else "blocks.insert",
        {
            "id": parent_id,
            "blocks": blocks,
            "position": anchor.to_dict(),
            "dry_run": dry_run,
        },
        lambda: insert_blocks(rt.transport, parent_id, blocks, anchor, dry_run=dry_run),
        target_ids=[parent_id],
        entity="block",
    )
    return ActionResult(result)


async def replace_range_action(
    rt: Runtime,
    request_id: str,
    scope_id: str,
    start_selector: Union[str, dict],
    end_selector: Union[str, dict],
    blocks: list[dict],
    inclusive_start: bool = True,
    inclusive_end: bool = True,
    dry_run: bool = False,
    max_blocks: Optional[int] = None,
) -> ActionResult:
    start = parse_selector(start_selector, "start-selector-json")
    end = parse_selector(end_selector, "end-selector-json")
    limit = parse_positive_int(max_blocks, "max-blocks", rt.config.defaults.max_blocks)

    result = await rt.mutate(
        request_id,
        "blocks.replace_range.dry_run" if dry_run else "blocks.replace_range",
        {
            "scope_id": scope_id,
            "start_selector": start.model_dump(by_alias=True),
            "end_selector": end.model_dump(by_alias=True),
            "blocks": blocks,
            "inclusive_start": inclusive_start,
            "inclusive_end": inclusive_end,
            "dry_run": dry_run,
        },
        lambda: replace_block_range(
            rt.transport,
            scope_id,
            start,
            end,
            blocks,
            inclusive_start=inclusive_start,
            inclusive_end=inclusive_end,
            dry_run=dry_run,
            max_blocks=limit,
        ),
        target_ids=[scope_id],
        entity="block",
    )
    return ActionResult(result)
