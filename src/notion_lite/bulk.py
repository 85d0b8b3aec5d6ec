"""Concurrent page creation under one data source."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from .errors import CliError, ErrorCode, to_cli_error
from .pages import PageContext, create_page
from .schema import hydrate_data_source_schema

logger = logging.getLogger("notion-lite")

MAX_BULK_ITEMS = 100

# run_item(index, item, create) performs one create; the default calls create()
ItemRunner = Callable[[int, dict, Callable[[], Awaitable[dict]]], Awaitable[dict]]


def _validate_items(items: Any) -> list[dict]:
    if not isinstance(items, list) or not items:
        raise CliError(ErrorCode.INVALID_INPUT, "Bulk create expects a non-empty array of items.")
    if len(items) > MAX_BULK_ITEMS:
        raise CliError(
            ErrorCode.INVALID_INPUT,
            f"Bulk create accepts at most {MAX_BULK_ITEMS} items, got {len(items)}.",
        )
    for index, item in enumerate(items):
        if not isinstance(item, dict) or not isinstance(item.get("properties"), dict):
            raise CliError(
                ErrorCode.INVALID_INPUT,
                f"Item {index} must be an object with a properties object.",
                details={"index": index},
            )
    return items


async def create_pages_bulk(
    ctx: PageContext,
    parent_data_source_id: str,
    items: list[dict],
    view: str = "compact",
    fields: Optional[list[str]] = None,
    concurrency: int = 5,
    run_item: Optional[ItemRunner] = None,
) -> dict:
    """Create one page per item with at most `concurrency` creates in flight.

    Results keep input order. A failing item does not stop the others; it is
    reported as {index, ok: false, error}. run_item wraps each create, e.g.
    to give every item its own idempotency record.

    Returns:
        {parent_data_source_id, summary: {requested, created, failed}, items}
    """
    items = _validate_items(items)
    if concurrency < 1:
        raise CliError(ErrorCode.INVALID_INPUT, "concurrency must be at least 1.")

    # Warm the schema cache so the fan-out doesn't refetch it per item
    await hydrate_data_source_schema(ctx.transport, ctx.schema_cache, parent_data_source_id)

    semaphore = asyncio.Semaphore(concurrency)

    async def create_one(index: int, item: dict) -> dict:
        async def create() -> dict:
            return await create_page(
                ctx, parent_data_source_id, item["properties"], view, fields
            )

        async with semaphore:
            if run_item is None:
                return await create()
            return await run_item(index, item, create)

    outcomes = await asyncio.gather(
        *(create_one(index, item) for index, item in enumerate(items)),
        return_exceptions=True,
    )

    results: list[dict] = []
    for index, outcome in enumerate(outcomes):
        if isinstance(outcome, Exception):
            error = to_cli_error(outcome)
            logger.info(f"Bulk item {index} failed: {error.code.value} {error.message}")
            results.append({
                "index": index,
                "ok": False,
                "error": {
                    "code": error.code.value,
                    "message": error.message,
                    "retryable": error.retryable,
                },
            })
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            results.append({"index": index, "ok": True, "page": outcome})

    created = sum(1 for r in results if r["ok"])
    return {
        "parent_data_source_id": parent_data_source_id,
        "summary": {
            "requested": len(items),
            "created": created,
            "failed": len(items) - created,
        },
        "items": results,
    }
