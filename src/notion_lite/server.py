"""MCP server exposing the notion-lite commands as tools.

Every tool returns the same JSON envelope the CLI prints, so agents get one
structured outcome per call.

Usage:
    notion-lite serve          # stdio mode
    notion-lite serve --http   # HTTP mode on localhost:2052
"""

import logging
from typing import Optional

from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from . import commands
from .markdown import markdown_to_blocks
from .output import ActionResult, execute_action, render_envelope
from .transport import RateLimiter

logger = logging.getLogger("notion-lite")

HTTP_HOST = "127.0.0.1"
HTTP_PORT = 2052

mcp = FastMCP("notion-lite")

# Set by serve() from --token-file; None means the configured env var
_token_file: Optional[str] = None

# One request lane for every tool call in this process (Notion allows ~3 req/sec)
_rate_limiter: Optional[RateLimiter] = None


def _get_rate_limiter() -> RateLimiter:
    """Get or create the process-wide rate limiter."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


async def _run_tool(handler) -> str:
    """Run handler(rt, request_id) in a fresh Runtime and render the envelope.

    Every Runtime shares the process-wide rate limiter.
    """

    async def action(request_id: str) -> ActionResult:
        async with commands.open_runtime(_token_file, limiter=_get_rate_limiter()) as rt:
            return await handler(rt, request_id)

    envelope, _ = await execute_action(action)
    return render_envelope(envelope)


@mcp.tool()
async def notion_search(
    query: str,
    limit: int = 10,
    cursor: Optional[str] = None,
    scope: Optional[str] = None,
) -> str:
    """Search the workspace for pages and data sources by title.

    Args:
        query: Search text.
        limit: Max results (default 10).
        cursor: next_cursor from a previous call.
        scope: Only results whose parent has this id.
    """
    return await _run_tool(
        lambda rt, request_id: commands.search_action(
            rt, request_id, query, limit, cursor, scope
        )
    )


@mcp.tool()
async def notion_get_page(
    page_id: str,
    view: str = "compact",
    fields: Optional[list[str]] = None,
) -> str:
    """Get a page's title, metadata and (in full view) all properties.

    Args:
        page_id: Notion page id.
        view: "compact" (default) or "full".
        fields: Properties to include in compact view.
    """
    return await _run_tool(
        lambda rt, request_id: commands.get_page_action(rt, request_id, page_id, view, fields)
    )


@mcp.tool()
async def notion_update_page(page_id: str, patch: dict) -> str:
    """Update page properties from plain values, e.g. {"Status": "Done"}.

    Property names are matched against the data source schema; raw Notion
    property payloads are passed through. Concurrent edits are re-read and
    retried once. Repeating the same call within two minutes replays the
    first result instead of applying twice.
    """
    return await _run_tool(
        lambda rt, request_id: commands.update_page_action(rt, request_id, page_id, patch)
    )


@mcp.tool()
async def notion_select_blocks(scope_id: str, selector: dict) -> str:
    """Find a block among the direct children of a page or block.

    Args:
        scope_id: Page or block whose children are searched.
        selector: {"where": {"type": ..., "text_contains": ...}, "nth": 1,
            "from": "start" | "end"}. Without nth, more than one match is
            reported as ambiguous.
    """
    return await _run_tool(
        lambda rt, request_id: commands.select_blocks_action(rt, request_id, scope_id, selector)
    )


@mcp.tool()
async def notion_insert_markdown(
    parent_id: str,
    markdown: str,
    position: Optional[str] = None,
    after_id: Optional[str] = None,
    after_selector: Optional[dict] = None,
    dry_run: bool = False,
) -> str:
    """Insert markdown content as blocks under a page or block.

    Args:
        parent_id: Page or block to insert under.
        markdown: Headings, lists, to-dos, quotes, code fences, paragraphs.
        position: "start" or "end" (default end).
        after_id: Insert after this sibling instead.
        after_selector: Insert after the block this selector resolves to.
        dry_run: Return the plan without mutating.
    """
    return await _run_tool(
        lambda rt, request_id: commands.insert_blocks_action(
            rt, request_id, parent_id, markdown_to_blocks(markdown),
            position, after_id, after_selector, dry_run,
        )
    )


@mcp.tool()
async def notion_replace_range_markdown(
    scope_id: str,
    start_selector: dict,
    end_selector: dict,
    markdown: str,
    inclusive_start: bool = True,
    inclusive_end: bool = True,
    dry_run: bool = False,
) -> str:
    """Replace the sibling blocks between two selectors with markdown content.

    The range is fingerprinted when selected and re-checked before deleting;
    if it changed, the call fails with a conflict, deletes nothing and
    reports the ids of the already-inserted replacement blocks.
    """
    return await _run_tool(
        lambda rt, request_id: commands.replace_range_action(
            rt, request_id, scope_id, start_selector, end_selector,
            markdown_to_blocks(markdown),
            inclusive_start=inclusive_start,
            inclusive_end=inclusive_end,
            dry_run=dry_run,
        )
    )


# =============================================================================
# HTTP endpoints
# =============================================================================

async def health_endpoint(request: Request) -> JSONResponse:
    """Health check with a quick auth request."""
    try:
        async with commands.open_runtime(_token_file, limiter=_get_rate_limiter()) as rt:
            me = await rt.transport.retrieve_me()
        workspace = (me.get("bot") or {}).get("workspace_name", "connected")
        return JSONResponse({"status": "ok", "token_loaded": True, "workspace": workspace})
    except Exception as e:
        return JSONResponse({
            "status": "ok",
            "token_loaded": False,
            "workspace": f"error: {type(e).__name__}",
        })


def serve(http: bool = False, token_file: Optional[str] = None) -> None:
    """Run the MCP server over stdio, or streamable HTTP on localhost:2052."""
    global _token_file
    _token_file = token_file

    if http:
        import uvicorn

        app = mcp.streamable_http_app()
        app.add_route("/health", health_endpoint, methods=["GET"])

        logger.info(f"Starting notion-lite MCP server on http://{HTTP_HOST}:{HTTP_PORT}")
        uvicorn.run(app, host=HTTP_HOST, port=HTTP_PORT, log_level="warning")
    else:
        mcp.run()
