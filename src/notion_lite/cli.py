"""notion-lite command line entry point.

Usage:
    notion-lite auth --token-env NOTION_API_KEY
    notion-lite pages update --id <page_id> --patch-json '{"Status": "Done"}'
    notion-lite blocks insert --id <page_id> --markdown "- [ ] follow up"
    notion-lite serve --http
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional

from . import commands
from .output import ActionResult, run_action

logger = logging.getLogger("notion-lite")


# =============================================================================
# Parser
# =============================================================================

def _add_global_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON output")
    parser.add_argument("--timeout-ms", type=int, help="Request timeout in milliseconds")
    parser.add_argument("--token-file", help="Read the API token from this file")
    parser.add_argument("--verbose", action="store_true", help="Log progress to stderr")


def _add_view_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--view", choices=("compact", "full"), help="Response view mode")
    parser.add_argument("--fields", help="Comma-separated properties to include in compact view")


def _add_paging_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--limit", type=int, help="Max records to return")
    parser.add_argument("--cursor", help="Pagination cursor")


def _add_content_options(parser: argparse.ArgumentParser) -> None:
    content = parser.add_mutually_exclusive_group(required=True)
    content.add_argument("--blocks-json", help="JSON array of Notion block objects")
    content.add_argument("--markdown", help="Markdown text to convert to blocks")
    content.add_argument("--markdown-file", help="Path to a markdown file")
    parser.add_argument("--dry-run", action="store_true", help="Return the plan without mutating")


def _command(
    subparsers, name: str, help_text: str, view_options: bool = False, paging: bool = False
):
    parser = subparsers.add_parser(name, help=help_text, description=help_text)
    _add_global_options(parser)
    if view_options:
        _add_view_options(parser)
    if paging:
        _add_paging_options(parser)
    return parser


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="notion-lite",
        description="Token-efficient, workspace-agnostic Notion CLI",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    auth = _command(subparsers, "auth", "Configure authentication")
    auth.add_argument("--token-env", help="API key environment variable name")

    _command(subparsers, "doctor", "Validate config and auth quickly")

    search = _command(subparsers, "search", "Workspace-wide search", paging=True)
    search.add_argument("--query", required=True, help="Search query text")
    search.add_argument("--scope", help="Only results whose parent has this id")
    search.add_argument("--created-by", help="Only results created by this user id")
    search.add_argument("--created-after", help="ISO 8601 lower bound on created_time")
    search.add_argument("--created-before", help="ISO 8601 upper bound on created_time")

    # data-sources
    data_sources = subparsers.add_parser("data-sources", help="Data source operations")
    ds_sub = data_sources.add_subparsers(dest="action", required=True)

    ds_list = _command(ds_sub, "list", "List accessible data sources", paging=True)
    ds_list.add_argument("--query", help="Search text for filtering data sources")

    ds_get = _command(ds_sub, "get", "Get a data source by id")
    ds_get.add_argument("--id", required=True, help="Notion data source id")
    ds_get.add_argument("--view", choices=("compact", "full"), help="Response view mode")

    ds_query = _command(
        ds_sub, "query", "Query pages in a data source", view_options=True, paging=True
    )
    ds_query.add_argument("--id", required=True, help="Notion data source id")
    ds_query.add_argument("--filter-json", help="Notion filter payload")
    ds_query.add_argument("--sort-json", help="Notion sort payload (object or array)")

    # pages
    pages = subparsers.add_parser("pages", help="Page operations")
    pages_sub = pages.add_subparsers(dest="action", required=True)

    page_get = _command(pages_sub, "get", "Get a page by id", view_options=True)
    page_get.add_argument("--id", required=True, help="Notion page id")

    page_create = _command(pages_sub, "create", "Create a page in a data source", view_options=True)
    page_create.add_argument("--parent-data-source-id", required=True)
    page_create.add_argument("--properties-json", required=True, help="JSON object of property values")

    page_bulk = _command(
        pages_sub, "create-bulk", "Create up to 100 pages in a data source", view_options=True
    )
    page_bulk.add_argument("--parent-data-source-id", required=True)
    page_bulk.add_argument(
        "--items-json", required=True, help='JSON array of {"properties": {...}} items'
    )
    page_bulk.add_argument("--concurrency", type=int, help="Max creates in flight")

    page_update = _command(pages_sub, "update", "Update page properties", view_options=True)
    page_update.add_argument("--id", required=True, help="Notion page id")
    page_update.add_argument("--patch-json", required=True, help="JSON object of property changes")

    for name, help_text in (("archive", "Archive a page"), ("unarchive", "Restore an archived page")):
        archive = _command(pages_sub, name, help_text, view_options=True)
        archive.add_argument("--id", required=True, help="Notion page id")

    for name, help_text in (
        ("relate", "Add a page to a relation property"),
        ("unrelate", "Remove a page from a relation property"),
    ):
        relate = _command(pages_sub, name, help_text)
        relate.add_argument("--from-id", required=True, help="Source page id")
        relate.add_argument("--property", required=True, help="Relation property on the source page")
        relate.add_argument("--to-id", required=True, help="Target page id")

    # blocks
    blocks = subparsers.add_parser("blocks", help="Block operations")
    blocks_sub = blocks.add_subparsers(dest="action", required=True)

    block_get = _command(blocks_sub, "get", "Read a page's or block's children")
    block_get.add_argument("--id", required=True, help="Notion page or block id")
    block_get.add_argument("--max-blocks", type=int, help="Maximum block count")
    block_get.add_argument("--depth", type=int, default=1, help="Recursion depth")
    block_get.add_argument("--view", choices=("compact", "full"), help="Response view mode")

    block_select = _command(blocks_sub, "select", "Resolve a selector among direct children")
    block_select.add_argument("--scope-id", required=True, help="Page or block whose children are searched")
    block_select.add_argument(
        "--selector-json", required=True,
        help='e.g. {"where": {"type": "to_do", "text_contains": "ship"}, "nth": 1, "from": "end"}',
    )
    block_select.add_argument("--max-blocks", type=int, help="Maximum siblings scanned")

    block_insert = _command(blocks_sub, "insert", "Insert blocks at a sibling position")
    block_insert.add_argument("--id", required=True, help="Parent page or block id")
    block_insert.add_argument("--position", choices=("start", "end"), help="Insert at start or end")
    block_insert.add_argument("--after-id", help="Insert after this sibling block")
    block_insert.add_argument("--after-selector-json", help="Insert after the block this selector resolves to")
    block_insert.add_argument("--max-blocks", type=int, help="Maximum siblings scanned for --after-selector-json")
    _add_content_options(block_insert)

    block_replace = _command(blocks_sub, "replace-range", "Replace a sibling range between two selectors")
    block_replace.add_argument("--scope-id", required=True, help="Page or block whose children are edited")
    block_replace.add_argument("--start-selector-json", required=True)
    block_replace.add_argument("--end-selector-json", required=True)
    block_replace.add_argument(
        "--exclude-start", action="store_true", help="Keep the start block, replace what follows"
    )
    block_replace.add_argument(
        "--exclude-end", action="store_true", help="Keep the end block, replace what precedes"
    )
    block_replace.add_argument("--max-blocks", type=int, help="Maximum siblings scanned")
    _add_content_options(block_replace)

    serve = subparsers.add_parser("serve", help="Run the MCP server")
    serve.add_argument("--token-file", help="Read the API token from this file")
    serve.add_argument(
        "--http", action="store_true", help="Run as HTTP server on localhost:2052 instead of stdio"
    )
    serve.add_argument("--verbose", action="store_true", help="Log progress to stderr")

    return parser


# =============================================================================
# Dispatch
# =============================================================================

def _runtime_action(args: argparse.Namespace, handler):
    """Wrap handler(rt, request_id) so it runs inside an opened Runtime."""

    async def action(request_id: str) -> ActionResult:
        async with commands.open_runtime(args.token_file, args.timeout_ms) as rt:
            return await handler(rt, request_id)

    return action


def _content(args: argparse.Namespace) -> list[dict]:
    return commands.load_block_content(args.blocks_json, args.markdown, args.markdown_file)


def build_action(args: argparse.Namespace):
    """Map parsed arguments to an action taking the request id."""
    key = (args.command, getattr(args, "action", None))

    if key == ("auth", None):
        return lambda request_id: commands.auth_action(
            request_id, args.token_env, args.token_file, args.timeout_ms
        )

    if key == ("doctor", None):
        handler = commands.doctor_action
    elif key == ("search", None):
        def handler(rt, request_id):
            return commands.search_action(
                rt, request_id, args.query, args.limit, args.cursor, args.scope,
                args.created_by, args.created_after, args.created_before,
            )
    elif key == ("data-sources", "list"):
        def handler(rt, request_id):
            return commands.list_data_sources_action(
                rt, request_id, args.query, args.limit, args.cursor
            )
    elif key == ("data-sources", "get"):
        def handler(rt, request_id):
            return commands.get_data_source_action(rt, request_id, args.id, args.view)
    elif key == ("data-sources", "query"):
        def handler(rt, request_id):
            return commands.query_data_source_action(
                rt, request_id, args.id, args.filter_json, args.sort_json,
                args.limit, args.cursor, args.view, args.fields,
            )
    elif key == ("pages", "get"):
        def handler(rt, request_id):
            return commands.get_page_action(rt, request_id, args.id, args.view, args.fields)
    elif key == ("pages", "create"):
        def handler(rt, request_id):
            return commands.create_page_action(
                rt, request_id, args.parent_data_source_id, args.properties_json,
                args.view, args.fields,
            )
    elif key == ("pages", "create-bulk"):
        def handler(rt, request_id):
            return commands.create_pages_bulk_action(
                rt, request_id, args.parent_data_source_id, args.items_json,
                args.concurrency, args.view, args.fields,
            )
    elif key == ("pages", "update"):
        def handler(rt, request_id):
            return commands.update_page_action(
                rt, request_id, args.id, args.patch_json, args.view, args.fields
            )
    elif key in (("pages", "archive"), ("pages", "unarchive")):
        def handler(rt, request_id):
            return commands.archive_page_action(
                rt, request_id, args.id, args.action == "archive", args.view, args.fields
            )
    elif key in (("pages", "relate"), ("pages", "unrelate")):
        def handler(rt, request_id):
            return commands.relate_action(
                rt, request_id, args.from_id, args.property, args.to_id,
                "add" if args.action == "relate" else "remove",
            )
    elif key == ("blocks", "get"):
        def handler(rt, request_id):
            return commands.get_blocks_action(
                rt, request_id, args.id, args.max_blocks, args.depth, args.view
            )
    elif key == ("blocks", "select"):
        def handler(rt, request_id):
            return commands.select_blocks_action(
                rt, request_id, args.scope_id, args.selector_json, args.max_blocks
            )
    elif key == ("blocks", "insert"):
        def handler(rt, request_id):
            return commands.insert_blocks_action(
                rt, request_id, args.id, _content(args), args.position, args.after_id,
                args.after_selector_json, args.dry_run, args.max_blocks,
            )
    elif key == ("blocks", "replace-range"):
        def handler(rt, request_id):
            return commands.replace_range_action(
                rt, request_id, args.scope_id, args.start_selector_json,
                args.end_selector_json, _content(args),
                inclusive_start=not args.exclude_start,
                inclusive_end=not args.exclude_end,
                dry_run=args.dry_run,
                max_blocks=args.max_blocks,
            )
    else:
        raise ValueError(f"Unhandled command: {key}")

    return _runtime_action(args, handler)


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    if args.command == "serve":
        from .server import serve
        serve(http=args.http, token_file=args.token_file)
        return 0

    return asyncio.run(run_action(build_action(args), pretty=args.pretty))


if __name__ == "__main__":
    sys.exit(main())
