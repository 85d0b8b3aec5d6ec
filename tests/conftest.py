"""Shared fakes for notion_lite tests."""

from datetime import timedelta
from typing import Optional

import pytest

from notion_lite.errors import UpstreamError
from notion_lite.pages import PageContext
from notion_lite.schema import SchemaCache

EDITED = "2025-01-01T00:00:00.000Z"


def rich_text(text: str) -> list[dict]:
    return [{"type": "text", "text": {"content": text}, "plain_text": text}]


def make_block(block_id: str, block_type: str = "paragraph", text: str = "",
               last_edited_time: str = EDITED, has_children: bool = False) -> dict:
    return {
        "object": "block",
        "id": block_id,
        "type": block_type,
        "has_children": has_children,
        "last_edited_time": last_edited_time,
        block_type: {"rich_text": rich_text(text)},
    }


def make_page(page_id: str, title: str = "Untitled", data_source_id: Optional[str] = "ds-1",
              properties: Optional[dict] = None, last_edited_time: str = EDITED) -> dict:
    props = {"Name": {"id": "title", "type": "title", "title": rich_text(title)}}
    props.update(properties or {})
    parent = (
        {"type": "data_source_id", "data_source_id": data_source_id}
        if data_source_id else {"type": "workspace", "workspace": True}
    )
    return {
        "object": "page",
        "id": page_id,
        "url": f"https://www.notion.so/{page_id}",
        "created_time": EDITED,
        "last_edited_time": last_edited_time,
        "archived": False,
        "parent": parent,
        "properties": props,
    }


def make_data_source(data_source_id: str, properties: dict[str, str]) -> dict:
    return {
        "object": "data_source",
        "id": data_source_id,
        "title": rich_text("Tasks"),
        "properties": {
            name: {"id": f"id-{name}", "type": prop_type, prop_type: {}}
            for name, prop_type in properties.items()
        },
    }


class FakeNotion:
    """In-memory stand-in for NotionTransport.

    Records every call in `calls` as (operation, *args). Failures can be
    queued per operation in `failures`; each queued exception is raised once.
    """

    def __init__(self):
        self.pages: dict[str, dict] = {}
        self.data_sources: dict[str, dict] = {}
        self.children: dict[str, list[dict]] = {}
        self.search_results: list[dict] = []
        self.calls: list[tuple] = []
        self.failures: dict[str, list[Exception]] = {}
        self.after_append = None
        self._next_id = 0

    def _record(self, operation: str, *args) -> None:
        self.calls.append((operation, *args))
        queued = self.failures.get(operation)
        if queued:
            raise queued.pop(0)

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    def fail(self, operation: str, *errors: Exception) -> None:
        self.failures.setdefault(operation, []).extend(errors)

    # Pages ----------------------------------------------------------------

    async def retrieve_page(self, page_id: str) -> dict:
        self._record("retrieve_page", page_id)
        if page_id not in self.pages:
            raise UpstreamError.from_status(404, "Could not find page.", "object_not_found")
        return self.pages[page_id]

    async def create_page(self, body: dict) -> dict:
        self._record("create_page", body)
        self._next_id += 1
        page_id = f"page-{self._next_id}"
        page = make_page(page_id, data_source_id=body["parent"]["data_source_id"])
        page["properties"].update({
            name: {"type": next(iter(value)), **value}
            for name, value in body["properties"].items()
        })
        self.pages[page_id] = page
        return page

    async def update_page(self, page_id: str, body: dict) -> dict:
        self._record("update_page", page_id, body)
        page = dict(self.pages[page_id])
        if "archived" in body:
            page["archived"] = body["archived"]
        if "properties" in body:
            page["properties"] = dict(page["properties"])
            for name, value in body["properties"].items():
                page["properties"][name] = {"type": next(iter(value)), **value}
        self.pages[page_id] = page
        return page

    # Data sources ---------------------------------------------------------

    async def retrieve_data_source(self, data_source_id: str) -> dict:
        self._record("retrieve_data_source", data_source_id)
        return self.data_sources[data_source_id]

    async def query_data_source(self, data_source_id: str, body: dict) -> dict:
        self._record("query_data_source", data_source_id, body)
        results = [
            p for p in self.pages.values()
            if (p.get("parent") or {}).get("data_source_id") == data_source_id
        ]
        return {"results": results[:body.get("page_size", 100)], "has_more": False,
                "next_cursor": None}

    async def search(self, body: dict) -> dict:
        self._record("search", body)
        start = int(body.get("start_cursor") or 0)
        end = start + body.get("page_size", 100)
        window = self.search_results[start:end]
        has_more = end < len(self.search_results)
        return {"results": window, "has_more": has_more,
                "next_cursor": str(end) if has_more else None}

    async def retrieve_me(self) -> dict:
        self._record("retrieve_me")
        return {"object": "user", "type": "bot", "bot": {"workspace_name": "Test"}}

    # Blocks ---------------------------------------------------------------

    async def retrieve_block(self, block_id: str) -> dict:
        self._record("retrieve_block", block_id)
        for siblings in self.children.values():
            for block in siblings:
                if block["id"] == block_id:
                    return block
        raise UpstreamError.from_status(404, "Could not find block.", "object_not_found")

    async def delete_block(self, block_id: str) -> dict:
        self._record("delete_block", block_id)
        for siblings in self.children.values():
            for i, block in enumerate(siblings):
                if block["id"] == block_id:
                    del siblings[i]
                    return {**block, "archived": True}
        raise UpstreamError.from_status(404, "Could not find block.", "object_not_found")

    async def list_block_children(self, block_id: str, start_cursor: Optional[str] = None,
                                  page_size: int = 100) -> dict:
        self._record("list_block_children", block_id, start_cursor, page_size)
        siblings = self.children.get(block_id, [])
        start = int(start_cursor or 0)
        end = start + page_size
        has_more = end < len(siblings)
        return {"object": "list", "results": [dict(b) for b in siblings[start:end]],
                "has_more": has_more, "next_cursor": str(end) if has_more else None}

    async def append_block_children(self, block_id: str, children: list[dict],
                                    position: Optional[dict] = None) -> dict:
        self._record("append_block_children", block_id, children, position)
        siblings = self.children.setdefault(block_id, [])

        created = []
        for child in children:
            self._next_id += 1
            block_type = child.get("type", "paragraph")
            created.append({
                "object": "block",
                "id": f"new-{self._next_id}",
                "type": block_type,
                "has_children": False,
                "last_edited_time": EDITED,
                block_type: child.get(block_type, {}),
            })

        kind = (position or {}).get("type", "end")
        if kind == "start":
            index = 0
        elif kind == "after_block":
            after_id = position["after_block"]["id"]
            index = next(i for i, b in enumerate(siblings) if b["id"] == after_id) + 1
        else:
            index = len(siblings)
        siblings[index:index] = created

        if self.after_append is not None:
            self.after_append(self)
        return {"object": "list", "results": created}


@pytest.fixture
def fake_notion() -> FakeNotion:
    return FakeNotion()


@pytest.fixture
def schema_cache() -> SchemaCache:
    return SchemaCache(ttl=timedelta(hours=24))


@pytest.fixture
def page_ctx(fake_notion, schema_cache) -> PageContext:
    return PageContext(fake_notion, schema_cache)
