"""Tests for page, data source and schema-cache operations."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_data_source, make_page
from notion_lite.config import SchemaCacheEntry, SchemaProperty
from notion_lite.errors import CliError, ErrorCode, UpstreamError
from notion_lite.pages import (
    archive_page,
    create_page,
    get_data_source,
    get_page,
    list_data_sources,
    query_data_source_pages,
    set_relation,
    unarchive_page,
    update_page,
)
from notion_lite.properties import UnknownPropertyError
from notion_lite.schema import SchemaCache, hydrate_data_source_schema


class TestSchemaCache:
    def test_fresh_entry_is_used_without_fetch(self, fake_notion):
        cache = SchemaCache()
        cache.put("ds-1", {"Name": SchemaProperty(id="title", type="title")})

        schema = asyncio.run(hydrate_data_source_schema(fake_notion, cache, "ds-1"))

        assert schema["Name"].type == "title"
        assert fake_notion.count("retrieve_data_source") == 0

    def test_stale_entry_is_refreshed(self, fake_notion):
        fake_notion.data_sources["ds-1"] = make_data_source("ds-1", {"Name": "title", "Tags": "multi_select"})
        old = (datetime.now(timezone.utc) - timedelta(hours=30)).isoformat()
        cache = SchemaCache({
            "ds-1": SchemaCacheEntry(data_source_id="ds-1", last_refreshed=old, properties={}),
        })

        schema = asyncio.run(hydrate_data_source_schema(fake_notion, cache, "ds-1"))

        assert set(schema) == {"Name", "Tags"}
        assert fake_notion.count("retrieve_data_source") == 1

    def test_put_calls_save_back(self):
        saves = []
        cache = SchemaCache(save=lambda: saves.append(True))
        cache.put("ds-1", {})
        assert saves == [True]
        assert "ds-1" in cache.entries

    def test_unparseable_timestamp_is_stale(self):
        cache = SchemaCache()
        entry = SchemaCacheEntry(data_source_id="ds", last_refreshed="yesterday")
        assert cache.is_stale(entry)


class TestCreatePage:
    def test_builds_properties_from_schema(self, fake_notion, page_ctx):
        fake_notion.data_sources["ds-1"] = make_data_source("ds-1", {"Name": "title", "Status": "status"})

        page = asyncio.run(create_page(page_ctx, "ds-1", {"Name": "Write docs", "Status": "Todo"}))

        body = fake_notion.calls[-1][1]
        assert body["parent"] == {"data_source_id": "ds-1"}
        assert body["properties"]["Status"] == {"status": {"name": "Todo"}}
        assert page["title"] == "Write docs"

    def test_unknown_property_refreshes_schema_once(self, fake_notion, page_ctx, schema_cache):
        schema_cache.put("ds-1", {"Name": SchemaProperty(id="title", type="title")})
        fake_notion.data_sources["ds-1"] = make_data_source("ds-1", {"Name": "title", "Priority": "select"})

        asyncio.run(create_page(page_ctx, "ds-1", {"Name": "x", "Priority": "High"}))

        assert fake_notion.count("retrieve_data_source") == 1
        assert fake_notion.calls[-1][1]["properties"]["Priority"] == {"select": {"name": "High"}}

    def test_unknown_property_after_refresh_fails(self, fake_notion, page_ctx, schema_cache):
        schema_cache.put("ds-1", {"Name": SchemaProperty(id="title", type="title")})
        fake_notion.data_sources["ds-1"] = make_data_source("ds-1", {"Name": "title"})

        with pytest.raises(UnknownPropertyError):
            asyncio.run(create_page(page_ctx, "ds-1", {"Missing": "x"}))

        assert fake_notion.count("retrieve_data_source") == 1
        assert fake_notion.count("create_page") == 0


class TestUpdatePage:
    def test_updates_through_schema(self, fake_notion, page_ctx):
        fake_notion.pages["p1"] = make_page("p1", "Task")
        fake_notion.data_sources["ds-1"] = make_data_source("ds-1", {"Name": "title", "Done": "checkbox"})

        page = asyncio.run(update_page(page_ctx, "p1", {"Done": True}, view="full"))

        assert page["properties"]["Done"] is True
        assert fake_notion.calls[-1] == ("update_page", "p1", {"properties": {"Done": {"checkbox": True}}})

    def test_page_outside_data_source_is_invalid(self, fake_notion, page_ctx):
        fake_notion.pages["p1"] = make_page("p1", data_source_id=None)

        with pytest.raises(CliError) as exc:
            asyncio.run(update_page(page_ctx, "p1", {"Name": "x"}))
        assert exc.value.code is ErrorCode.INVALID_INPUT

    def test_conflict_is_retried_once(self, fake_notion, page_ctx):
        fake_notion.pages["p1"] = make_page("p1")
        fake_notion.data_sources["ds-1"] = make_data_source("ds-1", {"Name": "title"})
        fake_notion.fail("update_page", UpstreamError.from_status(409, "conflict"))

        page = asyncio.run(update_page(page_ctx, "p1", {"Name": "Renamed"}))

        assert page["title"] == "Renamed"
        assert fake_notion.count("update_page") == 2
        assert fake_notion.count("retrieve_page") == 2

    def test_archive_and_unarchive(self, fake_notion, page_ctx):
        fake_notion.pages["p1"] = make_page("p1")

        archived = asyncio.run(archive_page(page_ctx, "p1"))
        assert archived["archived"] is True
        restored = asyncio.run(unarchive_page(page_ctx, "p1"))
        assert restored["archived"] is False


class TestSetRelation:
    def relation_page(self, ids):
        return make_page("p1", properties={
            "Blocked by": {"type": "relation", "relation": [{"id": i} for i in ids]},
        })

    def test_add_appends_once(self, fake_notion, page_ctx):
        fake_notion.pages["p1"] = self.relation_page(["a"])

        asyncio.run(set_relation(page_ctx, "p1", "b", "Blocked by"))
        asyncio.run(set_relation(page_ctx, "p1", "b", "Blocked by"))

        assert fake_notion.pages["p1"]["properties"]["Blocked by"]["relation"] == [{"id": "a"}, {"id": "b"}]

    def test_remove(self, fake_notion, page_ctx):
        fake_notion.pages["p1"] = self.relation_page(["a", "b"])

        asyncio.run(set_relation(page_ctx, "p1", "a", "Blocked by", mode="remove"))

        assert fake_notion.pages["p1"]["properties"]["Blocked by"]["relation"] == [{"id": "b"}]

    def test_non_relation_property_is_invalid(self, fake_notion, page_ctx):
        fake_notion.pages["p1"] = make_page("p1")

        with pytest.raises(CliError) as exc:
            asyncio.run(set_relation(page_ctx, "p1", "x", "Name"))
        assert exc.value.code is ErrorCode.INVALID_INPUT


class TestReads:
    def test_get_page_compact_with_fields(self, fake_notion):
        fake_notion.pages["p1"] = make_page("p1", "Task", properties={
            "Status": {"type": "status", "status": {"name": "Doing"}},
        })

        page = asyncio.run(get_page(fake_notion, "p1", "compact", ["Status"]))

        assert page["title"] == "Task"
        assert page["Status"] == "Doing"
        assert "properties" not in page

    def test_get_missing_page_propagates_not_found(self, fake_notion):
        with pytest.raises(UpstreamError) as exc:
            asyncio.run(get_page(fake_notion, "missing", "compact"))
        assert exc.value.status == 404

    def test_query_data_source_pages(self, fake_notion):
        fake_notion.pages["p1"] = make_page("p1", "One")
        fake_notion.pages["p2"] = make_page("p2", "Two", data_source_id="ds-2")

        result = asyncio.run(query_data_source_pages(fake_notion, "ds-1", 10, "compact"))

        assert [r["title"] for r in result["records"]] == ["One"]
        assert result["pagination"] == {"has_more": False, "next_cursor": None, "returned": 1}

    def test_get_data_source_full_lists_property_types(self, fake_notion):
        fake_notion.data_sources["ds-1"] = make_data_source("ds-1", {"Name": "title"})

        data_source = asyncio.run(get_data_source(fake_notion, "ds-1", "full"))

        assert data_source["name"] == "Tasks"
        assert data_source["properties"] == {"Name": {"type": "title", "id": "id-Name"}}

    def test_list_data_sources_filters_by_object(self, fake_notion):
        fake_notion.search_results = [make_data_source("ds-1", {"Name": "title"})]

        result = asyncio.run(list_data_sources(fake_notion, 5, query="tasks"))

        body = fake_notion.calls[-1][1]
        assert body["filter"] == {"property": "object", "value": "data_source"}
        assert body["query"] == "tasks"
        assert result["data_sources"][0]["property_count"] == 1
