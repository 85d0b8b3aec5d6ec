"""Compact and full views of Notion objects for command output."""

from typing import Any, Optional

from .properties import normalize_properties, read_plain_text


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def get_title_from_properties(properties: dict) -> str:
    """Extract the title from page properties (the one title-type property)."""
    for prop in properties.values():
        if isinstance(prop, dict) and prop.get("type") == "title":
            return read_plain_text(prop.get("title"))
    return ""


def normalize_parent(parent: Any) -> Optional[dict]:
    if not isinstance(parent, dict):
        return None
    parent_type = parent.get("type")
    if not isinstance(parent_type, str):
        return {"raw": parent}
    return {"type": parent_type, "id": parent.get(parent_type)}


def _page_base(page: dict) -> dict:
    raw_properties = _as_dict(page.get("properties"))
    return {
        "id": str(page.get("id") or ""),
        "title": get_title_from_properties(raw_properties),
        "url": page.get("url"),
        "created_time": page.get("created_time"),
        "last_edited_time": page.get("last_edited_time"),
        "archived": bool(page.get("archived") or page.get("in_trash")),
        "parent": normalize_parent(page.get("parent")),
    }


def to_compact_page(page: dict, fields: Optional[list[str]] = None) -> dict:
    record = _page_base(page)
    if fields:
        properties = normalize_properties(_as_dict(page.get("properties")))
        for field in fields:
            record[field] = properties.get(field)
    return record


def to_full_page(page: dict) -> dict:
    raw_properties = _as_dict(page.get("properties"))
    record = _page_base(page)
    record["properties"] = normalize_properties(raw_properties)
    record["property_types"] = {
        name: prop.get("type") if isinstance(prop, dict) else None
        for name, prop in raw_properties.items()
    }
    return record


def render_page(page: dict, view: str, fields: Optional[list[str]] = None) -> dict:
    return to_full_page(page) if view == "full" else to_compact_page(page, fields)


def _data_source_base(data_source: dict) -> dict:
    return {
        "id": str(data_source.get("id") or ""),
        "name": read_plain_text(data_source.get("title")),
        "url": data_source.get("url"),
        "created_time": data_source.get("created_time"),
        "last_edited_time": data_source.get("last_edited_time"),
        "parent": normalize_parent(data_source.get("parent")),
    }


def to_compact_data_source(data_source: dict) -> dict:
    record = _data_source_base(data_source)
    record["property_count"] = len(_as_dict(data_source.get("properties")))
    return record


def to_full_data_source(data_source: dict) -> dict:
    record = _data_source_base(data_source)
    record["properties"] = {
        name: {"type": prop.get("type", "unknown"), "id": prop.get("id", "")}
        if isinstance(prop, dict) else {"type": "unknown", "id": ""}
        for name, prop in _as_dict(data_source.get("properties")).items()
    }
    return record


def to_search_result(item: dict) -> dict:
    if item.get("object") == "data_source":
        title = read_plain_text(item.get("title"))
    elif item.get("object") == "page":
        title = get_title_from_properties(_as_dict(item.get("properties")))
    else:
        title = ""
    return {
        "id": str(item.get("id") or ""),
        "object": item.get("object"),
        "title": title,
        "url": item.get("url"),
        "last_edited_time": item.get("last_edited_time"),
        "parent": normalize_parent(item.get("parent")),
    }


def extract_block_text(block: dict) -> Optional[str]:
    """Plain text of a block's rich_text, or None for blocks without text."""
    block_type = block.get("type")
    if not isinstance(block_type, str):
        return None
    data = block.get(block_type)
    if not isinstance(data, dict) or not isinstance(data.get("rich_text"), list):
        return None
    return read_plain_text(data["rich_text"])


def to_compact_block(block: dict) -> dict:
    return {
        "id": block.get("id"),
        "type": block.get("type"),
        "has_children": bool(block.get("has_children")),
        "text": extract_block_text(block),
    }
