"""Property patch building and property value normalization."""

import json
from typing import Any, Optional

from .config import SchemaProperty
from .errors import CliError, ErrorCode


class UnknownPropertyError(CliError):
    """A patch names a property the data source schema does not have."""

    def __init__(self, property_name: str):
        super().__init__(
            ErrorCode.INVALID_INPUT,
            f'Unknown property "{property_name}" for this data source. '
            "Use data-sources get to inspect available properties.",
            details={"property": property_name},
        )
        self.property_name = property_name


# Keys that mark a value as an already-shaped Notion property payload
RAW_PROPERTY_KEYS = {
    "title", "rich_text", "status", "select", "multi_select", "date",
    "relation", "people", "checkbox", "number", "url", "email",
    "phone_number", "files", "formula",
}


def _invalid(message: str) -> CliError:
    return CliError(ErrorCode.INVALID_INPUT, message)


def _to_rich_text(content: str) -> list[dict]:
    return [{"type": "text", "text": {"content": content}}]


def _as_string_list(value: Any, label: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) and v for v in value):
        raise _invalid(f"{label} expects an array of strings.")
    return value


def _normalize_date_input(value: Any) -> Optional[dict]:
    if value is None:
        return None
    if isinstance(value, str):
        return {"start": value}
    if isinstance(value, dict):
        if not isinstance(value.get("start"), str):
            raise _invalid('Date value must include a string "start" field.')
        date = {"start": value["start"]}
        for key in ("end", "time_zone"):
            if key in value and (value[key] is None or isinstance(value[key], str)):
                date[key] = value[key]
        return date
    raise _invalid("Invalid date value.")


def is_raw_property_payload(value: Any) -> bool:
    return isinstance(value, dict) and any(key in RAW_PROPERTY_KEYS for key in value)


def build_property_value(prop_type: str, value: Any) -> dict:
    """Convert a plain value to a Notion property payload for prop_type.

    Args:
        prop_type: Notion property type (title, rich_text, select, etc.)
        value: Plain JSON value from the patch

    Returns:
        Notion API property value dict

    Raises:
        CliError: invalid_input when the value doesn't fit the type
    """
    if prop_type == "title":
        if not isinstance(value, str):
            raise _invalid("Title properties require string values.")
        return {"title": _to_rich_text(value)}
    elif prop_type == "rich_text":
        if not isinstance(value, str):
            raise _invalid("Rich text properties require string values.")
        return {"rich_text": _to_rich_text(value)}
    elif prop_type in ("select", "status"):
        if not isinstance(value, str):
            raise _invalid(f"{prop_type.capitalize()} properties require a string option name.")
        return {prop_type: {"name": value}}
    elif prop_type == "multi_select":
        names = _as_string_list(value, "multi_select")
        return {"multi_select": [{"name": n} for n in names]}
    elif prop_type == "date":
        return {"date": _normalize_date_input(value)}
    elif prop_type in ("relation", "people"):
        ids = _as_string_list(value, prop_type)
        return {prop_type: [{"id": i} for i in ids]}
    elif prop_type == "checkbox":
        if not isinstance(value, bool):
            raise _invalid("Checkbox properties require boolean values.")
        return {"checkbox": value}
    elif prop_type == "number":
        # bool is an int subclass
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise _invalid("Number properties require numeric values.")
        return {"number": value}
    elif prop_type in ("url", "email", "phone_number"):
        if value is not None and not isinstance(value, str):
            raise _invalid(f"{prop_type} properties require string or null values.")
        return {prop_type: value}

    # Fallback for types without a plain-value mapping
    text = value if isinstance(value, str) else json.dumps(value)
    return {"rich_text": _to_rich_text(text)}


def _find_schema_property(
    name: str,
    schema: dict[str, SchemaProperty],
) -> Optional[tuple[str, SchemaProperty]]:
    """Find a schema property by exact name, then case/whitespace-insensitively.

    Notion property names may carry trailing spaces (e.g. "Paid on ").
    """
    if name in schema:
        return name, schema[name]
    wanted = name.strip().lower()
    for schema_name, prop in schema.items():
        if schema_name.strip().lower() == wanted:
            return schema_name, prop
    return None


def build_properties_payload(
    patch: dict[str, Any],
    schema: dict[str, SchemaProperty],
) -> dict[str, dict]:
    """Build a Notion properties payload from a {name: value} patch.

    Raw Notion payloads pass through untouched; plain values are converted
    by the schema's property type.

    Raises:
        UnknownPropertyError: a name is not in the schema.
        CliError: invalid_input when a value doesn't fit its type.
    """
    payload: dict[str, dict] = {}
    for name, value in patch.items():
        found = _find_schema_property(name, schema)
        if found is None:
            raise UnknownPropertyError(name)
        schema_name, prop = found

        if is_raw_property_payload(value):
            payload[schema_name] = value
        else:
            payload[schema_name] = build_property_value(prop.type, value)
    return payload


# =============================================================================
# Normalization (Notion property value -> plain JSON)
# =============================================================================

def read_plain_text(rich_text: Any) -> str:
    if not isinstance(rich_text, list):
        return ""
    parts = []
    for item in rich_text:
        if not isinstance(item, dict):
            continue
        plain = item.get("plain_text")
        if isinstance(plain, str):
            parts.append(plain)
        else:
            parts.append((item.get("text") or {}).get("content") or "")
    return "".join(parts)


def _names(items: Any, key: str) -> list:
    return [item[key] for item in (items or []) if isinstance(item, dict) and item.get(key)]


def normalize_property_value(prop: dict) -> Any:
    """Flatten a Notion property value to plain JSON."""
    prop_type = prop.get("type")
    if not isinstance(prop_type, str):
        return prop

    if prop_type in ("title", "rich_text"):
        return read_plain_text(prop.get(prop_type))
    elif prop_type in ("status", "select"):
        option = prop.get(prop_type)
        return option.get("name") if isinstance(option, dict) else None
    elif prop_type == "multi_select":
        return _names(prop.get("multi_select"), "name")
    elif prop_type in ("relation", "people"):
        return _names(prop.get(prop_type), "id")
    elif prop_type == "files":
        files = []
        for f in prop.get("files") or []:
            kind = f.get("type")
            url = (f.get(kind) or {}).get("url") if kind in ("external", "file") else None
            files.append({"name": f.get("name"), "type": kind, "url": url})
        return files
    elif prop_type == "formula":
        formula = prop.get("formula") or {}
        return formula.get(formula.get("type"), formula) if formula.get("type") else formula
    elif prop_type == "rollup":
        rollup = prop.get("rollup") or {}
        rollup_type = rollup.get("type")
        if rollup_type == "array":
            return [normalize_property_value(item) for item in rollup.get("array") or []]
        return rollup.get(rollup_type) if rollup_type else rollup

    return prop.get(prop_type)


def normalize_properties(properties: dict) -> dict:
    return {
        name: normalize_property_value(prop)
        for name, prop in properties.items()
        if isinstance(prop, dict)
    }
