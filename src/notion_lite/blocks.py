"""Block reads, selector-based addressing and structural block editing.

Selectors address blocks among the direct children of one scope (a page or
block):

    {"where": {"type": "to_do", "text_contains": "ship"}, "nth": 2, "from": "end"}

The editor inserts content at a sibling position (chunked, order-preserving)
and replaces a contiguous sibling range. A range is fingerprinted by
(id, last_edited_time) when selected and re-verified just before deletion;
any divergence aborts with a conflict instead of deleting.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, ValidationError

from .errors import CliError, ErrorCode
from .transport import MAX_PAGE_SIZE, NotionTransport
from .views import extract_block_text, to_compact_block

logger = logging.getLogger("notion-lite")

# Notion accepts at most 100 children per append call
APPEND_CHUNK_SIZE = 100


# =============================================================================
# Selectors
# =============================================================================

class BlockPredicate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Optional[str] = None
    text_contains: Optional[str] = None

    def matches(self, block: dict) -> bool:
        if self.type is not None and block.get("type") != self.type:
            return False
        if self.text_contains is not None:
            text = extract_block_text(block)
            if text is None or self.text_contains not in text:
                return False
        return True


class Selector(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    where: BlockPredicate = Field(default_factory=BlockPredicate)
    nth: Optional[PositiveInt] = None
    from_: Literal["start", "end"] = Field("start", alias="from")

    @classmethod
    def parse(cls, raw: Any, label: str = "selector") -> "Selector":
        """Validate a selector from decoded JSON, raising invalid_input."""
        if isinstance(raw, Selector):
            return raw
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            raise CliError(
                ErrorCode.INVALID_INPUT,
                f"Invalid {label}.",
                details=e.errors(include_url=False, include_context=False),
            )


@dataclass
class Resolution:
    """Outcome of evaluating a selector against a sibling list."""
    match_count: int
    ambiguous: bool
    index: Optional[int]  # position of the selected block among siblings


def resolve_selector(siblings: list[dict], selector: Selector) -> Resolution:
    """Evaluate selector against siblings without any I/O.

    Raises:
        CliError: not_found when nth is beyond the number of matches.
    """
    matches = [i for i, block in enumerate(siblings) if selector.where.matches(block)]

    if selector.nth is not None:
        if selector.nth > len(matches):
            raise CliError(
                ErrorCode.NOT_FOUND,
                f"Selector matched {len(matches)} block(s); nth={selector.nth} is out of range.",
                details={"match_count": len(matches), "nth": selector.nth},
            )
        ordered = matches if selector.from_ == "start" else list(reversed(matches))
        return Resolution(len(matches), False, ordered[selector.nth - 1])

    if len(matches) == 1:
        return Resolution(1, False, matches[0])
    return Resolution(len(matches), len(matches) > 1, None)


def require_unique(resolution: Resolution, label: str) -> int:
    """The selected sibling index, or a CliError when there isn't exactly one."""
    if resolution.ambiguous:
        raise CliError(
            ErrorCode.INVALID_INPUT,
            f"{label} matched {resolution.match_count} blocks. Add nth to disambiguate.",
            details={"match_count": resolution.match_count},
        )
    if resolution.index is None:
        raise CliError(ErrorCode.NOT_FOUND, f"{label} matched no blocks.")
    return resolution.index


def resolve_in_listing(
    siblings: list[dict], truncated: bool, selector: Selector, label: str
) -> int:
    """Resolve selector to one sibling index for a mutation.

    When the listing was cut off at max_blocks, only a first-N match counted
    from the start can be trusted; anything that depends on the full list
    (uniqueness, counting from the end, or a miss) is rejected.
    """
    if truncated:
        truncation_error = CliError(
            ErrorCode.INVALID_INPUT,
            f"{label} was evaluated against only the first {len(siblings)} blocks. "
            "Raise --max-blocks or select with nth counted from the start.",
            details={"max_blocks": len(siblings), "truncated": True},
        )
        if selector.nth is None or selector.from_ == "end":
            raise truncation_error
        try:
            resolution = resolve_selector(siblings, selector)
        except CliError as e:
            if e.code is ErrorCode.NOT_FOUND:
                raise truncation_error
            raise
        return require_unique(resolution, label)
    return require_unique(resolve_selector(siblings, selector), label)


# =============================================================================
# Reads
# =============================================================================

async def list_sibling_blocks(
    transport: NotionTransport,
    scope_id: str,
    max_blocks: int,
) -> tuple[list[dict], bool]:
    """Direct children of scope_id, capped at max_blocks.

    Returns:
        Tuple of (blocks, truncated) where truncated is True when the cap
        was hit and more children exist.
    """
    blocks: list[dict] = []
    cursor = None

    while len(blocks) < max_blocks:
        response = await transport.list_block_children(
            scope_id,
            start_cursor=cursor,
            page_size=min(MAX_PAGE_SIZE, max_blocks - len(blocks)),
        )
        blocks.extend(b for b in response.get("results") or [] if isinstance(b, dict))
        if not response.get("has_more") or not response.get("next_cursor"):
            return blocks[:max_blocks], len(blocks) > max_blocks
        cursor = response["next_cursor"]

    return blocks[:max_blocks], True


async def _collect_children(
    transport: NotionTransport,
    block_id: str,
    depth: int,
    max_blocks: int,
    view: str,
    state: dict,
) -> list[dict]:
    results = []
    cursor = None

    while state["count"] < max_blocks:
        response = await transport.list_block_children(block_id, start_cursor=cursor)
        for block in response.get("results") or []:
            if state["count"] >= max_blocks:
                state["truncated"] = True
                break
            if not isinstance(block, dict):
                continue
            state["count"] += 1
            rendered = dict(block) if view == "full" else to_compact_block(block)
            if depth > 1 and block.get("has_children") and isinstance(block.get("id"), str):
                rendered["children"] = await _collect_children(
                    transport, block["id"], depth - 1, max_blocks, view, state
                )
            results.append(rendered)

        if state["count"] >= max_blocks:
            if response.get("has_more"):
                state["truncated"] = True
            break
        if not response.get("has_more") or not response.get("next_cursor"):
            break
        cursor = response["next_cursor"]

    return results


async def get_blocks(
    transport: NotionTransport,
    block_id: str,
    max_blocks: int,
    depth: int = 1,
    view: str = "compact",
) -> dict:
    """Read a page's (or block's) children, recursing up to depth levels."""
    state = {"count": 0, "truncated": False}
    blocks = await _collect_children(transport, block_id, depth, max_blocks, view, state)
    return {
        "id": block_id,
        "blocks": blocks,
        "returned_blocks": state["count"],
        "truncated": state["truncated"],
        "max_blocks": max_blocks,
        "depth": depth,
    }


async def select_blocks(
    transport: NotionTransport,
    scope_id: str,
    selector: Selector,
    max_blocks: int,
) -> dict:
    """Resolve a selector against scope_id's direct children. Never mutates.

    Returns:
        {scope_id, match_count, ambiguous, selected, scanned, truncated};
        selected is None when nothing or more than one block matched
        without nth.
    """
    siblings, truncated = await list_sibling_blocks(transport, scope_id, max_blocks)
    resolution = resolve_selector(siblings, selector)

    selected = None
    if resolution.index is not None:
        selected = to_compact_block(siblings[resolution.index])
        selected["index"] = resolution.index
        selected["last_edited_time"] = siblings[resolution.index].get("last_edited_time")

    return {
        "scope_id": scope_id,
        "match_count": resolution.match_count,
        "ambiguous": resolution.ambiguous,
        "selected": selected,
        "scanned": len(siblings),
        "truncated": truncated,
    }


# =============================================================================
# Insertion
# =============================================================================

@dataclass(frozen=True)
class InsertPosition:
    kind: Literal["start", "end", "after_block"]
    after_id: Optional[str] = None

    @classmethod
    def start(cls) -> "InsertPosition":
        return cls("start")

    @classmethod
    def end(cls) -> "InsertPosition":
        return cls("end")

    @classmethod
    def after(cls, block_id: str) -> "InsertPosition":
        if not block_id:
            raise CliError(ErrorCode.INVALID_INPUT, "after position requires a block id.")
        return cls("after_block", block_id)

    def to_api(self) -> dict:
        if self.kind == "after_block":
            return {"type": "after_block", "after_block": {"id": self.after_id}}
        return {"type": self.kind}

    def to_dict(self) -> dict:
        if self.kind == "after_block":
            return {"type": "after_block", "after_id": self.after_id}
        return {"type": self.kind}


def chunk_blocks(blocks: list[dict], size: int = APPEND_CHUNK_SIZE) -> list[list[dict]]:
    return [blocks[i:i + size] for i in range(0, len(blocks), size)]


@dataclass
class _InsertAccumulator:
    anchor: InsertPosition
    inserted_ids: list[str] = field(default_factory=list)


async def _append_chunk(
    transport: NotionTransport,
    parent_id: str,
    acc: _InsertAccumulator,
    chunk: list[dict],
) -> _InsertAccumulator:
    response = await transport.append_block_children(parent_id, chunk, position=acc.anchor.to_api())
    new_ids = [b["id"] for b in response.get("results") or [] if isinstance(b, dict) and b.get("id")]
    if not new_ids:
        raise CliError(
            ErrorCode.INTERNAL_ERROR,
            "Append returned no block ids; cannot chain the next chunk.",
            details={"parent_id": parent_id, "inserted_ids": acc.inserted_ids},
        )
    return _InsertAccumulator(
        anchor=InsertPosition.after(new_ids[-1]),
        inserted_ids=acc.inserted_ids + new_ids,
    )


async def insert_blocks(
    transport: NotionTransport,
    parent_id: str,
    blocks: list[dict],
    position: InsertPosition = InsertPosition("end"),
    dry_run: bool = False,
) -> dict:
    """Insert blocks under parent_id at position, preserving order.

    The first chunk goes to position; every later chunk is anchored after the
    last id the previous append returned.

    Returns:
        {id, inserted_ids, inserted_count}, or the plan when dry_run.
    """
    if not blocks:
        raise CliError(ErrorCode.INVALID_INPUT, "No blocks to insert.")

    chunks = chunk_blocks(blocks)
    if dry_run:
        return {
            "dry_run": True,
            "id": parent_id,
            "position": position.to_dict(),
            "would_insert_count": len(blocks),
            "chunk_count": len(chunks),
            "block_types": [b.get("type", "unknown") for b in blocks],
        }

    acc = _InsertAccumulator(anchor=position)
    for chunk in chunks:
        acc = await _append_chunk(transport, parent_id, acc, chunk)

    logger.info(f"Inserted {len(acc.inserted_ids)} block(s) under {parent_id} in {len(chunks)} call(s)")
    return {
        "id": parent_id,
        "inserted_ids": acc.inserted_ids,
        "inserted_count": len(acc.inserted_ids),
    }


# =============================================================================
# Range replacement
# =============================================================================

@dataclass(frozen=True)
class BlockFingerprint:
    id: str
    last_edited_time: Optional[str]

    @classmethod
    def of(cls, block: dict) -> "BlockFingerprint":
        return cls(str(block.get("id")), block.get("last_edited_time"))

    def to_dict(self) -> dict:
        return {"id": self.id, "last_edited_time": self.last_edited_time}


@dataclass(frozen=True)
class BlockRange:
    scope_id: str
    start_index: int  # sibling index of the first block in the range
    fingerprints: tuple[BlockFingerprint, ...]
    inclusive_start: bool = True
    inclusive_end: bool = True

    @property
    def ids(self) -> list[str]:
        return [fp.id for fp in self.fingerprints]


def build_block_range(
    scope_id: str,
    siblings: list[dict],
    start_index: int,
    end_index: int,
    inclusive_start: bool,
    inclusive_end: bool,
) -> BlockRange:
    """Form the sibling range between two resolved selector positions."""
    if end_index < start_index:
        raise CliError(
            ErrorCode.INVALID_INPUT,
            "End selector resolves before the start selector.",
            details={"start_index": start_index, "end_index": end_index},
        )
    first = start_index if inclusive_start else start_index + 1
    last = end_index if inclusive_end else end_index - 1
    fingerprints = tuple(BlockFingerprint.of(b) for b in siblings[first:last + 1])
    return BlockRange(scope_id, first, fingerprints, inclusive_start, inclusive_end)


def verify_block_range(block_range: BlockRange, siblings: list[dict]) -> Optional[list[dict]]:
    """Compare a range's fingerprints against a fresh sibling list.

    Returns:
        None when unchanged, otherwise the fingerprints now found where the
        range was (empty when its first block is gone).
    """
    if not block_range.fingerprints:
        return None
    first_id = block_range.fingerprints[0].id
    start = next((i for i, b in enumerate(siblings) if b.get("id") == first_id), None)
    if start is None:
        return []
    current = tuple(
        BlockFingerprint.of(b)
        for b in siblings[start:start + len(block_range.fingerprints)]
    )
    if current == block_range.fingerprints:
        return None
    return [fp.to_dict() for fp in current]


async def replace_block_range(
    transport: NotionTransport,
    scope_id: str,
    start_selector: Selector,
    end_selector: Selector,
    blocks: list[dict],
    inclusive_start: bool = True,
    inclusive_end: bool = True,
    dry_run: bool = False,
    max_blocks: int = 5000,
) -> dict:
    """Replace the sibling range between two selectors with new blocks.

    Order of operations: select and fingerprint the range, insert the
    replacement right before it, re-list and verify the fingerprints, then
    delete the original blocks one by one. A fingerprint mismatch raises a
    conflict before any delete; the inserted replacement stays in place and
    its ids are reported in the error details.

    Returns:
        {scope_id, inserted_ids, delete_ids}, or the plan when dry_run.
    """
    if not blocks:
        raise CliError(ErrorCode.INVALID_INPUT, "No replacement blocks given.")

    siblings, truncated = await list_sibling_blocks(transport, scope_id, max_blocks)
    start_index = resolve_in_listing(siblings, truncated, start_selector, "Start selector")
    end_index = resolve_in_listing(siblings, truncated, end_selector, "End selector")
    block_range = build_block_range(
        scope_id, siblings, start_index, end_index, inclusive_start, inclusive_end
    )

    if block_range.start_index == 0:
        position = InsertPosition.start()
    else:
        position = InsertPosition.after(str(siblings[block_range.start_index - 1].get("id")))

    if dry_run:
        return {
            "dry_run": True,
            "scope_id": scope_id,
            "position": position.to_dict(),
            "delete_ids": block_range.ids,
            "would_insert_count": len(blocks),
        }

    inserted = await insert_blocks(transport, scope_id, blocks, position)
    inserted_ids = inserted["inserted_ids"]

    fresh, _ = await list_sibling_blocks(transport, scope_id, max_blocks + len(inserted_ids))
    actual = verify_block_range(block_range, fresh)
    if actual is not None:
        logger.warning(
            f"Block range under {scope_id} changed since selection; "
            f"{len(inserted_ids)} inserted block(s) left in place, nothing deleted"
        )
        raise CliError(
            ErrorCode.CONFLICT,
            "Block range changed since it was selected. Replacement content was "
            "inserted but no original blocks were deleted; re-read and retry.",
            details={
                "scope_id": scope_id,
                "inserted_ids": inserted_ids,
                "expected": [fp.to_dict() for fp in block_range.fingerprints],
                "actual": actual,
            },
        )

    for block_id in block_range.ids:
        await transport.delete_block(block_id)

    return {
        "scope_id": scope_id,
        "inserted_ids": inserted_ids,
        "delete_ids": block_range.ids,
    }
