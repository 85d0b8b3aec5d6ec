"""Best-effort optimistic concurrency for single-page mutations."""

import logging
from typing import Awaitable, Callable

from .errors import CliError, ErrorCode, StatusClass, UpstreamError
from .transport import NotionTransport

logger = logging.getLogger("notion-lite")

# One initial attempt plus one reconciliation pass
PAGE_MUTATION_ATTEMPTS = 2


def page_version_fingerprint(page_id: str, last_edited_time: str) -> str:
    return f"{page_id}:{last_edited_time}"


def as_page(value: dict) -> dict:
    if not isinstance(value, dict) or value.get("object") != "page":
        raise CliError(ErrorCode.INVALID_INPUT, "Expected a page object.")
    return value


async def with_page_mutation_retry(
    transport: NotionTransport,
    page_id: str,
    apply: Callable[[dict], Awaitable[dict]],
) -> dict:
    """Read the page, build and submit a mutation, re-reading once on conflict.

    Args:
        transport: Notion transport.
        page_id: Page being mutated.
        apply: Builds and submits the mutation from the freshly read page.

    Returns:
        Whatever apply returned (normally the updated page).

    Raises:
        CliError: conflict if the upstream reports a version conflict on
            every attempt.
    """
    last_conflict = None

    for attempt in range(1, PAGE_MUTATION_ATTEMPTS + 1):
        current_page = as_page(await transport.retrieve_page(page_id))
        try:
            return await apply(current_page)
        except UpstreamError as e:
            if e.status_class is not StatusClass.CONFLICT:
                raise
            last_conflict = e
            fingerprint = page_version_fingerprint(
                page_id, current_page.get("last_edited_time") or ""
            )
            logger.info(
                f"Version conflict on {fingerprint} (attempt {attempt}/{PAGE_MUTATION_ATTEMPTS})"
            )

    raise CliError(
        ErrorCode.CONFLICT,
        "Could not apply mutation due to concurrent updates. Re-read the page and retry.",
        details=last_conflict.to_details() if last_conflict else None,
    )
