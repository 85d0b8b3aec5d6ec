"""JSON envelopes: one terminal outcome per command invocation.

Success goes to stdout as {ok: true, data, meta}; failure goes to stderr as
{ok: false, error, meta}. The exit code follows the error code.
"""

import json
import logging
import sys
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TextIO

from .errors import EXIT_CODE_BY_ERROR, CliError, UpstreamError, to_cli_error

logger = logging.getLogger("notion-lite")


@dataclass
class ActionResult:
    data: Any
    pagination: Optional[dict] = None


Action = Callable[[str], Awaitable[ActionResult]]


def create_request_id() -> str:
    return str(uuid.uuid4())


def success_envelope(data: Any, request_id: str, pagination: Optional[dict] = None) -> dict:
    meta: dict = {"request_id": request_id}
    if pagination is not None:
        meta["pagination"] = pagination
    return {"ok": True, "data": data, "meta": meta}


def error_envelope(error: BaseException, request_id: str) -> tuple[dict, int]:
    """Build the error envelope and exit code for any exception."""
    cli_error = to_cli_error(error)
    envelope = {
        "ok": False,
        "error": cli_error.to_dict(),
        "meta": {"request_id": request_id},
    }
    return envelope, EXIT_CODE_BY_ERROR[cli_error.code]


def render_envelope(envelope: dict, pretty: bool = False) -> str:
    if pretty:
        return json.dumps(envelope, indent=2, ensure_ascii=False)
    return json.dumps(envelope, ensure_ascii=False)


async def execute_action(action: Action) -> tuple[dict, int]:
    """Run an action and return (envelope, exit_code). Never raises Exception."""
    request_id = create_request_id()
    try:
        result = await action(request_id)
    except Exception as e:
        if not isinstance(e, (CliError, UpstreamError)):
            logger.exception(f"Unexpected error in request {request_id}")
        envelope, exit_code = error_envelope(e, request_id)
        return envelope, exit_code
    return success_envelope(result.data, request_id, result.pagination), 0


def print_envelope(envelope: dict, pretty: bool, stream: TextIO) -> None:
    stream.write(render_envelope(envelope, pretty) + "\n")
    stream.flush()


async def run_action(
    action: Action,
    pretty: bool = False,
    stdout: Optional[TextIO] = None,
    stderr: Optional[TextIO] = None,
) -> int:
    """Run an action, print its envelope and return the process exit code."""
    envelope, exit_code = await execute_action(action)
    if envelope["ok"]:
        print_envelope(envelope, pretty, stdout or sys.stdout)
    else:
        print_envelope(envelope, pretty, stderr or sys.stderr)
    return exit_code
