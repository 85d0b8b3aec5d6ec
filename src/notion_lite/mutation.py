"""Idempotent execution of mutating commands.

execute_mutation wraps a unit of work with: idempotency reservation,
execution, completion (or release on failure) and an audit event. Duplicate
attempts of the same request within the key's time bucket replay the stored
response instead of executing again.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .audit import append_audit_log
from .errors import CliError, ErrorCode
from .idempotency import (
    IdempotencyStore,
    Reservation,
    ReservationKind,
    build_idempotency_key,
    hash_object,
)

logger = logging.getLogger("notion-lite")

T = TypeVar("T")

POLL_INTERVAL = 0.05  # seconds between lookups of another owner's reservation
PENDING_DEADLINE = 15.0  # seconds to wait for another owner before giving up

AuditSink = Callable[[dict], Any]


async def poll_until(
    check: Callable[[], Any],
    *,
    interval: float,
    deadline: float,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Optional[T]:
    """Call check every interval seconds until it returns a value.

    check may be a plain function or a coroutine function. Yields to the
    event loop between calls. Returns None when deadline seconds elapse
    without a value.
    """
    expires_at = clock() + deadline
    while clock() < expires_at:
        await sleep(interval)
        value = check()
        if asyncio.iscoroutine(value):
            value = await value
        if value is not None:
            return value
    return None


async def _safe_audit(audit: AuditSink, event: dict) -> None:
    try:
        result = audit(event)
        if asyncio.iscoroutine(result):
            await result
    except Exception as e:
        # Audit failures never change the command's outcome
        logger.debug(f"Audit log write failed: {type(e).__name__}: {e}")


async def _await_other_owner(
    store: IdempotencyStore,
    idempotency_key: str,
    command_name: str,
    request_hash: str,
    poll_interval: float,
    deadline: float,
) -> Reservation:
    """Wait for a concurrent owner's reservation to resolve."""

    async def check() -> Optional[Reservation]:
        current = await asyncio.to_thread(
            store.lookup, idempotency_key, command_name, request_hash
        )
        if current.kind is ReservationKind.PENDING:
            return None
        if current.kind is ReservationKind.MISS:
            # Owner released after a failure; try to take over
            claimed = await asyncio.to_thread(
                store.reserve, idempotency_key, command_name, request_hash
            )
            return None if claimed.kind is ReservationKind.PENDING else claimed
        return current

    resolved = await poll_until(check, interval=poll_interval, deadline=deadline)
    if resolved is None:
        resolved = await asyncio.to_thread(
            store.reserve, idempotency_key, command_name, request_hash
        )
        if resolved.kind is ReservationKind.PENDING:
            raise CliError(
                ErrorCode.RETRYABLE_UPSTREAM,
                "A matching mutation is already in progress. Retry this request shortly.",
                retryable=True,
                details={"command": command_name, "idempotency_key": idempotency_key},
            )
    return resolved


async def execute_mutation(
    *,
    store: IdempotencyStore,
    command_name: str,
    request_id: str,
    request_shape: Any,
    run: Callable[[], Awaitable[T]],
    target_ids: Optional[list[str]] = None,
    entity: Optional[str] = None,
    audit: AuditSink = append_audit_log,
    poll_interval: float = POLL_INTERVAL,
    deadline: float = PENDING_DEADLINE,
    now: Optional[float] = None,
) -> T:
    """Run a mutation at most once per (command, request shape, time bucket).

    Args:
        store: Idempotency record store.
        command_name: Command identifier, e.g. "pages.update".
        request_id: Id of this invocation (for the audit trail).
        request_shape: JSON-serializable description of the request.
        run: The unit of work; its result must be JSON-serializable.
        target_ids: Ids the mutation touches (for the audit trail).
        entity: Optional entity kind for the audit trail.
        audit: Audit sink; exceptions from it are discarded.
        poll_interval: Seconds between lookups while another owner runs.
        deadline: Seconds to wait on another owner before failing.
        now: Clock override for the key's time bucket.

    Returns:
        The unit of work's result, or the stored result on replay.

    Raises:
        CliError: conflict on an idempotency hash collision,
            retryable_upstream if another owner is still running at the
            deadline, or whatever the unit of work raised.
    """
    request_hash = hash_object(request_shape)
    idempotency_key = build_idempotency_key(command_name, request_shape, now=now)
    owns_reservation = False

    def audit_event(ok: bool) -> dict:
        return {
            "command": command_name,
            "entity": entity,
            "request_id": request_id,
            "idempotency_key": idempotency_key,
            "target_ids": target_ids or [],
            "ok": ok,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    try:
        reservation = await asyncio.to_thread(
            store.reserve, idempotency_key, command_name, request_hash
        )

        if reservation.kind is ReservationKind.PENDING:
            logger.info(f"{command_name}: waiting on in-flight duplicate {idempotency_key}")
            reservation = await _await_other_owner(
                store, idempotency_key, command_name, request_hash, poll_interval, deadline
            )

        if reservation.kind is ReservationKind.CONFLICT:
            raise CliError(
                ErrorCode.CONFLICT,
                "Internal idempotency key collision.",
                details={
                    "reason": "idempotency_key_collision",
                    "command": command_name,
                    "stored_hash": reservation.stored_hash,
                    "incoming_hash": request_hash,
                },
            )

        if reservation.kind is ReservationKind.REPLAY:
            logger.info(f"{command_name}: replayed stored response for {idempotency_key}")
            await _safe_audit(audit, audit_event(ok=True))
            return reservation.response

        owns_reservation = True
        response = await run()
        await asyncio.to_thread(
            store.complete, idempotency_key, command_name, request_hash, response
        )
        logger.info(f"{command_name}: completed {idempotency_key}")

        await _safe_audit(audit, audit_event(ok=True))
        return response

    except BaseException:
        # Inline, not on a worker thread: cancellation must not skip the release
        if owns_reservation:
            store.release(idempotency_key, command_name, request_hash)
        await _safe_audit(audit, audit_event(ok=False))
        raise
