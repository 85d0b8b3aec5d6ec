"""Tests for canonical hashing, key derivation and the SQLite idempotency store."""

import sqlite3

import pytest

from notion_lite.errors import CliError, ErrorCode
from notion_lite.idempotency import (
    KEY_BUCKET_SECONDS,
    IdempotencyStore,
    ReservationKind,
    build_idempotency_key,
    hash_object,
    stable_stringify,
)


@pytest.fixture
def store(tmp_path):
    with IdempotencyStore(tmp_path / "idempotency.db") as s:
        yield s


class TestCanonicalHashing:
    def test_key_order_does_not_change_hash(self):
        a = {"id": "p1", "patch": {"Status": "Done", "Due": {"start": "2025-01-01", "end": None}}}
        b = {"patch": {"Due": {"end": None, "start": "2025-01-01"}, "Status": "Done"}, "id": "p1"}
        assert hash_object(a) == hash_object(b)

    def test_list_order_changes_hash(self):
        assert hash_object({"ids": [1, 2]}) != hash_object({"ids": [2, 1]})

    def test_stable_stringify_is_compact_and_sorted(self):
        assert stable_stringify({"b": 1, "a": [True, None]}) == '{"a":[true,null],"b":1}'

    def test_non_ascii_is_kept(self):
        assert stable_stringify({"t": "café"}) == '{"t":"café"}'


class TestBuildIdempotencyKey:
    def test_same_bucket_same_key(self):
        shape = {"id": "p1"}
        start = 1000 * KEY_BUCKET_SECONDS
        assert (build_idempotency_key("pages.update", shape, now=start)
                == build_idempotency_key("pages.update", shape, now=start + 119))

    def test_next_bucket_new_key(self):
        shape = {"id": "p1"}
        start = 1000 * KEY_BUCKET_SECONDS
        assert (build_idempotency_key("pages.update", shape, now=start)
                != build_idempotency_key("pages.update", shape, now=start + KEY_BUCKET_SECONDS))

    def test_command_name_is_part_of_key(self):
        shape = {"id": "p1"}
        assert (build_idempotency_key("pages.archive", shape, now=0)
                != build_idempotency_key("pages.unarchive", shape, now=0))

    def test_key_format(self):
        key = build_idempotency_key("blocks.insert", {"id": "b"}, now=KEY_BUCKET_SECONDS * 7)
        command, bucket, digest = key.split(":")
        assert command == "blocks.insert"
        assert bucket == "7"
        assert len(digest) == 64


class TestIdempotencyStore:
    def test_first_reserve_executes_then_pending(self, store):
        assert store.reserve("k", "cmd", "h").kind is ReservationKind.EXECUTE
        assert store.reserve("k", "cmd", "h").kind is ReservationKind.PENDING
        assert store.reserve("k", "cmd", "h").kind is ReservationKind.PENDING

    def test_different_hash_is_conflict(self, store):
        store.reserve("k", "cmd", "h1")
        result = store.reserve("k", "cmd", "h2")
        assert result.kind is ReservationKind.CONFLICT
        assert result.stored_hash == "h1"

    def test_same_key_different_command_is_independent(self, store):
        assert store.reserve("k", "a", "h").kind is ReservationKind.EXECUTE
        assert store.reserve("k", "b", "h").kind is ReservationKind.EXECUTE

    def test_complete_then_lookup_replays_exact_response(self, store):
        response = {"page": {"id": "p1", "title": "Ünïcode", "tags": ["a", "b"], "n": 1.5}}
        store.reserve("k", "cmd", "h")
        store.complete("k", "cmd", "h", response)

        looked_up = store.lookup("k", "cmd", "h")
        assert looked_up.kind is ReservationKind.REPLAY
        assert looked_up.response == response
        assert store.reserve("k", "cmd", "h").response == response

    def test_lookup_missing_is_miss(self, store):
        assert store.lookup("nope", "cmd", "h").kind is ReservationKind.MISS

    def test_complete_without_reservation_is_internal_error(self, store):
        with pytest.raises(CliError) as exc:
            store.complete("k", "cmd", "h", {"ok": True})
        assert exc.value.code is ErrorCode.INTERNAL_ERROR

    def test_complete_does_not_overwrite_completed_record(self, store):
        store.reserve("k", "cmd", "h")
        store.complete("k", "cmd", "h", {"first": True})

        with pytest.raises(CliError) as exc:
            store.complete("k", "cmd", "h", {"second": True})

        assert exc.value.code is ErrorCode.INTERNAL_ERROR
        assert store.lookup("k", "cmd", "h").response == {"first": True}

    def test_release_allows_new_execution(self, store):
        store.reserve("k", "cmd", "h")
        store.release("k", "cmd", "h")
        assert store.lookup("k", "cmd", "h").kind is ReservationKind.MISS
        assert store.reserve("k", "cmd", "h").kind is ReservationKind.EXECUTE

    def test_release_does_not_drop_completed_record(self, store):
        store.reserve("k", "cmd", "h")
        store.complete("k", "cmd", "h", {"done": 1})
        store.release("k", "cmd", "h")
        assert store.lookup("k", "cmd", "h").kind is ReservationKind.REPLAY

    def test_separate_connections_share_state(self, tmp_path):
        db_path = tmp_path / "shared.db"
        with IdempotencyStore(db_path) as first, IdempotencyStore(db_path) as second:
            assert first.reserve("k", "cmd", "h").kind is ReservationKind.EXECUTE
            assert second.reserve("k", "cmd", "h").kind is ReservationKind.PENDING
            first.complete("k", "cmd", "h", [1, 2, 3])
            assert second.reserve("k", "cmd", "h").response == [1, 2, 3]

    def test_corrupt_response_is_internal_error(self, tmp_path):
        db_path = tmp_path / "corrupt.db"
        with IdempotencyStore(db_path) as s:
            s.reserve("k", "cmd", "h")
        conn = sqlite3.connect(db_path)
        conn.execute("UPDATE idempotency_records SET response_json = '{not json'")
        conn.commit()
        conn.close()

        with IdempotencyStore(db_path) as s:
            with pytest.raises(CliError) as exc:
                s.lookup("k", "cmd", "h")
        assert exc.value.code is ErrorCode.INTERNAL_ERROR
