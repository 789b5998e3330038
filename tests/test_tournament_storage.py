from decimal import Decimal

import pytest

from tournament_sync.storage import (
    DocumentKey,
    TournamentStorage,
    array_contains,
    from_dynamo,
    to_dynamo,
    where,
)
from tournament_sync.validation import ConditionFailedError, TransactionConflictError


def test_ensure_table_raises_when_missing():
    storage = TournamentStorage(None)
    with pytest.raises(RuntimeError):
        storage.ensure_table()


def test_to_dynamo_converts_floats_recursively():
    converted = to_dynamo({"time": 5.9, "tries": [6.1, 7], "ok": True, "none": None})
    assert converted == {
        "time": Decimal("5.9"),
        "tries": [Decimal("6.1"), 7],
        "ok": True,
        "none": None,
    }


def test_from_dynamo_keeps_integers_and_floats_apart():
    assert from_dynamo(Decimal("3")) == 3
    assert isinstance(from_dynamo(Decimal("3")), int)
    assert from_dynamo(Decimal("6.0")) == 6.0
    assert isinstance(from_dynamo(Decimal("6.0")), float)
    assert from_dynamo({"a": [Decimal("1.5")]}) == {"a": [1.5]}


@pytest.mark.asyncio
async def test_get_returns_document_without_key_attributes(storage, table):
    table.seed("teams", "team-1", {"tournament_id": "t-1"}, version=4)

    document = await storage.get("teams", "team-1")

    assert document is not None
    assert document.key == DocumentKey("teams", "team-1")
    assert document.data == {"tournament_id": "t-1"}
    assert document.version == 4


@pytest.mark.asyncio
async def test_get_missing_returns_none(storage):
    assert await storage.get("teams", "nope") is None


@pytest.mark.asyncio
async def test_query_pages_through_results_and_applies_filters(storage, table):
    for index in range(5):
        table.seed(
            "records",
            f"r{index}",
            {
                "tournament_id": "t-1" if index % 2 == 0 else "t-2",
                "member_global_ids": ["A", f"M{index}"],
            },
        )
    table.seed("prelim_records", "p0", {"tournament_id": "t-1"})

    matches = await storage.query("records", where("tournament_id", "t-1"))
    assert [doc.id for doc in matches] == ["r0", "r2", "r4"]

    members = await storage.query("records", array_contains("member_global_ids", "M3"))
    assert [doc.id for doc in members] == ["r3"]

    composite = await storage.query(
        "records",
        where("tournament_id", "t-1"),
        array_contains("member_global_ids", "A"),
    )
    assert [doc.id for doc in composite] == ["r0", "r2", "r4"]


@pytest.mark.asyncio
async def test_find_one_stops_at_first_match(storage, table):
    table.seed("users", "u1", {"global_id": "G1"})
    table.seed("users", "u2", {"global_id": "G2"})
    table.seed("users", "u3", {"global_id": "G2"})

    document = await storage.find_one("users", where("global_id", "G2"))

    assert document is not None
    assert document.id == "u2"


@pytest.mark.asyncio
async def test_update_merges_fields_and_bumps_version(storage, table):
    table.seed("users", "u1", {"global_id": "G1", "name": "Ann"})

    await storage.update("users", "u1", {"best_times": {"3-3-3": {"time": 5.5}}})
    await storage.update("users", "u1", {"name": "Anne"})

    document = await storage.get("users", "u1")
    assert document is not None
    assert document.data["global_id"] == "G1"
    assert document.data["name"] == "Anne"
    assert document.data["best_times"] == {"3-3-3": {"time": 5.5}}
    assert document.version == 2


@pytest.mark.asyncio
async def test_update_creates_missing_document(storage):
    await storage.update("user_tournament_history", "G1", {"globalId": "G1"})

    document = await storage.get("user_tournament_history", "G1")
    assert document is not None
    assert document.data == {"globalId": "G1"}
    assert document.version == 1


@pytest.mark.asyncio
async def test_compare_and_update_rejects_stale_version(storage, table):
    table.seed("users", "u1", {"global_id": "G1"}, version=3)

    with pytest.raises(ConditionFailedError):
        await storage.compare_and_update(
            "users", "u1", {"name": "x"}, expected_version=2
        )
    await storage.compare_and_update("users", "u1", {"name": "x"}, expected_version=3)

    assert table.doc("users", "u1")["_version"] == 4


@pytest.mark.asyncio
async def test_compare_and_update_accepts_unversioned_document(storage, table):
    table.seed("users", "u1", {"global_id": "G1"})

    await storage.compare_and_update(
        "users", "u1", {"name": "x"}, expected_version=None
    )

    assert table.doc("users", "u1")["name"] == "x"


@pytest.mark.asyncio
async def test_transaction_commits_buffered_writes(storage, table):
    table.seed("teams", "team-1", {"members": []}, version=1)
    table.seed("users", "u1", {"global_id": "G1"})

    transaction = storage.transaction()
    await transaction.get("teams", "team-1")
    await transaction.get("users", "u1")
    transaction.update("teams", "team-1", {"members": [{"global_id": "G1"}]})
    await transaction.commit()

    assert table.transaction_calls == 1
    assert table.doc("teams", "team-1")["members"] == [{"global_id": "G1"}]
    assert table.doc("teams", "team-1")["_version"] == 2


@pytest.mark.asyncio
async def test_transaction_without_writes_does_not_call_store(storage, table):
    table.seed("teams", "team-1", {"members": []})

    transaction = storage.transaction()
    await transaction.get("teams", "team-1")
    await transaction.commit()

    assert table.transaction_calls == 0


@pytest.mark.asyncio
async def test_transaction_requires_read_before_write(storage):
    transaction = storage.transaction()
    with pytest.raises(RuntimeError):
        transaction.update("teams", "team-1", {"members": []})


@pytest.mark.asyncio
async def test_transaction_fails_when_read_document_changes(storage, table):
    table.seed("teams", "team-1", {"members": []}, version=1)
    table.seed("users", "u1", {"global_id": "G1"}, version=1)

    transaction = storage.transaction()
    await transaction.get("teams", "team-1")
    await transaction.get("users", "u1")
    transaction.update("teams", "team-1", {"members": [{"global_id": "G1"}]})
    table.seed("users", "u1", {"global_id": "G1", "name": "changed"}, version=2)

    with pytest.raises(TransactionConflictError):
        await transaction.commit()
    assert table.doc("teams", "team-1")["members"] == []


@pytest.mark.asyncio
async def test_run_transaction_retries_after_conflict(storage, table):
    table.seed("counters", "c1", {"value": 0}, version=1)
    attempts: list[int] = []

    async def body(transaction):
        document = await transaction.get("counters", "c1")
        attempts.append(document.version)
        transaction.update("counters", "c1", {"value": document.data["value"] + 1})
        return document.data["value"] + 1

    def concurrent_write():
        table.seed("counters", "c1", {"value": 10}, version=5)

    table.before_transaction = concurrent_write

    result = await storage.run_transaction(body, max_attempts=3)

    assert attempts == [1, 5]
    assert result == 11
    assert table.doc("counters", "c1")["value"] == 11


@pytest.mark.asyncio
async def test_run_transaction_gives_up_after_max_attempts(storage, table):
    table.seed("counters", "c1", {"value": 0}, version=1)

    async def body(transaction):
        await transaction.get("counters", "c1")
        transaction.update("counters", "c1", {"value": 1})
        # Another writer sneaks in before every commit.
        table.seed("counters", "c1", {"value": 0}, version=table.doc("counters", "c1")["_version"] + 1)

    with pytest.raises(TransactionConflictError):
        await storage.run_transaction(body, max_attempts=2)
    assert table.transaction_calls == 2
