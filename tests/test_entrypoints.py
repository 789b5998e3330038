import json

import pytest
from boto3.dynamodb.types import TypeSerializer

from tournament_sync import entrypoints
from tournament_sync.config import EngineConfig

_serializer = TypeSerializer()


def make_config(**overrides) -> EngineConfig:
    values = {
        "table_name": "tournament-sync-test",
        "aws_region": "us-east-1",
        "verification_max_attempts": 5,
        "best_time_max_attempts": 3,
        "history_rebuild_enabled": True,
        "best_time_sync_enabled": True,
        "log_level": "INFO",
    }
    values.update(overrides)
    return EngineConfig(**values)


@pytest.fixture
def wired(monkeypatch, storage):
    monkeypatch.setattr(entrypoints, "read_engine_config", make_config)
    monkeypatch.setattr(entrypoints, "get_storage", lambda config: storage)
    yield storage
    entrypoints.register_authorizer(None)


def insert_record(collection: str, doc_id: str, data: dict) -> dict:
    image = {"pk": collection, "sk": doc_id, **data}
    return {
        "eventID": doc_id,
        "eventName": "INSERT",
        "dynamodb": {
            "Keys": {
                "pk": _serializer.serialize(collection),
                "sk": _serializer.serialize(doc_id),
            },
            "NewImage": {key: _serializer.serialize(value) for key, value in image.items()},
        },
    }


def test_build_triggers_respects_feature_flags(storage):
    triggers = entrypoints.build_triggers(
        storage, make_config(best_time_sync_enabled=False, history_rebuild_enabled=False)
    )

    assert triggers._best_times is None
    assert triggers._history is None


def test_stream_handler_processes_supported_records(wired, table):
    table.seed("users", "u1", {"global_id": "G1"}, version=1)
    event = {
        "Records": [
            insert_record(
                "records",
                "r1",
                {"tournament_id": "t-1", "participant_global_id": "G1", "code": "Cycle", "best_time": 9},
            ),
            {"eventID": "junk", "eventName": "INSERT"},
        ]
    }

    assert entrypoints.stream_handler(event) == {"handled": 1}
    assert table.doc("users", "u1")["best_times"]["Cycle"]["time"] == 9
    assert table.doc("user_tournament_history", "G1")["recordCount"] == 1


def test_verification_handler_rejects_invalid_json(wired):
    response = entrypoints.verification_handler({"body": "{not json", "headers": {}})

    assert response["statusCode"] == 400
    assert json.loads(response["body"]) == {"error": "Request body must be JSON"}


def test_verification_handler_without_authorizer_is_unauthorized(wired):
    response = entrypoints.verification_handler(
        {"body": "{}", "headers": {"Authorization": "Bearer token"}}
    )

    assert response["statusCode"] == 401


def test_verification_handler_runs_registered_authorizer(wired, table):
    async def authorize(token):
        return "principal-1" if token == "token" else None

    entrypoints.register_authorizer(authorize)
    table.seed(
        "users",
        "user-x",
        {"global_id": "X", "registration_records": [{"tournament_id": "t-1", "events": []}]},
        version=1,
    )
    table.seed(
        "registrations",
        "reg-x",
        {"tournament_id": "t-1", "user_global_id": "X", "events_registered": []},
        version=1,
    )
    table.seed(
        "teams",
        "team-b",
        {
            "tournament_id": "t-1",
            "leader_id": "L",
            "members": [{"global_id": "X", "verified": False}],
            "events": ["Double"],
        },
        version=1,
    )
    body = {
        "tournamentId": "t-1",
        "teamId": "team-b",
        "memberId": "X",
        "registrationId": "reg-x",
    }

    response = entrypoints.verification_handler(
        {"body": json.dumps(body), "headers": {"Authorization": "Bearer token"}}
    )

    assert response["statusCode"] == 200
    payload = json.loads(response["body"])
    assert payload["success"] is True
    assert payload["registeredEvents"] == ["Double"]
    assert table.doc("teams", "team-b")["members"][0]["verified"] is True
