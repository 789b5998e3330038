from __future__ import annotations

import copy
import re
from collections.abc import Callable
from types import SimpleNamespace

import pytest
from boto3.dynamodb.types import TypeDeserializer
from botocore.exceptions import ClientError

from tournament_sync.storage import TournamentStorage, to_dynamo

_ASSIGNMENT = re.compile(r"(#\w+) = (:\w+)")
_deserializer = TypeDeserializer()


def _evaluate(condition, item: dict[str, object]) -> bool:
    expression = condition.get_expression()
    operator = expression["operator"]
    values = expression["values"]
    if operator == "AND":
        return all(_evaluate(value, item) for value in values)
    if operator == "OR":
        return any(_evaluate(value, item) for value in values)
    attribute, expected = values
    actual = item.get(attribute.name)
    if operator == "=":
        return actual == expected
    if operator == "contains":
        return isinstance(actual, (list, set, str)) and expected in actual
    raise NotImplementedError(operator)


def _condition_holds(
    item: dict[str, object] | None,
    condition: str | None,
    names: dict[str, str],
    values: dict[str, object],
) -> bool:
    if condition is None:
        return True
    if condition == "attribute_not_exists(pk)":
        return item is None
    if condition == "attribute_not_exists(#version)":
        return item is None or names["#version"] not in item
    if condition == "#version = :expected":
        return item is not None and item.get(names["#version"]) == values[":expected"]
    raise NotImplementedError(condition)


def _conditional_failure(operation: str) -> ClientError:
    return ClientError(
        {
            "Error": {
                "Code": "ConditionalCheckFailedException",
                "Message": "The conditional request failed",
            }
        },
        operation,
    )


class FakeClient:
    def __init__(self, table: FakeTable) -> None:
        self._table = table

    def transact_write_items(self, *, TransactItems):
        table = self._table
        if table.before_transaction is not None:
            hook = table.before_transaction
            table.before_transaction = None
            hook()
        table.transaction_calls += 1
        reasons: list[dict[str, str]] = []
        staged: list[tuple[tuple[str, str], dict[str, object]]] = []
        for entry in TransactItems:
            (kind, request), = entry.items()
            key = {k: _deserializer.deserialize(v) for k, v in request["Key"].items()}
            item_key = (key["pk"], key["sk"])
            names = request.get("ExpressionAttributeNames", {})
            values = {
                k: _deserializer.deserialize(v)
                for k, v in request.get("ExpressionAttributeValues", {}).items()
            }
            current = table.items.get(item_key)
            if not _condition_holds(current, request.get("ConditionExpression"), names, values):
                reasons.append({"Code": "ConditionalCheckFailed"})
                continue
            reasons.append({"Code": "None"})
            if kind == "Update":
                staged.append(
                    (
                        item_key,
                        table.apply_update(
                            current, key, request["UpdateExpression"], names, values
                        ),
                    )
                )
        if any(reason["Code"] != "None" for reason in reasons):
            raise ClientError(
                {
                    "Error": {
                        "Code": "TransactionCanceledException",
                        "Message": "Transaction cancelled",
                    },
                    "CancellationReasons": reasons,
                },
                "TransactWriteItems",
            )
        for item_key, item in staged:
            table.items[item_key] = item
            table.writes.append(item_key)


class FakeTable:
    """In-memory stand-in for a boto3 DynamoDB ``Table`` resource."""

    def __init__(self, *, page_size: int = 2) -> None:
        self.name = "tournament-sync-test"
        self.items: dict[tuple[str, str], dict[str, object]] = {}
        self.writes: list[tuple[str, str]] = []
        self.page_size = page_size
        self.transaction_calls = 0
        self.before_transaction: Callable[[], None] | None = None
        self.before_update: Callable[[], None] | None = None
        self.failing_queries: set[tuple[str, str]] = set()
        self.failing_gets: set[tuple[str, str]] = set()
        self.meta = SimpleNamespace(client=FakeClient(self))

    # ----- Test helpers -----
    def seed(
        self,
        collection: str,
        doc_id: str,
        data: dict[str, object],
        *,
        version: int | None = None,
    ) -> None:
        item = {"pk": collection, "sk": doc_id, **to_dynamo(data)}  # type: ignore[dict-item]
        if version is not None:
            item["_version"] = version
        self.items[(collection, doc_id)] = item

    def doc(self, collection: str, doc_id: str) -> dict[str, object] | None:
        item = self.items.get((collection, doc_id))
        return copy.deepcopy(item) if item is not None else None

    def snapshot(self) -> dict[tuple[str, str], dict[str, object]]:
        return copy.deepcopy(self.items)

    def apply_update(
        self,
        current: dict[str, object] | None,
        key: dict[str, object],
        expression: str,
        names: dict[str, str],
        values: dict[str, object],
    ) -> dict[str, object]:
        item = copy.deepcopy(current) if current is not None else dict(key)
        set_part = expression.split(" ADD ")[0]
        for name_ref, value_ref in _ASSIGNMENT.findall(set_part):
            item[names[name_ref]] = copy.deepcopy(values[value_ref])
        if "ADD #version :one" in expression:
            version_name = names["#version"]
            item[version_name] = item.get(version_name, 0) + values[":one"]
        return item

    # ----- Table API -----
    def get_item(self, *, Key, ConsistentRead=False):
        del ConsistentRead
        item_key = (Key["pk"], Key["sk"])
        if item_key in self.failing_gets:
            raise ClientError(
                {"Error": {"Code": "InternalServerError", "Message": "boom"}},
                "GetItem",
            )
        item = self.items.get(item_key)
        return {"Item": copy.deepcopy(item)} if item is not None else {}

    def query(
        self,
        *,
        KeyConditionExpression,
        FilterExpression=None,
        ExclusiveStartKey=None,
        ConsistentRead=False,
    ):
        del ConsistentRead
        _attribute, pk_value = KeyConditionExpression.get_expression()["values"]
        if FilterExpression is not None:
            for condition in _leaf_conditions(FilterExpression):
                attribute, _value = condition.get_expression()["values"]
                if (pk_value, attribute.name) in self.failing_queries:
                    raise ClientError(
                        {"Error": {"Code": "ValidationException", "Message": "index"}},
                        "Query",
                    )
        keys = sorted(key for key in self.items if key[0] == pk_value)
        if ExclusiveStartKey is not None:
            start = (ExclusiveStartKey["pk"], ExclusiveStartKey["sk"])
            keys = [key for key in keys if key > start]
        page = keys[: self.page_size]
        items = [
            copy.deepcopy(self.items[key])
            for key in page
            if FilterExpression is None or _evaluate(FilterExpression, self.items[key])
        ]
        response: dict[str, object] = {"Items": items, "Count": len(items)}
        if len(keys) > self.page_size:
            response["LastEvaluatedKey"] = {"pk": page[-1][0], "sk": page[-1][1]}
        return response

    def update_item(
        self,
        *,
        Key,
        UpdateExpression,
        ExpressionAttributeNames,
        ExpressionAttributeValues,
        ConditionExpression=None,
    ):
        if self.before_update is not None:
            hook = self.before_update
            self.before_update = None
            hook()
        item_key = (Key["pk"], Key["sk"])
        current = self.items.get(item_key)
        if not _condition_holds(
            current, ConditionExpression, ExpressionAttributeNames, ExpressionAttributeValues
        ):
            raise _conditional_failure("UpdateItem")
        self.items[item_key] = self.apply_update(
            current, dict(Key), UpdateExpression, ExpressionAttributeNames, ExpressionAttributeValues
        )
        self.writes.append(item_key)
        return {}


def _leaf_conditions(condition):
    expression = condition.get_expression()
    if expression["operator"] in ("AND", "OR"):
        for value in expression["values"]:
            yield from _leaf_conditions(value)
    else:
        yield condition


@pytest.fixture
def table() -> FakeTable:
    return FakeTable()


@pytest.fixture
def storage(table: FakeTable) -> TournamentStorage:
    return TournamentStorage(table)
