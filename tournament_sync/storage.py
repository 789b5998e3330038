from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Literal, TypeVar

from boto3.dynamodb.conditions import Attr, ConditionBase, Key
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

from .validation import ConditionFailedError, TransactionConflictError

log = logging.getLogger(__name__)

T = TypeVar("T")

VERSION_ATTRIBUTE = "_version"
KEY_ATTRIBUTES = ("pk", "sk")
RETRYABLE_CANCELLATION_CODES = {"ConditionalCheckFailed", "TransactionConflict"}

FilterOp = Literal["==", "array-contains"]


def to_dynamo(value: object) -> object:
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, Mapping):
        return {str(key): to_dynamo(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_dynamo(item) for item in value]
    return value


def from_dynamo(value: object) -> object:
    if isinstance(value, Decimal):
        exponent = value.as_tuple().exponent
        if isinstance(exponent, int) and exponent >= 0:
            return int(value)
        return float(value)
    if isinstance(value, Mapping):
        return {str(key): from_dynamo(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [from_dynamo(item) for item in value]
    return value


@dataclass(frozen=True, slots=True)
class DocumentKey:
    collection: str
    id: str

    def to_key(self) -> dict[str, str]:
        return {"pk": self.collection, "sk": self.id}


@dataclass(slots=True)
class Document:
    collection: str
    id: str
    data: dict[str, object]
    version: int | None = None

    @property
    def key(self) -> DocumentKey:
        return DocumentKey(self.collection, self.id)

    @classmethod
    def from_item(cls, item: Mapping[str, object]) -> Document:
        raw_version = item.get(VERSION_ATTRIBUTE)
        data = {
            key: from_dynamo(value)
            for key, value in item.items()
            if key not in KEY_ATTRIBUTES and key != VERSION_ATTRIBUTE
        }
        return cls(
            collection=str(item["pk"]),
            id=str(item["sk"]),
            data=data,
            version=int(raw_version) if raw_version is not None else None,
        )


@dataclass(frozen=True, slots=True)
class Filter:
    field: str
    op: FilterOp
    value: object

    def condition(self) -> ConditionBase:
        if self.op == "array-contains":
            return Attr(self.field).contains(to_dynamo(self.value))
        return Attr(self.field).eq(to_dynamo(self.value))


def where(field: str, value: object) -> Filter:
    return Filter(field, "==", value)


def array_contains(field: str, value: object) -> Filter:
    return Filter(field, "array-contains", value)


def _update_expression(
    fields: Mapping[str, object],
) -> tuple[str, dict[str, str], dict[str, object]]:
    names = {"#version": VERSION_ATTRIBUTE}
    values: dict[str, object] = {":one": 1}
    assignments: list[str] = []
    for index, (name, value) in enumerate(fields.items()):
        names[f"#f{index}"] = name
        values[f":f{index}"] = to_dynamo(value)
        assignments.append(f"#f{index} = :f{index}")
    expression = "ADD #version :one"
    if assignments:
        expression = f"SET {', '.join(assignments)} {expression}"
    return expression, names, values


def _version_condition(
    expected: int | None, names: dict[str, str], values: dict[str, object]
) -> str:
    names["#version"] = VERSION_ATTRIBUTE
    if expected is None:
        return "attribute_not_exists(#version)"
    values[":expected"] = expected
    return "#version = :expected"


class TournamentStorage:
    """Document-store facade over a single DynamoDB table.

    Every document lives under ``pk = collection`` / ``sk = document id`` and
    carries a ``_version`` counter bumped on each write. Transactions use that
    counter for optimistic concurrency.
    """

    def __init__(self, table) -> None:
        self._table = table
        self._serializer = TypeSerializer()

    def ensure_table(self) -> None:
        if self._table is None:
            raise RuntimeError("Tournament table is not configured")

    # ----- Reads -----
    async def get(self, collection: str, doc_id: str) -> Document | None:
        self.ensure_table()
        resp = await asyncio.to_thread(
            self._table.get_item,
            Key=DocumentKey(collection, doc_id).to_key(),
            ConsistentRead=True,
        )
        item = resp.get("Item")
        if not item:
            return None
        return Document.from_item(item)

    async def query(
        self, collection: str, *filters: Filter, limit: int | None = None
    ) -> list[Document]:
        """Return documents of ``collection`` matching every filter.

        DynamoDB applies ``Limit`` before filtering, so the limit is enforced
        here while paging.
        """
        self.ensure_table()
        kwargs: dict[str, object] = {
            "KeyConditionExpression": Key("pk").eq(collection),
            "ConsistentRead": True,
        }
        if filters:
            condition = filters[0].condition()
            for extra in filters[1:]:
                condition = condition & extra.condition()
            kwargs["FilterExpression"] = condition
        documents: list[Document] = []
        while True:
            resp = await asyncio.to_thread(self._table.query, **kwargs)
            for item in resp.get("Items", []):
                documents.append(Document.from_item(item))
                if limit is not None and len(documents) >= limit:
                    return documents
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                return documents
            kwargs["ExclusiveStartKey"] = last_key

    async def find_one(self, collection: str, *filters: Filter) -> Document | None:
        documents = await self.query(collection, *filters, limit=1)
        return documents[0] if documents else None

    # ----- Writes -----
    async def update(
        self, collection: str, doc_id: str, fields: Mapping[str, object]
    ) -> None:
        """Merge ``fields`` into the document, creating it when absent."""
        self.ensure_table()
        expression, names, values = _update_expression(fields)
        await asyncio.to_thread(
            self._table.update_item,
            Key=DocumentKey(collection, doc_id).to_key(),
            UpdateExpression=expression,
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
        )

    async def compare_and_update(
        self,
        collection: str,
        doc_id: str,
        fields: Mapping[str, object],
        *,
        expected_version: int | None,
    ) -> None:
        self.ensure_table()
        expression, names, values = _update_expression(fields)
        condition = _version_condition(expected_version, names, values)
        try:
            await asyncio.to_thread(
                self._table.update_item,
                Key=DocumentKey(collection, doc_id).to_key(),
                UpdateExpression=expression,
                ConditionExpression=condition,
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
            )
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code == "ConditionalCheckFailedException":
                raise ConditionFailedError(
                    f"{collection}/{doc_id} changed since it was read"
                ) from exc
            raise

    # ----- Transactions -----
    def transaction(self) -> Transaction:
        return Transaction(self)

    async def run_transaction(
        self,
        body: Callable[[Transaction], Awaitable[T]],
        *,
        max_attempts: int = 5,
    ) -> T:
        """Run ``body`` and commit its writes, retrying lost optimistic races."""
        attempt = 1
        while True:
            transaction = self.transaction()
            result = await body(transaction)
            try:
                await transaction.commit()
            except TransactionConflictError:
                if attempt >= max_attempts:
                    raise
                log.info(
                    "Transaction conflict on attempt %s/%s; retrying",
                    attempt,
                    max_attempts,
                )
                attempt += 1
                continue
            return result

    async def _transact_write(self, items: list[dict[str, object]]) -> None:
        self.ensure_table()
        client = self._table.meta.client
        try:
            await asyncio.to_thread(client.transact_write_items, TransactItems=items)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code != "TransactionCanceledException":
                raise
            reasons = exc.response.get("CancellationReasons") or []
            codes = {str(reason.get("Code")) for reason in reasons}
            if reasons and not codes & RETRYABLE_CANCELLATION_CODES:
                raise
            raise TransactionConflictError(
                "Transaction was cancelled by a concurrent write"
            ) from exc

    def _serialize(self, values: Mapping[str, object]) -> dict[str, object]:
        return {
            name: self._serializer.serialize(value) for name, value in values.items()
        }

    def _serialized_key(self, key: DocumentKey) -> dict[str, object]:
        return self._serialize(key.to_key())

    @property
    def table_name(self) -> str:
        self.ensure_table()
        return str(self._table.name)


class Transaction:
    """Optimistic read set / write set against :class:`TournamentStorage`.

    Reads made through :meth:`get` (or registered with :meth:`track`) become
    version conditions at commit time. Writes are buffered until
    :meth:`commit`, which issues one ``TransactWriteItems`` call.
    """

    def __init__(self, storage: TournamentStorage) -> None:
        self._storage = storage
        self._reads: dict[DocumentKey, int | None] = {}
        self._missing: set[DocumentKey] = set()
        self._writes: dict[DocumentKey, dict[str, object]] = {}
        self.committed = False

    async def get(self, collection: str, doc_id: str) -> Document | None:
        document = await self._storage.get(collection, doc_id)
        key = DocumentKey(collection, doc_id)
        if document is None:
            self._missing.add(key)
            self._reads.pop(key, None)
        else:
            self.track(document)
        return document

    async def query(self, collection: str, *filters: Filter) -> list[Document]:
        return await self._storage.query(collection, *filters)

    def track(self, document: Document) -> None:
        self._missing.discard(document.key)
        self._reads[document.key] = document.version

    def track_all(self, documents: Iterable[Document]) -> None:
        for document in documents:
            self.track(document)

    def update(self, collection: str, doc_id: str, fields: Mapping[str, object]) -> None:
        key = DocumentKey(collection, doc_id)
        if key not in self._reads:
            raise RuntimeError(f"{collection}/{doc_id} must be read before it is written")
        self._writes.setdefault(key, {}).update(fields)

    def _items(self) -> list[dict[str, object]]:
        storage = self._storage
        table_name = storage.table_name
        items: list[dict[str, object]] = []
        for key, fields in self._writes.items():
            expression, names, values = _update_expression(fields)
            condition = _version_condition(self._reads[key], names, values)
            items.append(
                {
                    "Update": {
                        "TableName": table_name,
                        "Key": storage._serialized_key(key),
                        "UpdateExpression": expression,
                        "ConditionExpression": condition,
                        "ExpressionAttributeNames": names,
                        "ExpressionAttributeValues": storage._serialize(values),
                    }
                }
            )
        for key, version in self._reads.items():
            if key in self._writes:
                continue
            check_names: dict[str, str] = {}
            check_values: dict[str, object] = {}
            condition = _version_condition(version, check_names, check_values)
            check: dict[str, object] = {
                "TableName": table_name,
                "Key": storage._serialized_key(key),
                "ConditionExpression": condition,
                "ExpressionAttributeNames": check_names,
            }
            if check_values:
                check["ExpressionAttributeValues"] = storage._serialize(check_values)
            items.append({"ConditionCheck": check})
        for key in self._missing:
            items.append(
                {
                    "ConditionCheck": {
                        "TableName": table_name,
                        "Key": storage._serialized_key(key),
                        "ConditionExpression": "attribute_not_exists(pk)",
                    }
                }
            )
        return items

    async def commit(self) -> None:
        if self.committed:
            raise RuntimeError("Transaction already committed")
        self.committed = True
        if not self._writes:
            return
        await self._storage._transact_write(self._items())


__all__ = [
    "Document",
    "DocumentKey",
    "Filter",
    "TournamentStorage",
    "Transaction",
    "array_contains",
    "from_dynamo",
    "to_dynamo",
    "where",
]
