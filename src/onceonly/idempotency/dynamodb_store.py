"""DynamoDB-backed idempotency store for OnceOnly.

Table layout:
    PK      (S)  partition key, the idempotency key
    TTL     (N)  epoch seconds; also the table's TimeToLive attribute, so
                 DynamoDB background expiry eventually removes old records
    status  (S)  IN_PROGRESS | COMPLETED
    result  (S)  codec-serialized result, present once COMPLETED

Conditional create is put_item with attribute_not_exists(PK); reads use
ConsistentRead so they observe every completed write.
"""

from __future__ import annotations

import logging
from typing import Any

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import BotoCoreError, ClientError

from onceonly.idempotency.errors import (
    PersistenceError,
    RecordConflictError,
    RecordNotFoundError,
)
from onceonly.idempotency.record import (
    DEFAULT_CODEC,
    IdempotencyRecord,
    RecordStatus,
    ResultCodec,
)

logger = logging.getLogger(__name__)

_CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()


def _serialize(value: Any) -> dict[str, Any]:
    return _serializer.serialize(value)


def _deserialize(raw: dict[str, Any]) -> dict[str, Any]:
    return {k: _deserializer.deserialize(v) for k, v in raw.items()}


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class DynamoDbIdempotencyStore:
    """Idempotency store over a DynamoDB table.

    The boto3 client is created once by the caller and shared; botocore
    clients are safe for concurrent use across threads.
    """

    backend_name = "dynamodb"

    def __init__(self, client: Any, table_name: str, codec: ResultCodec = DEFAULT_CODEC) -> None:
        """Initialize the store.

        Args:
            client: boto3 DynamoDB low-level client.
            table_name: Name of the idempotency table.
            codec: Result codec used to serialize operation results.
        """
        if not table_name:
            raise ValueError("table_name must be a non-empty string")
        self._client = client
        self._table_name = table_name
        self._codec = codec

    def create(self, record: IdempotencyRecord) -> None:
        try:
            item = record.to_item(self._codec)
        except (TypeError, ValueError) as e:
            raise PersistenceError(
                f"Failed to encode idempotency record: {e}", key=record.key, cause=e
            ) from e

        attributes: dict[str, Any] = {
            "PK": item["key"],
            "TTL": item["expiresAt"],
            "status": item["status"],
        }
        if "result" in item:
            attributes["result"] = item["result"]

        try:
            self._client.put_item(
                TableName=self._table_name,
                Item={k: _serialize(v) for k, v in attributes.items()},
                ConditionExpression="attribute_not_exists(PK)",
            )
        except ClientError as e:
            if _error_code(e) == _CONDITIONAL_CHECK_FAILED:
                raise RecordConflictError(key=record.key) from e
            raise PersistenceError(
                f"Failed to create idempotency record: {e}", key=record.key, cause=e
            ) from e
        except BotoCoreError as e:
            raise PersistenceError(
                f"Failed to create idempotency record: {e}", key=record.key, cause=e
            ) from e

    def get(self, key: str) -> IdempotencyRecord:
        try:
            response = self._client.get_item(
                TableName=self._table_name,
                Key={"PK": _serialize(key)},
                ConsistentRead=True,
            )
        except (BotoCoreError, ClientError) as e:
            raise PersistenceError(
                f"Failed to lookup idempotency record: {e}", key=key, cause=e
            ) from e

        raw = response.get("Item")
        if not raw:
            raise RecordNotFoundError(key=key)

        try:
            attributes = _deserialize(raw)
            return IdempotencyRecord.from_item(
                {
                    "key": attributes["PK"],
                    "expiresAt": int(attributes["TTL"]),
                    "status": attributes["status"],
                    "result": attributes.get("result"),
                },
                self._codec,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceError(
                f"Failed to decode idempotency record: {e}", key=key, cause=e
            ) from e

    def update(self, key: str, result: Any) -> None:
        try:
            encoded = self._codec.encode(result)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to encode result: {e}", key=key, cause=e) from e

        try:
            self._client.update_item(
                TableName=self._table_name,
                Key={"PK": _serialize(key)},
                UpdateExpression="SET #result = :result, #status = :status",
                ConditionExpression="attribute_exists(PK)",
                ExpressionAttributeNames={"#result": "result", "#status": "status"},
                ExpressionAttributeValues={
                    ":result": _serialize(encoded),
                    ":status": _serialize(RecordStatus.COMPLETED.value),
                },
            )
        except ClientError as e:
            if _error_code(e) == _CONDITIONAL_CHECK_FAILED:
                raise PersistenceError(
                    "Cannot update missing idempotency record", key=key, cause=e
                ) from e
            raise PersistenceError(
                f"Failed to update idempotency record: {e}", key=key, cause=e
            ) from e
        except BotoCoreError as e:
            raise PersistenceError(
                f"Failed to update idempotency record: {e}", key=key, cause=e
            ) from e

    def delete(self, key: str) -> None:
        try:
            self._client.delete_item(
                TableName=self._table_name,
                Key={"PK": _serialize(key)},
            )
        except (BotoCoreError, ClientError) as e:
            raise PersistenceError(
                f"Failed to delete idempotency record: {e}", key=key, cause=e
            ) from e

    def close(self) -> None:
        close = getattr(self._client, "close", None)
        if callable(close):
            close()
