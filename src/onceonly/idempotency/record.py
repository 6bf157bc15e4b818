"""Idempotency record model and result codecs.

A record is the persisted claim/result state for one idempotency key.

Wire encoding (shared by every store adapter):
    {"key": str, "expiresAt": int, "status": "IN_PROGRESS" | "COMPLETED",
     "result": str}  # result present only once the record is COMPLETED

Whether a result exists is carried by an explicit has_result flag, never by
comparing the result to a zero value, so "" / 0 / None are valid results.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Generic, Protocol, TypeVar

from pydantic import TypeAdapter

T = TypeVar("T")


class RecordStatus(str, Enum):
    """Lifecycle status of an idempotency record."""

    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class ResultCodec(Protocol):
    """Serializes operation results to and from text for storage."""

    def encode(self, value: Any) -> str: ...

    def decode(self, text: str) -> Any: ...


class JsonResultCodec:
    """Deterministic JSON codec (sorted keys, compact separators).

    Only accepts values that decode back equal to themselves, so a replayed
    result always matches the original. Tuples, sets, non-string dict keys and
    other non-JSON types raise TypeError; use PydanticResultCodec for them.
    """

    def encode(self, value: Any) -> str:
        text = json.dumps(value, sort_keys=True, separators=(",", ":"))
        if json.loads(text) != value:
            raise TypeError(
                f"{type(value).__name__} result does not survive a JSON round-trip; "
                "use PydanticResultCodec for non-JSON types"
            )
        return text

    def decode(self, text: str) -> Any:
        return json.loads(text)


class PydanticResultCodec(Generic[T]):
    """Codec for typed results backed by a pydantic TypeAdapter.

    Lets pydantic models, dataclasses and parametrized containers round-trip
    value-for-value instead of degrading to plain JSON types.
    """

    def __init__(self, type_: Any) -> None:
        self._adapter: TypeAdapter[T] = TypeAdapter(type_)

    def encode(self, value: T) -> str:
        return self._adapter.dump_json(value).decode("utf-8")

    def decode(self, text: str) -> T:
        return self._adapter.validate_json(text)


DEFAULT_CODEC = JsonResultCodec()


@dataclass(frozen=True)
class IdempotencyRecord:
    """Claim/result state for one idempotency key.

    Attributes:
        key: Caller-supplied idempotency key (non-empty).
        status: IN_PROGRESS while claimed, COMPLETED once finalized.
        expires_at: Epoch seconds after which an IN_PROGRESS claim is stale.
        result: Operation result; meaningful only when has_result is True.
        has_result: Explicit "has a value" flag for result.

    Raises:
        ValueError: If the field combination violates record invariants.
    """

    key: str
    status: RecordStatus
    expires_at: int
    result: Any = None
    has_result: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.key, str) or not self.key:
            raise ValueError("Record key must be a non-empty string")
        if isinstance(self.expires_at, bool) or not isinstance(self.expires_at, int):
            raise ValueError("Record expires_at must be an integer epoch timestamp")
        if self.expires_at < 0:
            raise ValueError("Record expires_at must not be negative")
        if not isinstance(self.status, RecordStatus):
            object.__setattr__(self, "status", RecordStatus(self.status))
        if self.status is RecordStatus.COMPLETED and not self.has_result:
            raise ValueError("COMPLETED record must carry a result")
        if self.status is RecordStatus.IN_PROGRESS and self.has_result:
            raise ValueError("IN_PROGRESS record must not carry a result")

    @classmethod
    def in_progress(cls, key: str, expires_at: int) -> IdempotencyRecord:
        """Build a claim candidate for key."""
        return cls(key=key, status=RecordStatus.IN_PROGRESS, expires_at=expires_at)

    def completed(self, result: Any) -> IdempotencyRecord:
        """Return a copy transitioned to COMPLETED with result set."""
        return replace(self, status=RecordStatus.COMPLETED, result=result, has_result=True)

    def is_expired(self, now: float) -> bool:
        """Return True if the record's claim window has elapsed at now."""
        return self.expires_at <= now

    def to_item(self, codec: ResultCodec = DEFAULT_CODEC) -> dict[str, Any]:
        """Encode to the store wire format.

        Raises:
            TypeError, ValueError: If the codec cannot serialize the result.
        """
        item: dict[str, Any] = {
            "key": self.key,
            "expiresAt": self.expires_at,
            "status": self.status.value,
        }
        if self.has_result:
            item["result"] = codec.encode(self.result)
        return item

    @classmethod
    def from_item(
        cls, item: dict[str, Any], codec: ResultCodec = DEFAULT_CODEC
    ) -> IdempotencyRecord:
        """Decode from the store wire format.

        Raises:
            KeyError: If a required attribute is missing.
            ValueError: If the item is malformed or the result cannot be decoded.
        """
        has_result = item.get("result") is not None
        return cls(
            key=item["key"],
            status=RecordStatus(item["status"]),
            expires_at=int(item["expiresAt"]),
            result=codec.decode(item["result"]) if has_result else None,
            has_result=has_result,
        )
