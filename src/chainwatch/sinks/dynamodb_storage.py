"""
DynamoDB Storage backend.

Tables (partition key in brackets):
- events        [event_id]    scored results; put_item is the upsert, and
                              ReturnValues=ALL_OLD tells whether the row is new
- cursors       [cursor_id]   "<source>#<subscription>" -> position; the write is
                              conditional so a stale writer cannot move it back
- dead_letters  [job_id]      jobs that exhausted their attempts

All boto3 calls are synchronous and run in the default thread pool executor
to avoid blocking the event loop.
"""

import asyncio
import json
import logging
from decimal import Decimal
from typing import Any, Optional

import boto3
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import ClientError

from chainwatch.framework.interfaces import Storage
from chainwatch.framework.models import DeadLetter, ScoredEvent, iso_z, utcnow

logger = logging.getLogger(__name__)

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()


def to_item(data: dict[str, Any]) -> dict[str, Any]:
    """Serialize a JSON-safe dict to DynamoDB attribute values (floats become Decimal)."""
    normalized = json.loads(json.dumps(data, default=str), parse_float=Decimal)
    return {key: _serializer.serialize(value) for key, value in normalized.items()}


def from_item(item: dict[str, Any]) -> dict[str, Any]:
    return {key: _deserializer.deserialize(value) for key, value in item.items()}


def cursor_key(source_id: str, subscription_id: str) -> str:
    return f"{source_id}#{subscription_id}"


class DynamoDBStorage(Storage):
    """
    Usage (PipelineManager):
        storage = DynamoDBStorage("chainwatch-scored-events", "chainwatch-cursors",
                                  "chainwatch-dead-letters", region="us-west-2")
    """

    def __init__(self, events_table: str, cursors_table: str, dead_letters_table: str, region: str) -> None:
        self._events_table = events_table
        self._cursors_table = cursors_table
        self._dead_letters_table = dead_letters_table
        self._dynamodb = boto3.client("dynamodb", region_name=region)

    async def upsert(self, scored: ScoredEvent) -> bool:
        return await asyncio.get_event_loop().run_in_executor(None, self._put_event, scored)

    async def read_cursor(self, source_id: str, subscription_id: str) -> Optional[int]:
        return await asyncio.get_event_loop().run_in_executor(None, self._get_cursor, source_id, subscription_id)

    async def write_cursor(self, source_id: str, subscription_id: str, position: int) -> None:
        await asyncio.get_event_loop().run_in_executor(
            None, self._put_cursor, source_id, subscription_id, position
        )

    async def record_dead_letter(self, dead_letter: DeadLetter) -> None:
        await asyncio.get_event_loop().run_in_executor(None, self._put_dead_letter, dead_letter)

    # ------------------------------------------------------------------
    # Synchronous boto3 calls (executor)
    # ------------------------------------------------------------------

    def _put_event(self, scored: ScoredEvent) -> bool:
        data = scored.to_dict()
        # Raw payloads are arbitrary source JSON; store them as one string attribute
        data["raw"] = json.dumps(data.get("raw") or {}, sort_keys=True, default=str)
        response = self._dynamodb.put_item(
            TableName=self._events_table,
            Item=to_item(data),
            ReturnValues="ALL_OLD",
        )
        return "Attributes" not in response

    def _get_cursor(self, source_id: str, subscription_id: str) -> Optional[int]:
        response = self._dynamodb.get_item(
            TableName=self._cursors_table,
            Key={"cursor_id": {"S": cursor_key(source_id, subscription_id)}},
            ConsistentRead=True,
        )
        item = response.get("Item")
        if not item:
            return None
        return int(from_item(item)["position"])

    def _put_cursor(self, source_id: str, subscription_id: str, position: int) -> None:
        try:
            self._dynamodb.put_item(
                TableName=self._cursors_table,
                Item=to_item(
                    {
                        "cursor_id": cursor_key(source_id, subscription_id),
                        "source_id": source_id,
                        "subscription_id": subscription_id,
                        "position": position,
                        "updated_at": iso_z(utcnow()),
                    }
                ),
                ConditionExpression="attribute_not_exists(cursor_id) OR #pos <= :pos",
                ExpressionAttributeNames={"#pos": "position"},
                ExpressionAttributeValues={":pos": {"N": str(position)}},
            )
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                raise ValueError(
                    f"cursor regression refused for {source_id}/{subscription_id} at {position}"
                ) from exc
            raise

    def _put_dead_letter(self, dead_letter: DeadLetter) -> None:
        data = dead_letter.to_dict()
        data["event"] = json.dumps(data["event"], sort_keys=True, default=str)
        self._dynamodb.put_item(TableName=self._dead_letters_table, Item=to_item(data))
        logger.info("Dead-letter recorded | job_id=%s | table=%s", dead_letter.job_id, self._dead_letters_table)
