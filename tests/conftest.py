import os
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("POWERTOOLS_SERVICE_NAME", "ws-chat-relay")
os.environ.setdefault("DYNAMODB_TABLE", "chat-relay-test")
os.environ.setdefault(
    "SNS_TOPIC_ARN", "arn:aws:sns:us-east-1:123456789012:chat-prompts"
)
os.environ.setdefault("TOKEN_KEY", "test-signing-key-of-reasonable-length")
os.environ.setdefault(
    "WEBSOCKET_CALLBACK_URL",
    "https://abc123.execute-api.us-east-1.amazonaws.com/prod",
)

import pytest  # noqa: E402
from botocore.exceptions import ClientError  # noqa: E402

from relay_common.registry import ConnectionRegistry  # noqa: E402


class FakeTable:
    """In-memory stand-in for a DynamoDB Table.

    Understands the condition expressions the relay writes:
    ``attribute_not_exists(PK)`` and ``<attribute> = :<placeholder>``.
    """

    def __init__(self, name: str):
        self.name: str = name
        self.items: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.lock: threading.Lock = threading.Lock()

    @staticmethod
    def _key(key: Dict[str, str]) -> Tuple[str, str]:
        return key["PK"], key["SK"]

    @staticmethod
    def _condition_failed(operation: str) -> ClientError:
        return ClientError(
            {
                "Error": {
                    "Code": "ConditionalCheckFailedException",
                    "Message": "The conditional request failed",
                }
            },
            operation,
        )

    @staticmethod
    def _check(
        existing: Optional[Dict[str, Any]],
        expression: Optional[str],
        values: Optional[Dict[str, Any]],
    ) -> bool:
        if expression is None:
            return True
        if expression == "attribute_not_exists(PK)":
            return existing is None
        attribute, _, placeholder = (
            part.strip() for part in expression.partition("=")
        )
        if existing is None:
            return False
        return existing.get(attribute) == (values or {}).get(placeholder)

    def put_item(
        self,
        Item: Dict[str, Any],
        ConditionExpression: Optional[str] = None,
        ExpressionAttributeValues: Optional[Dict[str, Any]] = None,
        ReturnValues: str = "NONE",
    ) -> Dict[str, Any]:
        with self.lock:
            key = self._key(Item)
            existing = self.items.get(key)
            if not self._check(
                existing, ConditionExpression, ExpressionAttributeValues
            ):
                raise self._condition_failed("PutItem")
            self.items[key] = dict(Item)
            if ReturnValues == "ALL_OLD" and existing is not None:
                return {"Attributes": dict(existing)}
            return {}

    def get_item(
        self, Key: Dict[str, str], ConsistentRead: bool = False
    ) -> Dict[str, Any]:
        with self.lock:
            item = self.items.get(self._key(Key))
            return {"Item": dict(item)} if item is not None else {}

    def delete_item(
        self,
        Key: Dict[str, str],
        ConditionExpression: Optional[str] = None,
        ExpressionAttributeValues: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        with self.lock:
            key = self._key(Key)
            existing = self.items.get(key)
            if not self._check(
                existing, ConditionExpression, ExpressionAttributeValues
            ):
                raise self._condition_failed("DeleteItem")
            self.items.pop(key, None)
            return {}


class FakeDynamoDBResource:
    def __init__(self):
        self.tables: Dict[str, FakeTable] = {}

    def Table(self, name: str) -> FakeTable:
        return self.tables.setdefault(name, FakeTable(name))


class InMemoryChannel:
    """At-least-once pub/sub stand-in that can redeliver on demand."""

    def __init__(self):
        self.published: Dict[str, List[str]] = defaultdict(list)
        self.handlers: Dict[str, List[Callable[[str], Any]]] = defaultdict(
            list
        )

    def publish(self, topic: str, message: str) -> None:
        self.published[topic].append(message)

    def subscribe(self, topic: str, handler: Callable[[str], Any]) -> None:
        self.handlers[topic].append(handler)

    def drain(self, topic: str) -> List[Any]:
        results: List[Any] = []
        while self.published[topic]:
            message = self.published[topic].pop(0)
            for handler in self.handlers[topic]:
                results.append(handler(message))
        return results


@dataclass
class LambdaContext:
    function_name: str = "test"
    memory_limit_in_mb: int = 128
    invoked_function_arn: str = (
        "arn:aws:lambda:us-east-1:123456789012:function:test"
    )
    aws_request_id: str = "52fdfc07-2182-154f-163f-5f0f9a621d72"


@pytest.fixture
def lambda_context() -> LambdaContext:
    return LambdaContext()


@pytest.fixture
def dynamodb_resource() -> FakeDynamoDBResource:
    return FakeDynamoDBResource()


@pytest.fixture
def registry(dynamodb_resource: FakeDynamoDBResource) -> ConnectionRegistry:
    return ConnectionRegistry("chat-relay-test", dynamodb_resource)


@pytest.fixture
def channel() -> InMemoryChannel:
    return InMemoryChannel()


def websocket_event(
    connection_id: str,
    route_key: str,
    body: Optional[str] = None,
    query: Optional[Dict[str, str]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    return {
        "requestContext": {
            "routeKey": route_key,
            "eventType": {
                "$connect": "CONNECT",
                "$disconnect": "DISCONNECT",
            }.get(route_key, "MESSAGE"),
            "connectionId": connection_id,
            "requestId": f"req-{connection_id}",
            "domainName": "abc123.execute-api.us-east-1.amazonaws.com",
            "stage": "prod",
        },
        "queryStringParameters": query,
        "headers": headers,
        "body": body,
        "isBase64Encoded": False,
    }


def sns_event(*messages: str) -> Dict[str, Any]:
    return {
        "Records": [
            {
                "EventSource": "aws:sns",
                "EventVersion": "1.0",
                "EventSubscriptionArn": (
                    "arn:aws:sns:us-east-1:123456789012:chat-prompts:sub"
                ),
                "Sns": {
                    "Type": "Notification",
                    "MessageId": f"msg-{index}",
                    "TopicArn": (
                        "arn:aws:sns:us-east-1:123456789012:chat-prompts"
                    ),
                    "Subject": None,
                    "Message": message,
                    "Timestamp": "2026-10-19T12:00:00.000Z",
                    "MessageAttributes": {},
                },
            }
            for index, message in enumerate(messages)
        ]
    }
