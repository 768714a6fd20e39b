import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

from relay_common.models import Connection

logger: Logger = Logger(child=True)

CONDITIONAL_CHECK_FAILED: str = "ConditionalCheckFailedException"


def is_conditional_check_failure(error: ClientError) -> bool:
    code: str = error.response.get("Error", {}).get("Code", "")
    return code == CONDITIONAL_CHECK_FAILED


def client_key(client_id: str) -> Dict[str, str]:
    return {"PK": f"CLIENT#{client_id}", "SK": "CONNECTION"}


def connection_key(connection_id: str) -> Dict[str, str]:
    return {"PK": f"CONNECTION#{connection_id}", "SK": "CLIENT"}


class ConnectionRegistry:
    """Maps a client identity to its one authoritative live connection."""

    def __init__(
        self,
        table_name: str,
        dynamodb_resource: Any,
        connection_ttl_seconds: int = 7200,
    ):
        self.table: Any = dynamodb_resource.Table(table_name)
        self.connection_ttl_seconds: int = connection_ttl_seconds
        logger.info(f"ConnectionRegistry initialized for table: {table_name}")

    def register(self, client_id: str, connection_id: str) -> Connection:
        now: datetime = datetime.now(timezone.utc)
        connection: Connection = Connection(
            client_id=client_id,
            connection_id=connection_id,
            connected_at=now.isoformat().replace("+00:00", "Z"),
            expires_at=int(now.timestamp()) + self.connection_ttl_seconds,
        )
        attributes: Dict[str, Any] = connection.model_dump()

        self.table.put_item(
            Item={**connection_key(connection_id), **attributes}
        )
        response: Dict[str, Any] = self.table.put_item(
            Item={**client_key(client_id), **attributes},
            ReturnValues="ALL_OLD",
        )

        previous: Dict[str, Any] = response.get("Attributes") or {}
        previous_connection_id: Optional[str] = previous.get("connection_id")
        if previous_connection_id and previous_connection_id != connection_id:
            logger.info(
                f"Connection {previous_connection_id} superseded by "
                f"{connection_id} for client {client_id}"
            )
            self._delete_connection_item(previous_connection_id, client_id)

        logger.info(f"Registered connection {connection_id} for {client_id}")
        return connection

    def lookup(self, client_id: str) -> Optional[Connection]:
        return self._read(client_key(client_id))

    def resolve(self, connection_id: str) -> Optional[Connection]:
        return self._read(connection_key(connection_id))

    def remove(self, connection_id: str) -> bool:
        connection: Optional[Connection] = self._read(
            connection_key(connection_id), include_expired=True
        )
        if connection is None:
            logger.info(f"No registration to remove for {connection_id}")
            return False

        removed: bool = True
        try:
            self.table.delete_item(
                Key=client_key(connection.client_id),
                ConditionExpression="connection_id = :connection_id",
                ExpressionAttributeValues={":connection_id": connection_id},
            )
        except ClientError as e:
            if not is_conditional_check_failure(e):
                raise
            logger.info(
                f"Client {connection.client_id} already superseded "
                f"{connection_id}, keeping newer registration"
            )
            removed = False

        self._delete_connection_item(connection_id, connection.client_id)
        return removed

    def _read(
        self, key: Dict[str, str], include_expired: bool = False
    ) -> Optional[Connection]:
        response: Dict[str, Any] = self.table.get_item(
            Key=key, ConsistentRead=True
        )
        item: Optional[Dict[str, Any]] = response.get("Item")
        if item is None:
            return None

        connection: Connection = Connection.model_validate(item)
        if not include_expired and connection.expires_at <= int(time.time()):
            logger.info(
                f"Ignoring expired connection {connection.connection_id}"
            )
            return None
        return connection

    def _delete_connection_item(
        self, connection_id: str, client_id: str
    ) -> None:
        try:
            self.table.delete_item(
                Key=connection_key(connection_id),
                ConditionExpression="client_id = :client_id",
                ExpressionAttributeValues={":client_id": client_id},
            )
        except ClientError as e:
            if not is_conditional_check_failure(e):
                raise
