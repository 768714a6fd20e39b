import json
from typing import Any, Dict, Optional

from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError

from relay_common.models import Connection, DeliveryOutcome, ResponseMessage
from relay_common.registry import ConnectionRegistry

logger: Logger = Logger(child=True)

GONE_EXCEPTION: str = "GoneException"


class ConnectionGone(Exception):
    pass


class ConnectionGateway:
    def __init__(self, management_client: Any):
        self.management_client: Any = management_client

    def post_frame(self, connection_id: str, frame: Dict[str, Any]) -> None:
        try:
            self.management_client.post_to_connection(
                ConnectionId=connection_id,
                Data=json.dumps(frame).encode("utf-8"),
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == GONE_EXCEPTION:
                raise ConnectionGone(connection_id) from e
            raise


class ResponseDelivery:
    def __init__(
        self,
        connection_registry: ConnectionRegistry,
        gateway: ConnectionGateway,
    ):
        self.connection_registry: ConnectionRegistry = connection_registry
        self.gateway: ConnectionGateway = gateway

    def deliver(self, response: ResponseMessage) -> DeliveryOutcome:
        current: Optional[Connection] = self.connection_registry.lookup(
            response.client_id
        )
        if current is None:
            logger.info(
                f"Delivery miss for {response.request_id}: "
                f"{response.client_id} is not connected"
            )
            return DeliveryOutcome.DROPPED

        if (
            response.connection_id is not None
            and current.connection_id != response.connection_id
        ):
            logger.info(
                f"Delivery miss for {response.request_id}: "
                f"{response.client_id} reconnected as {current.connection_id}"
            )
            return DeliveryOutcome.DROPPED

        try:
            self.gateway.post_frame(current.connection_id, response.to_frame())
        except ConnectionGone:
            logger.info(
                f"Delivery miss for {response.request_id}: "
                f"connection {current.connection_id} is gone"
            )
            self.connection_registry.remove(current.connection_id)
            return DeliveryOutcome.DROPPED
        except (ClientError, BotoCoreError):
            logger.exception(
                f"Failed to push {response.request_id} "
                f"to {current.connection_id}"
            )
            return DeliveryOutcome.DROPPED

        logger.info(
            f"Delivered {response.request_id} to {current.connection_id}"
        )
        return DeliveryOutcome.DELIVERED
