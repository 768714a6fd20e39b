import json
from typing import Any, Dict

import boto3
from aws_lambda_powertools import Logger
from aws_lambda_powertools.logging import correlation_paths
from aws_lambda_powertools.utilities.typing import LambdaContext

from relay_common.config import RelaySettings, load_settings
from relay_common.registry import ConnectionRegistry

logger: Logger = Logger()

settings: RelaySettings = load_settings()
dynamodb_resource = boto3.resource("dynamodb")

connection_registry: ConnectionRegistry = ConnectionRegistry(
    settings.dynamodb_table,
    dynamodb_resource,
    connection_ttl_seconds=settings.connection_ttl_seconds,
)


@logger.inject_lambda_context(
    correlation_id_path=correlation_paths.API_GATEWAY_REST
)
def lambda_handler(
    event: Dict[str, Any], context: LambdaContext
) -> Dict[str, Any]:
    connection_id: str = event["requestContext"]["connectionId"]

    try:
        removed: bool = connection_registry.remove(connection_id)
        logger.info(
            f"Connection {connection_id} closed",
            extra={"registration_removed": removed},
        )
    except Exception:
        logger.exception(f"Error removing connection {connection_id}")
        return {
            "statusCode": 500,
            "body": json.dumps({"error": "Internal Server Error"}),
        }

    return {"statusCode": 200, "body": json.dumps({"status": "disconnected"})}
