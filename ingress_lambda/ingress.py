import json
import uuid
from typing import Any, Dict, Optional

import boto3
from aws_lambda_powertools import Logger
from aws_lambda_powertools.logging import correlation_paths
from aws_lambda_powertools.utilities.typing import LambdaContext
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from relay_common.config import RelaySettings, load_settings
from relay_common.delivery import ConnectionGateway
from relay_common.errors import (
    DispatchError,
    MalformedPrompt,
    ProtocolError,
    UnknownConnection,
)
from relay_common.models import (
    Connection,
    PromptAccepted,
    PromptMessage,
    SendPromptRequest,
)
from relay_common.registry import ConnectionRegistry

logger: Logger = Logger()

settings: RelaySettings = load_settings()
dynamodb_resource = boto3.resource("dynamodb")
sns_client = boto3.client("sns")
management_client = boto3.client(
    "apigatewaymanagementapi", endpoint_url=settings.websocket_callback_url
)


class SNSRepository:
    def __init__(self, topic_arn: str, sns_client: Any):
        self.topic_arn: str = topic_arn
        self.sns_client: Any = sns_client

    def publish(self, prompt: PromptMessage) -> str:
        try:
            response: Dict[str, Any] = self.sns_client.publish(
                TopicArn=self.topic_arn,
                Message=prompt.model_dump_json(),
                MessageAttributes={
                    "client_id": {
                        "DataType": "String",
                        "StringValue": prompt.client_id,
                    }
                },
            )
        except (ClientError, BotoCoreError) as e:
            raise DispatchError(
                f"Could not publish {prompt.request_id}: {e}",
                request_id=prompt.request_id,
                client_request_id=prompt.client_request_id,
            ) from e
        return response["MessageId"]


class PromptIngress:
    def __init__(
        self,
        connection_registry: ConnectionRegistry,
        sns_repository: SNSRepository,
        max_prompt_chars: int = 4000,
    ):
        self.connection_registry: ConnectionRegistry = connection_registry
        self.sns_repository: SNSRepository = sns_repository
        self.max_prompt_chars: int = max_prompt_chars

    def parse(self, raw_body: Optional[str]) -> SendPromptRequest:
        try:
            body: Any = json.loads(raw_body or "")
        except json.JSONDecodeError as e:
            raise MalformedPrompt("Body is not valid JSON") from e

        if not isinstance(body, dict):
            raise MalformedPrompt("Body must be a JSON object")

        try:
            request: SendPromptRequest = SendPromptRequest.model_validate(
                body
            )
        except ValidationError as e:
            raise MalformedPrompt(
                f"Invalid prompt message: {e.error_count()} error(s)",
                client_request_id=body.get("requestId")
                if isinstance(body.get("requestId"), str)
                else None,
            ) from e

        if not request.prompt.strip():
            raise MalformedPrompt(
                "Prompt is empty", client_request_id=request.client_request_id
            )
        if len(request.prompt) > self.max_prompt_chars:
            raise MalformedPrompt(
                f"Prompt exceeds {self.max_prompt_chars} characters",
                client_request_id=request.client_request_id,
            )
        return request

    def submit(
        self, connection_id: str, raw_body: Optional[str]
    ) -> PromptAccepted:
        connection: Optional[Connection] = self.connection_registry.resolve(
            connection_id
        )
        if connection is None:
            raise UnknownConnection(connection_id)

        request: SendPromptRequest = self.parse(raw_body)
        prompt: PromptMessage = PromptMessage(
            client_id=connection.client_id,
            request_id=str(uuid.uuid4()),
            prompt=request.prompt,
            connection_id=connection_id,
            client_request_id=request.client_request_id,
        )

        message_id: str = self.sns_repository.publish(prompt)
        logger.info(
            f"Published prompt {prompt.request_id} for "
            f"{prompt.client_id} as {message_id}"
        )

        return PromptAccepted(
            request_id=prompt.request_id,
            client_request_id=prompt.client_request_id,
            submitted_at=prompt.submitted_at,
        )


connection_registry: ConnectionRegistry = ConnectionRegistry(
    settings.dynamodb_table,
    dynamodb_resource,
    connection_ttl_seconds=settings.connection_ttl_seconds,
)
sns_repository: SNSRepository = SNSRepository(
    settings.sns_topic_arn, sns_client
)
prompt_ingress: PromptIngress = PromptIngress(
    connection_registry,
    sns_repository,
    max_prompt_chars=settings.max_prompt_chars,
)
gateway: ConnectionGateway = ConnectionGateway(management_client)


def send_dispatch_error(connection_id: str, error: DispatchError) -> None:
    frame: Dict[str, Any] = {"requestId": error.request_id}
    if error.client_request_id is not None:
        frame["clientRequestId"] = error.client_request_id
    frame["error"] = "Prompt could not be queued"
    try:
        gateway.post_frame(connection_id, frame)
    except Exception:
        logger.exception(f"Could not send error frame to {connection_id}")


@logger.inject_lambda_context(
    correlation_id_path=correlation_paths.API_GATEWAY_REST
)
def lambda_handler(
    event: Dict[str, Any], context: LambdaContext
) -> Dict[str, Any]:
    connection_id: str = event["requestContext"]["connectionId"]

    try:
        accepted: PromptAccepted = prompt_ingress.submit(
            connection_id, event.get("body")
        )
        return {
            "statusCode": 202,
            "body": accepted.model_dump_json(by_alias=True, exclude_none=True),
        }
    except UnknownConnection as e:
        logger.warning(f"Dropped message: {e}")
        return {"statusCode": 403, "body": json.dumps({"error": str(e)})}
    except ProtocolError as e:
        logger.warning(
            f"Dropped malformed message from {connection_id}: {e}"
        )
        return {"statusCode": 400, "body": json.dumps({"error": str(e)})}
    except DispatchError as e:
        logger.exception(f"Dispatch failed for {connection_id}")
        send_dispatch_error(connection_id, e)
        return {
            "statusCode": 502,
            "body": json.dumps({"error": "Prompt could not be queued"}),
        }
    except Exception:
        logger.exception(f"Error handling prompt from {connection_id}")
        return {
            "statusCode": 500,
            "body": json.dumps({"error": "Internal Server Error"}),
        }
