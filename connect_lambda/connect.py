import json
from typing import Any, Dict, List, Optional

import boto3
import jwt
from aws_lambda_powertools import Logger
from aws_lambda_powertools.logging import correlation_paths
from aws_lambda_powertools.utilities.typing import LambdaContext

from relay_common.config import RelaySettings, load_settings
from relay_common.errors import AuthError, ExpiredToken, InvalidToken
from relay_common.registry import ConnectionRegistry

logger: Logger = Logger()

IDENTITY_CLAIMS: List[str] = ["sub", "username"]

settings: RelaySettings = load_settings()
dynamodb_resource = boto3.resource("dynamodb")


class AuthGate:
    def __init__(self, token_key: str, algorithm: str = "HS256"):
        if not token_key:
            raise ValueError("TOKEN_KEY must be configured")
        self.token_key: str = token_key
        self.algorithm: str = algorithm

    def authenticate(self, token: Optional[str]) -> str:
        if not token:
            raise InvalidToken("Missing bearer token")

        try:
            claims: Dict[str, Any] = jwt.decode(
                token,
                self.token_key,
                algorithms=[self.algorithm],
                options={"require": ["exp"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise ExpiredToken("Token has expired") from e
        except jwt.PyJWTError as e:
            raise InvalidToken(f"Invalid token: {type(e).__name__}") from e

        for claim in IDENTITY_CLAIMS:
            identity: Any = claims.get(claim)
            if isinstance(identity, str) and identity:
                return identity

        raise InvalidToken("Token carries no client identity")


def extract_token(event: Dict[str, Any]) -> Optional[str]:
    query: Dict[str, str] = event.get("queryStringParameters") or {}
    if query.get("token"):
        return query["token"]

    headers: Dict[str, str] = {
        name.lower(): value
        for name, value in (event.get("headers") or {}).items()
    }
    authorization: str = headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None


auth_gate: AuthGate = AuthGate(settings.token_key, settings.token_algorithm)
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
        client_id: str = auth_gate.authenticate(extract_token(event))
    except AuthError as e:
        logger.warning(
            f"Rejected connection {connection_id}",
            extra={"reason": type(e).__name__},
        )
        return {
            "statusCode": 401,
            "body": json.dumps({"error": type(e).__name__}),
        }

    try:
        connection_registry.register(client_id, connection_id)
    except Exception:
        logger.exception(f"Error registering connection {connection_id}")
        return {
            "statusCode": 500,
            "body": json.dumps({"error": "Internal Server Error"}),
        }

    return {"statusCode": 200, "body": json.dumps({"status": "connected"})}
