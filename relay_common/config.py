import os
from typing import Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

ENVIRONMENT_VARIABLES: Dict[str, str] = {
    "DYNAMODB_TABLE": "dynamodb_table",
    "SNS_TOPIC_ARN": "sns_topic_arn",
    "TOKEN_KEY": "token_key",
    "TOKEN_ALGORITHM": "token_algorithm",
    "WEBSOCKET_CALLBACK_URL": "websocket_callback_url",
    "LLM_PROVIDER_STRATEGY": "llm_provider_strategy",
    "BEDROCK_MODEL_ID": "bedrock_model_id",
    "GENERATION_TIMEOUT_SECONDS": "generation_timeout_seconds",
    "MAX_PROMPT_CHARS": "max_prompt_chars",
    "CONNECTION_TTL_SECONDS": "connection_ttl_seconds",
    "RESPONSE_TTL_SECONDS": "response_ttl_seconds",
}


class RelaySettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    dynamodb_table: str
    sns_topic_arn: str = ""
    token_key: str = Field(default="", repr=False)
    token_algorithm: str = "HS256"
    websocket_callback_url: Optional[str] = None
    llm_provider_strategy: str = "LangchainLLMAmazonNovaLiteStrategy"
    bedrock_model_id: str = "amazon.nova-lite-v1:0"
    generation_timeout_seconds: float = Field(default=25.0, gt=0)
    max_prompt_chars: int = Field(default=4000, ge=1)
    connection_ttl_seconds: int = Field(default=7200, ge=1)
    response_ttl_seconds: int = Field(default=3600, ge=1)


def load_settings(
    environ: Optional[Mapping[str, str]] = None,
) -> RelaySettings:
    """Read relay configuration from the environment, once, at init time."""
    env: Mapping[str, str] = os.environ if environ is None else environ
    values: Dict[str, str] = {
        field_name: env[variable]
        for variable, field_name in ENVIRONMENT_VARIABLES.items()
        if env.get(variable)
    }
    return RelaySettings.model_validate(values)
