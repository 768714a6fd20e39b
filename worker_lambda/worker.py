import json
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Dict, List, Optional, Union

import boto3
from aws_lambda_powertools import Logger
from aws_lambda_powertools.utilities.data_classes import SNSEvent
from aws_lambda_powertools.utilities.typing import LambdaContext
from botocore.client import BaseClient
from botocore.config import Config
from botocore.exceptions import ClientError
from langchain_aws import ChatBedrockConverse
from langchain_core.messages import AIMessage, HumanMessage
from pydantic import BaseModel, Field, ValidationError

from relay_common.config import RelaySettings, load_settings
from relay_common.delivery import ConnectionGateway, ResponseDelivery
from relay_common.errors import GenerationTimeout
from relay_common.models import (
    DeliveryOutcome,
    PromptMessage,
    ResponseMessage,
)
from relay_common.registry import (
    ConnectionRegistry,
    is_conditional_check_failure,
)

logger: Logger = Logger()

settings: RelaySettings = load_settings()

dynamodb_resource = boto3.resource("dynamodb")


def bedrock_client_config(budget_seconds: float) -> Config:
    # a single attempt must finish inside the generation budget
    connect_timeout: float = min(2.0, budget_seconds * 0.1)
    return Config(
        connect_timeout=connect_timeout,
        read_timeout=budget_seconds * 0.8,
        retries={"total_max_attempts": 1, "mode": "standard"},
    )


bedrock_client: BaseClient = boto3.client(
    "bedrock-runtime",
    config=bedrock_client_config(settings.generation_timeout_seconds),
)
management_client = boto3.client(
    "apigatewaymanagementapi", endpoint_url=settings.websocket_callback_url
)


class LLMUsage(BaseModel):
    input_tokens: int = Field(default=0)
    output_tokens: int = Field(default=0)


class LLMResponse(BaseModel):
    content: Union[str, List[Union[str, Dict[Any, Any]]]]
    usage: LLMUsage

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content

        parts: List[str] = []
        for part in self.content:
            if isinstance(part, str):
                parts.append(part)
            elif part.get("type", "text") == "text" and "text" in part:
                parts.append(str(part["text"]))
        return "".join(parts)


class ResponseLedger:
    def __init__(
        self, table_name: str, dynamodb_resource: Any, ttl_seconds: int = 3600
    ):
        self.table: Any = dynamodb_resource.Table(table_name)
        self.ttl_seconds: int = ttl_seconds
        logger.info(f"ResponseLedger initialized for table: {table_name}")

    @staticmethod
    def key(client_id: str, request_id: str) -> Dict[str, str]:
        return {
            "PK": f"REQUEST#{client_id}#{request_id}",
            "SK": "RESPONSE",
        }

    def get(
        self, client_id: str, request_id: str
    ) -> Optional[ResponseMessage]:
        response: Dict[str, Any] = self.table.get_item(
            Key=self.key(client_id, request_id), ConsistentRead=True
        )
        item: Optional[Dict[str, Any]] = response.get("Item")
        if item is None:
            return None
        return ResponseMessage.model_validate(item)

    def save(self, response: ResponseMessage) -> ResponseMessage:
        item: Dict[str, Any] = {
            **self.key(response.client_id, response.request_id),
            **response.model_dump(exclude_none=True),
            "expires_at": int(time.time()) + self.ttl_seconds,
        }
        try:
            self.table.put_item(
                Item=item, ConditionExpression="attribute_not_exists(PK)"
            )
        except ClientError as e:
            if not is_conditional_check_failure(e):
                raise
            logger.info(
                f"Response for {response.request_id} already recorded"
            )
            existing: Optional[ResponseMessage] = self.get(
                response.client_id, response.request_id
            )
            if existing is not None:
                return existing
        return response


class LLMProviderStrategy(ABC):
    def __init__(self, model_id: str, client: BaseClient):
        self.model_id = model_id
        self.client = client
        self.region_name = self.client.meta.region_name

    @abstractmethod
    def invoke_llm(self, prompt_text: str) -> LLMResponse:
        raise NotImplementedError


class LangchainLLMAmazonNovaLiteStrategy(LLMProviderStrategy):
    def invoke_llm(self, prompt_text: str) -> LLMResponse:
        logger.info(f"LangChain Strategy: Invoking model {self.model_id}")

        try:
            chat = ChatBedrockConverse(
                model=self.model_id,
                client=self.client,
                region_name=self.region_name,
            )

            response: AIMessage = chat.invoke(
                [HumanMessage(content=prompt_text)]
            )

            usage_metadata: Dict[str, Any] = dict(
                response.usage_metadata or {}
            )
            usage: LLMUsage = LLMUsage(
                input_tokens=usage_metadata.get("input_tokens", 0),
                output_tokens=usage_metadata.get("output_tokens", 0),
            )

            return LLMResponse(content=response.content, usage=usage)

        except Exception:
            logger.exception("Error invoking Bedrock via LangChain")
            raise


class LLMProviderFactory:
    def __init__(self, model_id: str, client: BaseClient):
        self.model_id: str = model_id
        self.client: BaseClient = client
        self.strategies: Dict[str, type[LLMProviderStrategy]] = {
            "LangchainLLMAmazonNovaLiteStrategy": LangchainLLMAmazonNovaLiteStrategy,
        }

    def get_strategy(self, strategy_name: str) -> LLMProviderStrategy:
        strategy_class = self.strategies.get(strategy_name)
        if not strategy_class:
            raise ValueError(f"Unknown LLM strategy: {strategy_name}")

        return strategy_class(self.model_id, self.client)


class LLMProvider:
    def __init__(self, strategy: LLMProviderStrategy):
        self.strategy: LLMProviderStrategy = strategy

    def generate(self, prompt_text: str) -> LLMResponse:
        return self.strategy.invoke_llm(prompt_text)


class PromptProcessor:
    """Turns one prompt into exactly one terminal response."""

    def __init__(self, llm_provider: LLMProvider, timeout_seconds: float):
        self.llm_provider: LLMProvider = llm_provider
        self.timeout_seconds: float = timeout_seconds

    def _generate_within_budget(self, prompt_text: str) -> LLMResponse:
        executor: ThreadPoolExecutor = ThreadPoolExecutor(max_workers=1)
        try:
            future = executor.submit(self.llm_provider.generate, prompt_text)
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError as e:
            raise GenerationTimeout(
                f"Generation exceeded {self.timeout_seconds:g}s"
            ) from e
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def process(self, prompt: PromptMessage) -> ResponseMessage:
        started: float = time.monotonic()
        try:
            llm_response: LLMResponse = self._generate_within_budget(
                prompt.prompt
            )
        except GenerationTimeout as e:
            logger.warning(f"Prompt {prompt.request_id} timed out: {e}")
            return ResponseMessage.failure(prompt, str(e))
        except Exception as e:
            logger.exception(f"Generation failed for {prompt.request_id}")
            return ResponseMessage.failure(
                prompt, f"Generation failed: {type(e).__name__}"
            )

        latency_ms: int = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Generated response for {prompt.request_id}",
            extra={
                "latency_ms": latency_ms,
                "input_tokens": llm_response.usage.input_tokens,
                "output_tokens": llm_response.usage.output_tokens,
            },
        )
        return ResponseMessage.success(prompt, llm_response.text)


class Worker:
    def __init__(
        self,
        response_ledger: ResponseLedger,
        prompt_processor: PromptProcessor,
        response_delivery: ResponseDelivery,
    ):
        self.response_ledger: ResponseLedger = response_ledger
        self.prompt_processor: PromptProcessor = prompt_processor
        self.response_delivery: ResponseDelivery = response_delivery

    def process_record(self, prompt: PromptMessage) -> DeliveryOutcome:
        logger.info(f"Processing prompt: {prompt.request_id}")

        response: Optional[ResponseMessage] = self.response_ledger.get(
            prompt.client_id, prompt.request_id
        )
        if response is not None:
            logger.info(
                f"Prompt {prompt.request_id} was redelivered, "
                "reusing recorded response"
            )
        else:
            response = self.response_ledger.save(
                self.prompt_processor.process(prompt)
            )

        outcome: DeliveryOutcome = self.response_delivery.deliver(response)
        logger.info(
            f"Finished prompt {prompt.request_id}",
            extra={"outcome": outcome.value, "is_error": response.is_error},
        )
        return outcome


connection_registry: ConnectionRegistry = ConnectionRegistry(
    settings.dynamodb_table,
    dynamodb_resource,
    connection_ttl_seconds=settings.connection_ttl_seconds,
)
response_ledger: ResponseLedger = ResponseLedger(
    settings.dynamodb_table,
    dynamodb_resource,
    ttl_seconds=settings.response_ttl_seconds,
)

strategy: LLMProviderStrategy = LLMProviderFactory(
    settings.bedrock_model_id, bedrock_client
).get_strategy(settings.llm_provider_strategy)

llm_provider: LLMProvider = LLMProvider(strategy)

worker: Worker = Worker(
    response_ledger,
    PromptProcessor(llm_provider, settings.generation_timeout_seconds),
    ResponseDelivery(
        connection_registry, ConnectionGateway(management_client)
    ),
)


@logger.inject_lambda_context
def lambda_handler(
    event: Dict[str, Any], context: LambdaContext
) -> Dict[str, Any]:
    logger.info("Worker Lambda triggered")

    outcomes: Dict[str, str] = {}
    for record in SNSEvent(event).records:
        try:
            prompt: PromptMessage = PromptMessage.model_validate_json(
                record.sns.message
            )
        except ValidationError:
            logger.exception(
                f"Discarding unreadable SNS message {record.sns.message_id}"
            )
            continue

        logger.append_keys(
            request_id=prompt.request_id, client_id=prompt.client_id
        )
        try:
            outcomes[prompt.request_id] = worker.process_record(prompt).value
        except Exception:
            logger.exception(f"Error processing prompt {prompt.request_id}")
            raise
        finally:
            logger.remove_keys(["request_id", "client_id"])

    return {"statusCode": 200, "body": json.dumps({"outcomes": outcomes})}
