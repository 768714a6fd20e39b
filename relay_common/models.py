from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, model_validator


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Connection(BaseModel):
    client_id: str
    connection_id: str
    connected_at: str
    expires_at: int


class PromptMessage(BaseModel):
    client_id: str
    request_id: str
    prompt: str
    submitted_at: str = Field(default_factory=utc_timestamp)
    connection_id: Optional[str] = None
    client_request_id: Optional[str] = None


class ResponseMessage(BaseModel):
    client_id: str
    request_id: str
    text: Optional[str] = None
    error: Optional[str] = None
    completed_at: str = Field(default_factory=utc_timestamp)
    connection_id: Optional[str] = None
    client_request_id: Optional[str] = None

    @model_validator(mode="after")
    def check_single_outcome(self) -> "ResponseMessage":
        if (self.text is None) == (self.error is None):
            raise ValueError("exactly one of text or error must be set")
        return self

    @classmethod
    def success(cls, prompt: PromptMessage, text: str) -> "ResponseMessage":
        return cls(
            client_id=prompt.client_id,
            request_id=prompt.request_id,
            text=text,
            connection_id=prompt.connection_id,
            client_request_id=prompt.client_request_id,
        )

    @classmethod
    def failure(cls, prompt: PromptMessage, error: str) -> "ResponseMessage":
        return cls(
            client_id=prompt.client_id,
            request_id=prompt.request_id,
            error=error,
            connection_id=prompt.connection_id,
            client_request_id=prompt.client_request_id,
        )

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_frame(self) -> Dict[str, Any]:
        frame: Dict[str, Any] = {"requestId": self.request_id}
        if self.client_request_id is not None:
            frame["clientRequestId"] = self.client_request_id
        if self.is_error:
            frame["error"] = self.error
        else:
            frame["text"] = self.text
        return frame


class SendPromptRequest(BaseModel):
    action: str = "sendprompt"
    prompt: str
    client_request_id: Optional[str] = Field(
        default=None,
        alias="requestId",
        min_length=1,
        max_length=128,
        pattern=r"^[A-Za-z0-9_\-:.]+$",
    )


class PromptAccepted(BaseModel):
    request_id: str = Field(serialization_alias="requestId")
    client_request_id: Optional[str] = Field(
        default=None, serialization_alias="clientRequestId"
    )
    status: str = "accepted"
    submitted_at: str = Field(serialization_alias="submittedAt")


class DeliveryOutcome(str, Enum):
    DELIVERED = "delivered"
    DROPPED = "dropped"
