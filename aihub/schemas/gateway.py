"""
Gateway Request Schemas.

Pydantic schemas for the /api/v2 dispatch endpoints. Field names are
snake_case with camelCase aliases; unknown vendor options pass through.
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class _GatewayRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    model: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        """Dict handed to the vendor adapters."""
        return self.model_dump(by_alias=True, exclude_none=True)


# =============================================================================
# Chat
# =============================================================================

class ChatMessage(BaseModel):
    """One chat message."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    role: Literal["system", "user", "assistant", "tool"]
    content: Optional[Union[str, List[Dict[str, Any]]]] = None
    name: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = Field(None, alias="toolCalls")
    tool_call_id: Optional[str] = Field(None, alias="toolCallId")

    @model_validator(mode="after")
    def check_role_fields(self) -> "ChatMessage":
        if self.role == "tool" and not self.tool_call_id:
            raise ValueError("tool messages require toolCallId")
        if self.role in ("system", "user") and self.content is None:
            raise ValueError(f"{self.role} messages require content")
        return self


class ChatCompletionRequest(_GatewayRequest):
    """Chat completion. Exactly one of messages / prompt."""

    messages: Optional[List[ChatMessage]] = None
    prompt: Optional[str] = None
    stream: bool = False
    temperature: Optional[float] = Field(None, ge=0, le=2)
    top_p: Optional[float] = Field(None, alias="topP", ge=0.1, le=1)
    presence_penalty: Optional[float] = Field(None, alias="presencePenalty", ge=-2, le=2)
    frequency_penalty: Optional[float] = Field(None, alias="frequencyPenalty", ge=-2, le=2)
    max_tokens: Optional[int] = Field(None, alias="maxTokens", ge=1)
    tools: Optional[List[Dict[str, Any]]] = None
    tool_choice: Optional[Union[str, Dict[str, Any]]] = Field(None, alias="toolChoice")
    response_format: Optional[Dict[str, Any]] = Field(None, alias="responseFormat")

    @field_validator("messages")
    @classmethod
    def messages_not_empty(cls, v: Optional[List[ChatMessage]]) -> Optional[List[ChatMessage]]:
        if v is not None and len(v) == 0:
            raise ValueError("messages must contain at least 1 item")
        return v

    @model_validator(mode="after")
    def prompt_xor_messages(self) -> "ChatCompletionRequest":
        if self.messages is None and self.prompt is None:
            raise ValueError("either messages or prompt is required")
        if self.messages is not None and self.prompt is not None:
            raise ValueError("messages and prompt are mutually exclusive")
        if self.prompt is not None:
            self.messages = [ChatMessage(role="user", content=self.prompt)]
            self.prompt = None
        return self

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["messages"] = [
            m.model_dump(by_alias=False, exclude_none=True) for m in self.messages or []
        ]
        return payload


# =============================================================================
# Embeddings / Images / Video
# =============================================================================

class EmbeddingRequest(_GatewayRequest):
    input: Union[str, List[Union[str, int, List[int]]]]
    dimensions: Optional[int] = Field(None, ge=1)

    @field_validator("input")
    @classmethod
    def input_not_empty(cls, v):
        if isinstance(v, (str, list)) and len(v) == 0:
            raise ValueError("input must not be empty")
        return v


class ImageGenerationRequest(_GatewayRequest):
    prompt: str = Field(..., min_length=1)
    n: int = Field(1, ge=1, le=10)
    size: Optional[str] = None
    quality: Optional[str] = None
    style: Optional[str] = None
    response_format: Optional[str] = Field(None, alias="responseFormat")


class VideoGenerationRequest(_GatewayRequest):
    prompt: str = Field(..., min_length=1)
    seconds: Optional[int] = Field(None, ge=1, le=60)
    size: Optional[str] = None
