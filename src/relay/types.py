import json
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class Message(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Literal["system", "user", "assistant"]
    content: Union[str, List[Dict[str, Any]]]

    def text(self) -> str:
        return content_text(self.content)


class ToolDefinition(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    description: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None

    def input_schema(self) -> dict[str, Any]:
        if self.parameters is None:
            return {"type": "object", "properties": {}}
        if self.parameters.get("type") == "object":
            return dict(self.parameters)
        # bare property maps are wrapped into an object schema
        return {"type": "object", "properties": dict(self.parameters)}


class CanonicalRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    messages: List[Message]
    system_prompt: Optional[str] = None
    tools: Optional[List[ToolDefinition]] = None
    max_tokens: Optional[int] = Field(default=None, ge=1)
    temperature: Optional[float] = None
    stream: bool = False


class ToolCall(BaseModel):
    id: str
    name: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return max(self.input_tokens, 0) + max(self.output_tokens, 0)


class CanonicalResponse(BaseModel):
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    model: str
    stop_reason: str | None = None
    reasoning: str | None = None


@dataclass(frozen=True, slots=True)
class TextEvent:
    content: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "content": self.content}


@dataclass(frozen=True, slots=True)
class UsageEvent:
    input_tokens: int
    output_tokens: int

    @property
    def total_tokens(self) -> int:
        return max(self.input_tokens, 0) + max(self.output_tokens, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "usage",
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
        }


@dataclass(frozen=True, slots=True)
class DoneEvent:
    stop_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": "done"}
        if self.stop_reason is not None:
            payload["stop_reason"] = self.stop_reason
        return payload


StreamEvent = Union[TextEvent, UsageEvent, DoneEvent]


def content_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict):
                text = block.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)
    return str(content)


def estimate_tokens(content: Any) -> int:
    """Rough token count (about four characters per token).

    This is an approximation for quota bookkeeping only, never a tokenizer.
    """
    if isinstance(content, str):
        text = content
    elif isinstance(content, list) and all(isinstance(item, dict) for item in content):
        text = content_text(content)
    else:
        text = json.dumps(content, ensure_ascii=False, default=str)
    if not text:
        return 0
    return -(-len(text) // 4)


def estimate_request_tokens(request: CanonicalRequest) -> int:
    total = estimate_tokens(request.system_prompt or "")
    for message in request.messages:
        total += estimate_tokens(message.text())
    return total
