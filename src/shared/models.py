"""Core data models for the assistant.

Messages and generator outcomes are discriminated unions: the ``role`` and
``kind`` fields select the variant, so persisted dicts parse back into the
right model without runtime type switches.
"""

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class LoopState(str, Enum):
    """States of the orchestration loop."""
    GENERATING = "GENERATING"
    AWAITING_TOOLS = "AWAITING_TOOLS"
    DONE = "DONE"


class CapabilityCall(BaseModel):
    """A request from the generator to invoke one capability."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"call_{uuid.uuid4().hex[:24]}")
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)

    def to_openai(self) -> dict[str, Any]:
        """Render as an OpenAI ``tool_calls`` entry."""
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": json.dumps(self.arguments)
            }
        }


class _MessageBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    content: str = ""
    created_at: datetime = Field(default_factory=utc_now)


class UserMessage(_MessageBase):
    """Input typed by the user."""
    role: Literal["user"] = "user"


class AssistantMessage(_MessageBase):
    """
    Output of one generation step.

    Carries the capability calls the generator asked for, if any.
    """
    role: Literal["assistant"] = "assistant"
    calls: list[CapabilityCall] = Field(default_factory=list)

    @property
    def has_calls(self) -> bool:
        return bool(self.calls)


class ToolMessage(_MessageBase):
    """Result of one capability call, correlated by ``call_id``."""
    role: Literal["tool"] = "tool"
    call_id: str
    capability_name: str
    is_error: bool = False


Message = Annotated[
    Union[UserMessage, AssistantMessage, ToolMessage],
    Field(discriminator="role")
]

message_adapter: TypeAdapter[Message] = TypeAdapter(Message)


class Conversation(BaseModel):
    """Conversation header; the message log lives in the store."""
    id: str = Field(default_factory=new_id)
    user_id: str
    title: str = Field(default_factory=lambda: f"Conversation {utc_now().isoformat()}")
    state: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class CapabilityDescriptor(BaseModel):
    """A tool exposed by a provider. ``input_schema`` is passed through verbatim."""
    name: str
    provider_id: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict)

    def to_openai_tool(self) -> dict[str, Any]:
        """Render in OpenAI function-calling format."""
        parameters = self.input_schema or {"type": "object", "properties": {}}
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters
            }
        }


class CallStatus(str, Enum):
    """Status of a capability execution."""
    SUCCESS = "success"
    ERROR = "error"
    NOT_FOUND = "not_found"
    VALIDATION_ERROR = "validation_error"
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"


class CapabilityCallResult(BaseModel):
    """
    Result of a capability execution.

    Recorded for audit; the loop only consumes it as tool message content.
    """
    call_id: str
    capability_name: str
    provider_id: Optional[str] = None
    status: CallStatus
    output: Optional[Any] = None
    error: Optional[str] = None
    duration_ms: float = 0

    @property
    def ok(self) -> bool:
        return self.status == CallStatus.SUCCESS

    def to_content(self) -> str:
        """Encode as tool message content. Failures become a JSON payload."""
        if self.ok:
            if self.output is None:
                return "Tool executed successfully."
            if isinstance(self.output, str):
                return self.output
            return json.dumps(self.output, indent=2, default=str)

        return json.dumps({
            "status": self.status.value,
            "error": self.error or "Unknown error",
            "capability": self.capability_name,
        })


class FinalAnswer(BaseModel):
    """The generator is done and answers the user."""
    kind: Literal["final_answer"] = "final_answer"
    text: str


class CapabilityRequest(BaseModel):
    """The generator wants one or more capabilities invoked."""
    kind: Literal["capability_request"] = "capability_request"
    calls: list[CapabilityCall] = Field(..., min_length=1)
    text: str = ""


Outcome = Annotated[
    Union[FinalAnswer, CapabilityRequest],
    Field(discriminator="kind")
]


class ExecutionStatus(str, Enum):
    """Lifecycle of a recorded tool execution."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ToolExecutionRecord(BaseModel):
    """Audit entry for one capability execution."""
    id: str = Field(default_factory=new_id)
    conversation_id: str
    call_id: str
    tool_name: str
    provider_id: Optional[str] = None
    input: dict[str, Any] = Field(default_factory=dict)
    output: Optional[Any] = None
    error: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.COMPLETED
    duration_ms: float = 0
    created_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_result(
        cls,
        conversation_id: str,
        call: CapabilityCall,
        result: CapabilityCallResult
    ) -> "ToolExecutionRecord":
        return cls(
            conversation_id=conversation_id,
            call_id=call.id,
            tool_name=call.name,
            provider_id=result.provider_id,
            input=call.arguments,
            output=result.output,
            error=result.error,
            status=ExecutionStatus.COMPLETED if result.ok else ExecutionStatus.FAILED,
            duration_ms=result.duration_ms,
        )


class TurnResult(BaseModel):
    """Everything produced by one turn of the orchestration loop."""
    messages: list[Message] = Field(default_factory=list)
    final_state: LoopState = LoopState.DONE
    iterations: int = 0

    @property
    def final_text(self) -> Optional[str]:
        """Last non-empty assistant text of the turn."""
        for message in reversed(self.messages):
            if isinstance(message, AssistantMessage) and message.content.strip():
                return message.content
        return None
