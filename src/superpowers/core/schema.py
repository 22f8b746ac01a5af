"""
Schema definitions for model <-> agent <-> tool messages.

These data models serve as the contract between the LLM transport, the orchestration loop, the
streaming parser and individual tools.  We keep them separate from runtime logic so they can be
imported anywhere without side-effects.
"""

import time
import uuid
from typing import (
    Any,
    Dict,
    List,
    Literal,
    Optional,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
)


def new_id() -> str:
    """Return a fresh random identifier."""
    return str(uuid.uuid4())


def _now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Tool catalogue
# ---------------------------------------------------------------------------
class ParameterSpec(BaseModel):
    """JSON-schema-like description of one tool parameter."""

    model_config = ConfigDict(extra="allow")

    type: str = "string"
    description: str = ""


class ToolParameters(BaseModel):
    """Parameter block of a tool declaration."""

    type: Literal["object"] = "object"
    properties: Dict[str, ParameterSpec] = Field(default_factory=dict)
    required: List[str] = Field(default_factory=list)


class Tool(BaseModel):
    """A capability advertised to the model."""

    name: str = Field(..., description="Unique tool name")
    description: str = ""
    parameters: ToolParameters = Field(default_factory=ToolParameters)


# ---------------------------------------------------------------------------
# Calls and results
# ---------------------------------------------------------------------------
class ToolCall(BaseModel):
    """A call that the model wants the agent to execute."""

    id: str = Field(default_factory=new_id, description="Locally generated call id")
    name: str = Field("", description="Registered tool name")
    arguments: Dict[str, Any] = Field(
        default_factory=dict, description="Keyword arguments for the tool"
    )


class ToolResult(BaseModel):
    """Outcome of a single tool call."""

    id: str
    name: str
    result: Any = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------
Role = Literal["user", "assistant", "system", "tool"]


class Attachment(BaseModel):
    """Binary payload attached to a user message (currently images only)."""

    id: str = Field(default_factory=new_id)
    type: Literal["image"] = "image"
    media_type: str = "image/png"
    data: str = Field(..., description="Base64 encoded payload")


class AgentMessage(BaseModel):
    """One conversation turn as seen by the agent."""

    id: str = Field(default_factory=new_id)
    role: Role
    content: str = ""
    tool_call_id: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    tool_results: Optional[List[ToolResult]] = None
    attachments: Optional[List[Attachment]] = None


class LLMMessage(BaseModel):
    """Transport-level message handed to an LLM provider."""

    role: Role
    content: str = ""
    images: Optional[List[str]] = None  # base64 encoded
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None


class LLMOptions(BaseModel):
    """Per-run provider selection and sampling options."""

    provider: str
    model: str
    system_prompt: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    api_key: Optional[str] = None
    custom_url: Optional[str] = None


class PageContext(BaseModel):
    """Metadata about the browser tab the user is looking at."""

    id: Optional[int] = None
    title: str = ""
    url: str = ""


# ---------------------------------------------------------------------------
# Progress / results
# ---------------------------------------------------------------------------
PlannerStepType = Literal["thinking", "tool_execution", "tool_result"]


class PlannerStep(BaseModel):
    """UI-facing record of one unit of agent progress."""

    id: str = Field(default_factory=new_id)
    type: PlannerStepType
    content: str
    timestamp: int = Field(default_factory=_now_ms)
    tool_name: Optional[str] = None
    tool_result: Any = None
    is_completed: bool = False


class ToolParseResult(BaseModel):
    """What the streaming parser reports after a chunk or at the end of a stream."""

    tool_calls: List[ToolCall] = Field(default_factory=list)
    is_complete: bool = False
    has_tool_block: bool = False
    display_message: Optional[str] = None


class AgentResponse(BaseModel):
    """Final outcome of :meth:`Agent.run`."""

    message: str
    tool_calls: List[ToolCall] = Field(default_factory=list)
    tool_results: List[ToolResult] = Field(default_factory=list)
    iterations: int = 0
    finished: bool = True


class AgentProgress(BaseModel):
    """Partial response passed to progress callbacks while a run is in flight."""

    message: str = ""
    chunk: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)
    tool_results: List[ToolResult] = Field(default_factory=list)
    planner_steps: List[PlannerStep] = Field(default_factory=list)
    iterations: int = 0
    finished: bool = False
