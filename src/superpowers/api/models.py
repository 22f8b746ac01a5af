"""
Pydantic models for Superpowers API requests and responses.
This module defines the request and response schemas used by the Superpowers API.
"""

from typing import (
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    Field,
)

from superpowers.core.schema import (
    PageContext,
    ToolResult,
)


# ---------------------------------------------------------------------------
# Pydantic request / response schema
# ---------------------------------------------------------------------------
class SessionResponse(BaseModel):
    """Response with session information."""

    session_id: str


class MessageRequest(BaseModel):
    """Incoming user message."""

    message: str = Field(..., description="User message for the agent")
    session_id: Optional[str] = Field(None, description="Session ID for conversation context")
    context: Optional[PageContext] = Field(None, description="Tab the user is looking at")
    images: List[str] = Field(default_factory=list, description="Base64 encoded screenshots")
    provider: Optional[str] = Field(None, description="Override the configured provider")
    model: Optional[str] = Field(None, description="Override the configured model")
    temperature: Optional[float] = None


class MessageResponse(BaseModel):
    """API response returned to the caller."""

    reply: str
    tool_results: List[ToolResult] | None = None
    iterations: int
    finished: bool
    session_id: str
