"""Pydantic models for the agent relay request and reply."""

from datetime import datetime, timezone
from typing import Any, Optional
from pydantic import BaseModel, Field


class ChatRequest(BaseModel):
    """A user message bound for the support agent."""
    message: str = Field(..., description="User message text")
    agent_id: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None


class AgentReply(BaseModel):
    """Relayed agent reply.

    ``response`` holds the recovered JSON object when the agent produced one,
    otherwise the reply text; ``raw_response`` keeps what the service sent.
    """
    success: bool = True
    response: Any = None
    raw_response: Any = None
    agent_id: str
    user_id: str
    session_id: str
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_structured(self) -> bool:
        return isinstance(self.response, (dict, list))

    def reply_text(self) -> str:
        """Best human-readable text of the reply."""
        if isinstance(self.response, dict):
            for key in ("response", "message", "result", "answer"):
                value = self.response.get(key)
                if isinstance(value, str):
                    return value
        if isinstance(self.response, str):
            return self.response
        return ""
