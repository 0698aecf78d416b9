"""Async relay to the conversational-AI inference service."""

import logging
import time
from typing import Any, Dict, Optional

import httpx

from ..models.config import AgentConfig
from ..models.responses import AgentReply, ChatRequest
from .json_utils import recover_llm_response

logger = logging.getLogger(__name__)


class AgentError(Exception):
    """Base error for agent relay failures."""


class AgentRequestError(AgentError):
    """The request could not be sent as given."""


class AgentAPIError(AgentError):
    """The inference service failed or answered with an error status."""

    def __init__(self, message: str, status_code: Optional[int] = None, details: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details


class AgentClient:
    """Sends user messages to the agent and normalizes its replies."""

    def __init__(self, config: AgentConfig):
        self.config = config
        self.client = httpx.AsyncClient(
            headers={"Content-Type": "application/json"},
            timeout=httpx.Timeout(config.request_timeout),
        )

    async def __aenter__(self) -> "AgentClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    def _build_payload(self, request: ChatRequest) -> Dict[str, Any]:
        stamp = int(time.time() * 1000)
        return {
            "user_id": request.user_id or f"user-{stamp}",
            "agent_id": request.agent_id or self.config.agent_id,
            "session_id": request.session_id or f"session-{stamp}",
            "message": request.message,
        }

    async def chat(self, request: ChatRequest) -> AgentReply:
        """Relay one message and return the normalized reply.

        Raises:
            AgentRequestError: the message is empty.
            AgentError: no API key is configured.
            AgentAPIError: transport failure or a non-2xx status.
        """
        if not request.message or not request.message.strip():
            raise AgentRequestError("Missing required field: message is required")
        if not self.config.api_key:
            raise AgentError("No API key configured for the inference service (set LYZR_API_KEY)")

        payload = self._build_payload(request)
        start = time.monotonic()
        try:
            resp = await self.client.post(
                self.config.api_url,
                json=payload,
                headers={"x-api-key": self.config.api_key},
            )
        except httpx.TimeoutException as e:
            raise AgentAPIError(f"Request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise AgentAPIError(f"Request failed: {e}") from e

        latency_ms = (time.monotonic() - start) * 1000
        logger.debug(
            f"Agent request to {self.config.api_url} returned {resp.status_code} in {latency_ms:.0f}ms")

        if not 200 <= resp.status_code < 300:
            raise AgentAPIError(
                f"API returned status {resp.status_code}",
                status_code=resp.status_code,
                details=resp.text,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise AgentAPIError(
                "Inference service returned a non-JSON body",
                status_code=resp.status_code,
                details=resp.text,
            ) from e

        raw_response = data.get("response") if isinstance(data, dict) else data
        parsed = recover_llm_response(
            raw_response, max_blocks=self.config.parse_max_blocks)

        return AgentReply(
            success=True,
            response=parsed,
            raw_response=raw_response,
            agent_id=payload["agent_id"],
            user_id=payload["user_id"],
            session_id=payload["session_id"],
        )
