"""Tests for the AgentClient relay."""

import json

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock

from supportdesk.core.agent_client import (
    AgentAPIError,
    AgentClient,
    AgentError,
    AgentRequestError,
)
from supportdesk.models.config import AgentConfig
from supportdesk.models.responses import ChatRequest


@pytest.fixture
def agent_config():
    """Provides an AgentConfig pointing at a fake endpoint."""
    return AgentConfig(
        api_key="test_key",
        api_url="https://agent.test/v3/inference/chat/",
        agent_id="agent-1"
    )


@pytest.fixture
def agent_client(agent_config):
    """Provides an AgentClient with a mocked HTTP client."""
    client = AgentClient(agent_config)
    client.client = AsyncMock()
    return client


def _make_response(status_code=200, body=None, text=""):
    """Helper to create a mock inference-service response."""
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = body
    resp.text = text or json.dumps(body)
    return resp


@pytest.mark.asyncio
async def test_chat_recovers_fenced_json(agent_client):
    """Test a fenced JSON reply is parsed into an object."""
    # Arrange
    raw = "```json\n{\"response\": \"Reset it under Settings.\", \"status\": \"success\",}\n```"
    agent_client.client.post.return_value = _make_response(body={"response": raw})

    # Act
    reply = await agent_client.chat(ChatRequest(message="How do I reset my password?"))

    # Assert
    assert reply.success is True
    assert reply.response == {"response": "Reset it under Settings.", "status": "success"}
    assert reply.raw_response == raw
    assert reply.agent_id == "agent-1"
    assert reply.user_id.startswith("user-")
    assert reply.session_id.startswith("session-")

    agent_client.client.post.assert_called_once()
    args, kwargs = agent_client.client.post.call_args
    assert args[0] == "https://agent.test/v3/inference/chat/"
    assert kwargs["headers"] == {"x-api-key": "test_key"}
    assert kwargs["json"]["message"] == "How do I reset my password?"
    assert kwargs["json"]["agent_id"] == "agent-1"


@pytest.mark.asyncio
async def test_chat_keeps_supplied_ids(agent_client):
    """Test explicit ids are forwarded unchanged."""
    agent_client.client.post.return_value = _make_response(body={"response": "Hi!"})

    reply = await agent_client.chat(ChatRequest(
        message="hello",
        agent_id="agent-9",
        user_id="user-7",
        session_id="session-7"
    ))

    payload = agent_client.client.post.call_args.kwargs["json"]
    assert payload == {
        "user_id": "user-7",
        "agent_id": "agent-9",
        "session_id": "session-7",
        "message": "hello",
    }
    assert reply.session_id == "session-7"


@pytest.mark.asyncio
async def test_chat_passes_object_response_through(agent_client):
    """Test an already-structured reply is used as-is."""
    body = {"response": {"response": "Done.", "confidence": 0.95}}
    agent_client.client.post.return_value = _make_response(body=body)

    reply = await agent_client.chat(ChatRequest(message="status?"))

    assert reply.response == {"response": "Done.", "confidence": 0.95}


@pytest.mark.asyncio
async def test_chat_plain_text_reply(agent_client):
    """Test a plain-text reply stays a string."""
    text = "Our support team is available 24/7."
    agent_client.client.post.return_value = _make_response(body={"response": text})

    reply = await agent_client.chat(ChatRequest(message="hours?"))

    assert reply.response == text
    assert reply.reply_text() == text


@pytest.mark.asyncio
async def test_chat_error_status(agent_client):
    """Test a non-2xx status raises AgentAPIError with details."""
    agent_client.client.post.return_value = _make_response(
        status_code=502, body=None, text="upstream down")

    with pytest.raises(AgentAPIError) as exc_info:
        await agent_client.chat(ChatRequest(message="hello"))

    assert exc_info.value.status_code == 502
    assert exc_info.value.details == "upstream down"
    assert "502" in str(exc_info.value)


@pytest.mark.asyncio
async def test_chat_non_json_body(agent_client):
    """Test a body that is not JSON raises AgentAPIError."""
    resp = _make_response(body=None, text="<html>oops</html>")
    resp.json.side_effect = ValueError("not json")
    agent_client.client.post.return_value = resp

    with pytest.raises(AgentAPIError):
        await agent_client.chat(ChatRequest(message="hello"))


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [
    httpx.ConnectError("connection refused"),
    httpx.ReadTimeout("read timed out"),
])
async def test_chat_transport_errors(agent_client, error):
    """Test transport failures are wrapped in AgentAPIError."""
    agent_client.client.post.side_effect = error

    with pytest.raises(AgentAPIError) as exc_info:
        await agent_client.chat(ChatRequest(message="hello"))

    assert exc_info.value.__cause__ is error


@pytest.mark.asyncio
async def test_chat_requires_message(agent_client):
    """Test an empty message is rejected before any request."""
    with pytest.raises(AgentRequestError):
        await agent_client.chat(ChatRequest(message="   "))

    agent_client.client.post.assert_not_called()


@pytest.mark.asyncio
async def test_chat_requires_api_key(agent_config):
    """Test a missing API key raises AgentError."""
    client = AgentClient(agent_config.model_copy(update={"api_key": None}))
    client.client = AsyncMock()

    with pytest.raises(AgentError):
        await client.chat(ChatRequest(message="hello"))

    client.client.post.assert_not_called()


@pytest.mark.asyncio
async def test_context_manager_closes_client(agent_config):
    """Test the async context manager closes the HTTP client."""
    client = AgentClient(agent_config)
    client.client = AsyncMock()

    async with client:
        pass

    client.client.aclose.assert_awaited_once()
