"""
Tests for the cloud inference client.

These tests verify:
1. No request is made without a stored API key
2. HTTP statuses and transport failures map to the right error kinds
3. The request carries the full persona and at most 10 history turns
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from conftest import MemoryPreferenceStore
from hamorah.ai.cloud_client import API_KEY_PREFERENCE, CloudClient
from hamorah.ai.errors import ErrorKind
from hamorah.conversation import ConversationTurn, MessageRole


def api_response(status_code=200, body=None):
    response = MagicMock()
    response.status_code = status_code
    if isinstance(body, Exception):
        response.json.side_effect = body
    else:
        response.json.return_value = body if body is not None else {}
    return response


def completion(content, prompt_tokens=850, completion_tokens=120):
    return api_response(200, {
        'choices': [{'message': {'role': 'assistant', 'content': content}}],
        'usage': {'prompt_tokens': prompt_tokens, 'completion_tokens': completion_tokens},
    })


@pytest.fixture
def client(persona_loader):
    store = MemoryPreferenceStore({API_KEY_PREFERENCE: "xai-test-key"})
    return CloudClient(store, persona_loader, api_url="https://api.example.com/v1/chat/completions")


class TestApiKey:
    """Test credential handling."""

    @pytest.mark.asyncio
    async def test_no_key_makes_no_request(self, persona_loader):
        client = CloudClient(MemoryPreferenceStore(), persona_loader)

        with patch('hamorah.ai.cloud_client.requests.post') as mock_post:
            result = await client.chat("Hello")

        mock_post.assert_not_called()
        assert not result.success
        assert result.error_kind == ErrorKind.CONFIGURATION
        assert "API key not configured" in result.error

    def test_save_strips_whitespace(self, persona_loader):
        store = MemoryPreferenceStore()
        client = CloudClient(store, persona_loader)

        client.save_api_key("  xai-abc \n")

        assert store.values[API_KEY_PREFERENCE] == "xai-abc"
        assert client.has_api_key()

        client.clear_api_key()
        assert not client.has_api_key()


class TestChat:
    """Test request building and response handling."""

    @pytest.mark.asyncio
    async def test_successful_response(self, client):
        content = "God is near.\n\n**Psalm 34:18** - 'The LORD is nigh unto them...'\n**Isaiah 41:10**"

        with patch('hamorah.ai.cloud_client.requests.post', return_value=completion(content)) as mock_post:
            result = await client.chat("I feel alone")

        assert result.success
        assert result.content == content
        assert result.related_references == ("Psalm 34:18", "Isaiah 41:10")
        assert result.diagnostics.provider == "grok"
        assert result.diagnostics.prompt_tokens == 850
        assert result.diagnostics.response_tokens == 120
        assert result.diagnostics.latency_ms is not None

        kwargs = mock_post.call_args.kwargs
        assert kwargs['headers']['Authorization'] == "Bearer xai-test-key"
        assert kwargs['json']['model'] == client.model

    @pytest.mark.asyncio
    async def test_request_uses_full_persona_and_ten_turns(self, client, persona_loader):
        history = [
            ConversationTurn(MessageRole.USER if i % 2 == 0 else MessageRole.ASSISTANT, f"turn-{i}")
            for i in range(30)
        ]

        with patch('hamorah.ai.cloud_client.requests.post', return_value=completion("Amen.")) as mock_post:
            await client.chat("What now?", history)

        messages = mock_post.call_args.kwargs['json']['messages']
        assert len(messages) == 12
        assert messages[0] == {'role': 'system', 'content': persona_loader.full()}
        assert messages[1]['content'] == "turn-20"
        assert messages[-1] == {'role': 'user', 'content': "What now?"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status, body, kind, message", [
        (401, {}, ErrorKind.CONFIGURATION, "Invalid API key. Please check your Grok API key in Settings."),
        (429, {}, ErrorKind.NETWORK, "Rate limit exceeded. Please wait a moment and try again."),
        (500, {'error': {'message': "upstream overloaded"}}, ErrorKind.NETWORK, "API error: upstream overloaded"),
        (502, ValueError("not json"), ErrorKind.NETWORK, "API error: Unknown error"),
    ])
    async def test_error_statuses(self, client, status, body, kind, message):
        with patch('hamorah.ai.cloud_client.requests.post', return_value=api_response(status, body)):
            result = await client.chat("Hello")

        assert not result.success
        assert result.error_kind == kind
        assert result.error == message

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failure", [
        requests.exceptions.ConnectionError("Name or service not known"),
        requests.exceptions.Timeout("read timed out"),
    ])
    async def test_transport_failures(self, client, failure):
        with patch('hamorah.ai.cloud_client.requests.post', side_effect=failure):
            result = await client.chat("Hello")

        assert result.error_kind == ErrorKind.NETWORK
        assert result.error == "Network error. Please check your internet connection."

    @pytest.mark.asyncio
    async def test_malformed_body(self, client):
        with patch('hamorah.ai.cloud_client.requests.post', return_value=api_response(200, {'id': "abc"})):
            result = await client.chat("Hello")

        assert result.error_kind == ErrorKind.GENERATION

    @pytest.mark.asyncio
    async def test_empty_content(self, client):
        with patch('hamorah.ai.cloud_client.requests.post', return_value=completion("   ")):
            result = await client.chat("Hello")

        assert not result.success
        assert result.error == "AI returned an empty response."
