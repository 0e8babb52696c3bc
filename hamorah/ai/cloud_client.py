"""
Cloud Inference Client for Hamorah
Talks to the xAI Grok chat-completions endpoint and manages the API key kept
in the secure preference store.

Without a stored key no request is made.
"""

import asyncio
import time
from dataclasses import dataclass

import requests

from ..config import CLOUD_API_URL, CLOUD_HISTORY_TURNS, CLOUD_MAX_TOKENS, CLOUD_MODEL_NAME, CLOUD_TIMEOUT_SECONDS, DEFAULT_TEMPERATURE
from ..conversation import ConversationTurn
from ..logging_config import debug_log, error
from ..preferences import PreferenceStore, get_preference_store
from . import response_post_processor
from .errors import AiError, ConfigurationError, GenerationError, NetworkError
from .persona import PersonaLoader, get_persona_loader
from .prompt_formatter import PromptStyle, build_prompt
from .results import AiDiagnostics, AiResult

API_KEY_PREFERENCE = 'grok_api_key'
PROVIDER_LABEL = 'grok'


@dataclass(frozen=True)
class CloudCompletion:
    content: str
    prompt_tokens: int | None = None
    response_tokens: int | None = None


class CloudClient:
    """
    Client for the cloud provider.

    Example:
        client = CloudClient()
        client.save_api_key("xai-...")
        result = await client.chat("I'm anxious about tomorrow", history)
    """

    def __init__(
        self,
        preference_store: PreferenceStore = None,
        persona_loader: PersonaLoader = None,
        api_url: str = CLOUD_API_URL,
        model: str = CLOUD_MODEL_NAME,
        timeout: float = CLOUD_TIMEOUT_SECONDS,
    ):
        self.preference_store = preference_store or get_preference_store()
        self.persona_loader = persona_loader or get_persona_loader()
        self.api_url = api_url
        self.model = model
        self.timeout = timeout

    # -------------------------------------------------------------------------
    # API key
    # -------------------------------------------------------------------------

    def get_api_key(self) -> str | None:
        return self.preference_store.read(API_KEY_PREFERENCE)

    def has_api_key(self) -> bool:
        return bool(self.get_api_key())

    def save_api_key(self, api_key: str) -> None:
        """
        Store the API key. Raises PreferenceStoreError if it cannot be saved.
        """
        self.preference_store.write(API_KEY_PREFERENCE, api_key.strip())
        debug_log("[CLOUD] API key saved securely")

    def clear_api_key(self) -> None:
        self.preference_store.delete(API_KEY_PREFERENCE)
        debug_log("[CLOUD] API key cleared")

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    def complete(self, messages: list[dict[str, str]]) -> CloudCompletion:
        """
        Send one chat-completions request (blocking).

        Raises:
            ConfigurationError: No API key stored, or the key was rejected (401)
            NetworkError: Connectivity failure, timeout, rate limit, other non-2xx status
            GenerationError: The response body is not a chat completion
        """
        api_key = self.get_api_key()
        if not api_key:
            raise ConfigurationError("API key not configured. Please add your Grok API key in Settings.")

        debug_log(f"[CLOUD] Sending request to {self.api_url} ({len(messages)} messages)")
        try:
            response = requests.post(
                self.api_url,
                headers={
                    'Content-Type': 'application/json',
                    'Authorization': f'Bearer {api_key}',
                },
                json={
                    'model': self.model,
                    'messages': messages,
                    'max_tokens': CLOUD_MAX_TOKENS,
                    'temperature': DEFAULT_TEMPERATURE,
                },
                timeout=self.timeout,
            )
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise NetworkError("Network error. Please check your internet connection.", detail=str(e)) from e
        except requests.RequestException as e:
            raise NetworkError(f"Error: {e}", detail=str(e)) from e

        debug_log(f"[CLOUD] Response status: {response.status_code}")

        if response.status_code == 401:
            raise ConfigurationError("Invalid API key. Please check your Grok API key in Settings.")
        if response.status_code == 429:
            raise NetworkError("Rate limit exceeded. Please wait a moment and try again.")
        if response.status_code != 200:
            raise NetworkError(f"API error: {self._server_message(response)}",
                               detail=f"HTTP {response.status_code}")

        try:
            data = response.json()
            content = data['choices'][0]['message']['content']
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise GenerationError("The AI service returned an unreadable response.", detail=str(e)) from e

        usage = data.get('usage') or {}
        return CloudCompletion(
            content=content or "",
            prompt_tokens=usage.get('prompt_tokens'),
            response_tokens=usage.get('completion_tokens'),
        )

    @staticmethod
    def _server_message(response: requests.Response) -> str:
        try:
            return response.json()['error']['message']
        except (ValueError, KeyError, TypeError):
            return "Unknown error"

    async def chat(self, message: str, history: list[ConversationTurn] | None = None) -> AiResult:
        """
        Ask the cloud model. Request and response errors come back as failures.

        Args:
            message: The new user message
            history: Prior turns, oldest first

        Returns:
            AiResult with content and references, or a failure with error_kind
        """
        prompt = build_prompt(
            self.persona_loader.full(),
            history,
            message,
            PromptStyle.MESSAGES,
            CLOUD_HISTORY_TURNS,
        )
        start = time.perf_counter()
        diagnostics = AiDiagnostics(provider=PROVIDER_LABEL, model=self.model, raw_prompt=prompt.debug_text)

        try:
            completion = await asyncio.to_thread(self.complete, prompt.messages)
            processed = response_post_processor.extract(completion.content)
        except AiError as e:
            error(f"[CLOUD] Chat failed: {e}")
            return AiResult.failure(e.user_message, e.kind, diagnostics)

        diagnostics = AiDiagnostics(
            provider=PROVIDER_LABEL,
            model=self.model,
            raw_prompt=prompt.debug_text,
            prompt_tokens=completion.prompt_tokens,
            response_tokens=completion.response_tokens,
            latency_ms=(time.perf_counter() - start) * 1000,
        )
        return AiResult.ok(processed.text, processed.related_references, diagnostics)
