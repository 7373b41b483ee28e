# backend/codeweave/core/llm_client.py
import asyncio
import json
from abc import ABC, abstractmethod
import logging
import time
from typing import Any, Dict, List, Optional, TypedDict

import requests
import requests.exceptions

from .exceptions import AuthenticationError, ProviderConnectionError, ProviderError, RateLimitError

logger = logging.getLogger(__name__)

DEFAULT_OPENROUTER_ENDPOINT = "https://openrouter.ai/api/v1/chat/completions"


class ChatMessage(TypedDict, total=False):
    """
    A standardized dictionary structure for a single message in a conversation.
    Used consistently across all collaborator adapters.
    """
    role: str  # 'user', 'assistant', or 'system'
    content: str
    name: str  # Optional sender name


class BaseChatClient(ABC):
    """
    Common AI collaborator interface: `async generate(prompt, context) -> str`.

    Subclasses implement the blocking `chat()` call; `generate()` runs it in a
    worker thread so the scheduler's event loop stays responsive. Retries are
    left to the ErrorRecoveryController, so adapters never retry on their own.
    """
    provider_name = "generic"

    @abstractmethod
    def chat(self, messages: List[ChatMessage], temperature: float = 0.1) -> ChatMessage:
        """Sends one blocking chat request and returns the assistant message."""

    @staticmethod
    def build_messages(prompt: str, context: Optional[Dict[str, Any]] = None) -> List[ChatMessage]:
        context = context or {}
        messages: List[ChatMessage] = []
        system_prompt = context.get("system_prompt")
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt.strip()})
        messages.append({"role": "user", "content": prompt})
        return messages

    async def generate(self, prompt: str, context: Optional[Dict[str, Any]] = None) -> str:
        """
        Sends `prompt` (plus an optional system prompt from `context`) and returns the reply text.

        Args:
            prompt: The user prompt.
            context: Optional dict with `system_prompt` and `temperature`.

        Raises:
            ProviderError: Or one of its subclasses, on any provider failure.
        """
        context = context or {}
        messages = self.build_messages(prompt, context)
        temperature = float(context.get("temperature", 0.1))
        reply = await asyncio.to_thread(self.chat, messages, temperature)
        content = (reply.get("content") or "").strip()
        if not content:
            raise ProviderError("Provider returned an empty response.", provider=self.provider_name, retryable=True)
        return content


class LlmClient(BaseChatClient):
    """
    A client for OpenRouter-compatible chat completion endpoints, built on
    requests. Maps HTTP failures onto the ProviderError hierarchy:
    429 -> RateLimitError, 401/403 -> AuthenticationError, network errors ->
    ProviderConnectionError, anything else -> ProviderError with the status code.
    """
    provider_name = "openrouter"

    def __init__(self, api_key: str, model: str, api_base: Optional[str] = None,
                 site_url: Optional[str] = None, site_title: Optional[str] = None,
                 request_timeout: float = 120):
        """
        Raises:
            ValueError: If api_key or model is invalid.
        """
        if not api_key or not isinstance(api_key, str):
            raise ValueError("LlmClient requires a valid string API key.")
        if not model or not isinstance(model, str):
            raise ValueError("LlmClient requires a valid string model ID.")

        self.api_key = api_key.strip()
        self.model = model
        self.api_endpoint = api_base or DEFAULT_OPENROUTER_ENDPOINT
        self.request_timeout = request_timeout

        # One session for connection pooling; auth is added per request.
        self.session = requests.Session()
        headers = {'Content-Type': 'application/json'}
        if site_url:
            headers['HTTP-Referer'] = site_url
        if site_title:
            headers['X-Title'] = site_title
        self.session.headers.update(headers)
        logger.info(f"LlmClient instance created for model '{self.model}'. Endpoint: {self.api_endpoint}")

    @staticmethod
    def _error_message(response: requests.Response, default: str) -> str:
        try:
            error_data = response.json().get('error', {})
            if isinstance(error_data, dict):
                return error_data.get('message', default)
        except (json.JSONDecodeError, AttributeError, ValueError):
            pass
        return default

    def chat(self, messages: List[ChatMessage], temperature: float = 0.1) -> ChatMessage:
        """
        Sends one chat completion request.

        Raises:
            ValueError: If the messages list is empty or invalid.
            RateLimitError: On HTTP 429.
            AuthenticationError: On HTTP 401 or 403.
            ProviderConnectionError: On timeouts or connection failures.
            ProviderError: On any other HTTP or response-format failure.
        """
        if not messages or not isinstance(messages, list):
            raise ValueError("Cannot send chat request with empty or invalid messages list.")

        valid_messages = []
        for i, msg in enumerate(messages):
            if isinstance(msg, dict) and isinstance(msg.get('role'), str) and isinstance(msg.get('content'), str):
                valid_msg: ChatMessage = {"role": msg["role"], "content": msg["content"]}
                if msg.get("name") and isinstance(msg.get("name"), str):
                    valid_msg["name"] = msg["name"]
                valid_messages.append(valid_msg)
            else:
                logger.warning(f"Skipping invalid message structure at index {i}: {str(msg)[:100]}...")
        if not valid_messages:
            raise ValueError("No valid messages found in the input list to send.")

        payload = {"model": self.model, "messages": valid_messages, "temperature": temperature}
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Request Payload:\n{json.dumps(payload, indent=2)}")

        start_time = time.time()
        logger.info(f"Sending {len(valid_messages)} messages to '{self.model}'...")
        try:
            response = self.session.post(
                self.api_endpoint,
                headers={'Authorization': f'Bearer {self.api_key}'},
                json=payload,
                timeout=self.request_timeout,
            )
        except requests.exceptions.Timeout as e:
            raise ProviderConnectionError(f"Request to {self.model} timed out after {time.time() - start_time:.1f}s: {e}",
                                          provider=self.provider_name) from e
        except (requests.exceptions.ConnectionError, requests.exceptions.ChunkedEncodingError) as e:
            raise ProviderConnectionError(f"Connection error calling {self.model}: {e}", provider=self.provider_name) from e
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"Unrecoverable request error calling {self.model}: {e}",
                                provider=self.provider_name, retryable=False) from e

        logger.debug(f"API call returned after {time.time() - start_time:.2f} seconds. Status code: {response.status_code}")

        if response.status_code == 429:
            message = self._error_message(response, "API Rate Limit Exceeded (HTTP 429)")
            logger.warning(f"API Rate Limit Exceeded for {self.model}. Message: {message}")
            raise RateLimitError(f"API Rate Limit Exceeded for {self.model}: {message}", provider=self.provider_name)
        if response.status_code in (401, 403):
            message = self._error_message(response, f"Authentication Failed (HTTP {response.status_code})")
            logger.error(f"API Authentication Failed for {self.model}. Message: {message}")
            raise AuthenticationError(f"API Authentication Failed for {self.model}: {message}",
                                      status_code=response.status_code, provider=self.provider_name)
        if response.status_code >= 400:
            message = self._error_message(response, response.text[:500])
            raise ProviderError(f"HTTP {response.status_code} from {self.model}: {message}",
                                status_code=response.status_code, provider=self.provider_name,
                                retryable=response.status_code == 408 or response.status_code >= 500)

        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError) as e:
            logger.error(f"Raw text that failed JSON decoding: {response.text[:1000]}...")
            raise ProviderError(f"Failed to decode JSON response from {self.model}: {e}", provider=self.provider_name) from e

        if not isinstance(data, dict) or not isinstance(data.get("choices"), list) or not data["choices"]:
            raise ProviderError(f"Invalid response structure from {self.model}: 'choices' missing or empty.", provider=self.provider_name)
        message_data = data["choices"][0].get("message")
        if not isinstance(message_data, dict) or "content" not in message_data:
            raise ProviderError(f"Invalid response structure from {self.model}: 'message' or 'content' missing.", provider=self.provider_name)

        return {"role": "assistant", "content": (message_data.get("content") or "").strip()}
