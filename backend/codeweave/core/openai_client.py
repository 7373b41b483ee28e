# backend/codeweave/core/openai_client.py
import logging
from typing import List, Optional

import openai
from openai import OpenAI

from .exceptions import AuthenticationError, ProviderConnectionError, ProviderError, RateLimitError
from .llm_client import BaseChatClient, ChatMessage

logger = logging.getLogger(__name__)


class OpenAIClient(BaseChatClient):
    """
    AI collaborator backed by the official openai SDK. SDK exceptions are
    translated into the ProviderError hierarchy at this boundary.
    """
    provider_name = "openai"

    def __init__(self, api_key: str, model: str, api_base: Optional[str] = None, timeout: float = 120):
        """
        Args:
            api_key: The OpenAI API key.
            model: The model identifier (e.g., "gpt-4o").
            api_base: Optional base URL, for proxies or compatible deployments.
            timeout: Per-request timeout in seconds.
        """
        if not api_key or not isinstance(api_key, str):
            raise ValueError("OpenAIClient requires a valid string API key.")
        if not model or not isinstance(model, str):
            raise ValueError("OpenAIClient requires a valid string model ID.")

        self.model_id = model
        # The SDK retries on its own by default; retries belong to the recovery controller.
        self.client = OpenAI(api_key=api_key, base_url=api_base, timeout=timeout, max_retries=0)
        logger.info(f"OpenAIClient instance created for model '{self.model_id}'.")

    def chat(self, messages: List[ChatMessage], temperature: float = 0.1) -> ChatMessage:
        """
        Sends a chat completion request.

        Raises:
            RateLimitError: If the API rate limit is exceeded.
            AuthenticationError: If the API key is invalid or lacks permission.
            ProviderConnectionError: On connection failures and timeouts.
            ProviderError: For any other API error, with its HTTP status code.
        """
        if not messages or not isinstance(messages, list):
            raise ValueError("Cannot send chat request with empty or invalid messages list.")

        valid_messages = [{"role": msg["role"], "content": msg["content"]}
                          for msg in messages if msg.get("role") in ("system", "user", "assistant")]

        try:
            logger.info(f"Sending request to OpenAI model '{self.model_id}'...")
            response = self.client.chat.completions.create(model=self.model_id, messages=valid_messages, temperature=temperature)
        except openai.RateLimitError as e:
            raise RateLimitError(f"OpenAI API Rate Limit Exceeded: {e}", provider=self.provider_name) from e
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            logger.error(f"OpenAI API Authentication Failed. Base URL: {self.client.base_url}. Error: {e}")
            raise AuthenticationError(f"OpenAI API Authentication Failed: {e}", status_code=e.status_code,
                                      provider=self.provider_name) from e
        except openai.APIConnectionError as e:  # Includes APITimeoutError.
            raise ProviderConnectionError(f"Could not reach OpenAI: {e}", provider=self.provider_name) from e
        except openai.APIStatusError as e:
            raise ProviderError(f"OpenAI API error (HTTP {e.status_code}): {e}", status_code=e.status_code,
                                provider=self.provider_name, retryable=e.status_code >= 500) from e
        except openai.APIError as e:
            raise ProviderError(f"OpenAI API error: {e}", provider=self.provider_name) from e

        if not response.choices:
            raise ProviderError("OpenAI response contained no choices.", provider=self.provider_name)
        content = response.choices[0].message.content
        logger.info(f"Response received successfully from OpenAI model {self.model_id}.")
        return {"role": "assistant", "content": content.strip() if content else ""}
