"""Text-generation service boundary."""

import logging
from abc import ABC, abstractmethod

from .config import ANTHROPIC_API_KEY, LLM_MAX_TOKENS, LLM_MODEL, REQUEST_TIMEOUT
from .retry import TransientServiceError

logger = logging.getLogger(__name__)


class TextGenerator(ABC):
    """One blocking call per prompt. Retryable failures raise TransientServiceError."""

    @abstractmethod
    def generate(self, prompt: str, system_instruction: str, temperature: float) -> str:
        ...


def is_transient_status(status: int) -> bool:
    return status == 429 or status >= 500


def strip_code_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


class AnthropicGenerator(TextGenerator):
    """Claude via the Anthropic SDK.

    The SDK's own retries are switched off so the pipeline's retry policy is
    the only one in play; ``timeout`` bounds each individual request.
    """

    def __init__(
        self,
        api_key: str = ANTHROPIC_API_KEY,
        model: str = LLM_MODEL,
        max_tokens: int = LLM_MAX_TOKENS,
        timeout: float = REQUEST_TIMEOUT,
    ):
        if not api_key:
            raise ValueError("ANTHROPIC_API_KEY not configured. Cannot run LLM analysis.")
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._client = None

    @property
    def client(self):
        if self._client is None:
            import anthropic
            self._client = anthropic.Anthropic(
                api_key=self.api_key, timeout=self.timeout, max_retries=0,
            )
        return self._client

    def generate(self, prompt: str, system_instruction: str, temperature: float) -> str:
        import anthropic

        try:
            resp = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=temperature,
                system=system_instruction,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APITimeoutError as e:
            raise TransientServiceError(f"Request timed out after {self.timeout}s") from e
        except anthropic.APIConnectionError as e:
            raise TransientServiceError(f"Connection error: {e}") from e
        except anthropic.APIStatusError as e:
            # 429 and any 5xx are retryable
            if is_transient_status(e.status_code):
                raise TransientServiceError(f"Service error {e.status_code}: {e}", status=e.status_code) from e
            raise

        if resp.stop_reason == "max_tokens":
            logger.warning("Response truncated at max_tokens (%d); partial records will be recovered",
                           self.max_tokens)
        text = "".join(block.text for block in resp.content if getattr(block, "type", "") == "text")
        return strip_code_fences(text)
