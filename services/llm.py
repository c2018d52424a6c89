"""
Text generation and embedding clients.

Both are lazily constructed process-wide singletons: the first caller
builds the client under a lock, later callers reuse it. When no API key is
configured the getters return None and callers fall back to their
deterministic defaults.

Callers never assume a model call succeeds; invoke_with_fallback() is the
usual entry point from handlers and primitives.
"""
from __future__ import annotations

import abc
import threading
from typing import Any, Optional

import structlog
from tenacity import AsyncRetrying, retry, stop_after_attempt, wait_exponential

from config.settings import LLMConfig, get_settings
from workflow.errors import CollaboratorFailure

logger = structlog.get_logger()


class TextGenerationClient(abc.ABC):
    """Anything that can turn a system + user prompt into text."""

    @abc.abstractmethod
    async def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str = None,
        temperature: float = None,
        max_retries: int = None,
        run_name: str = "",
    ) -> str:
        """Return generated text or raise CollaboratorFailure."""
        ...


class LLMTextGenerationClient(TextGenerationClient):
    """
    Generates text with OpenAI or Anthropic depending on settings.
    The SDK client itself is created on first use.
    """

    def __init__(self, config: LLMConfig = None, wait: Any = None):
        self.config = config or get_settings().llm
        self.wait = wait or wait_exponential(multiplier=1, max=10)
        self._client = None
        self._lock = threading.Lock()

    @property
    def is_openai(self) -> bool:
        return self.config.provider == "openai"

    def _get_client(self):
        if self._client is None:
            with self._lock:
                if self._client is None:
                    if self.is_openai:
                        from openai import AsyncOpenAI
                        self._client = AsyncOpenAI(
                            api_key=self.config.api_key,
                            timeout=self.config.timeout_seconds,
                        )
                    else:
                        import anthropic
                        self._client = anthropic.AsyncAnthropic(
                            api_key=self.config.api_key,
                            timeout=self.config.timeout_seconds,
                        )
                    logger.info("llm_client_initialized",
                                provider=self.config.provider, model=self.config.model)
        return self._client

    async def _call(self, system: str, user: str, model: str, temperature: float) -> str:
        client = self._get_client()
        if self.is_openai:
            response = await client.chat.completions.create(
                model=model,
                temperature=temperature,
                max_tokens=self.config.max_tokens,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
            )
            return response.choices[0].message.content or ""
        response = await client.messages.create(
            model=model,
            max_tokens=self.config.max_tokens,
            temperature=temperature,
            system=system,
            messages=[{"role": "user", "content": user}],
        )
        return response.content[0].text if response.content else ""

    async def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str = None,
        temperature: float = None,
        max_retries: int = None,
        run_name: str = "",
    ) -> str:
        model = model or self.config.model
        temperature = temperature if temperature is not None else self.config.temperature
        retries = self.config.max_retries if max_retries is None else max_retries
        try:
            async for attempt in AsyncRetrying(stop=stop_after_attempt(retries + 1),
                                               wait=self.wait, reraise=True):
                with attempt:
                    text = await self._call(system_prompt, user_prompt, model, temperature)
        except Exception as e:
            logger.error("collaborator_call_failed",
                         collaborator="text_generation", run_name=run_name, error=str(e))
            raise CollaboratorFailure("text_generation", str(e)) from e
        logger.debug("llm_invoked", run_name=run_name, model=model, chars=len(text))
        return text.strip()


async def invoke_with_fallback(
    client: Optional[TextGenerationClient],
    system_prompt: str,
    user_prompt: str,
    fallback: str,
    run_name: str = "",
    **kwargs: Any,
) -> str:
    """Call the model; any failure or empty answer yields the fallback."""
    if client is None:
        return fallback
    try:
        text = await client.invoke(system_prompt, user_prompt, run_name=run_name, **kwargs)
    except CollaboratorFailure:
        return fallback
    except Exception as e:
        logger.error("collaborator_call_failed",
                     collaborator="text_generation", run_name=run_name, error=str(e))
        return fallback
    return text if text and text.strip() else fallback


# ──────────────────────────────────────────────────────────────
#  Embeddings
# ──────────────────────────────────────────────────────────────

class EmbeddingClient(abc.ABC):

    @abc.abstractmethod
    async def embed(self, text: str) -> list[float]:
        ...


class OpenAIEmbeddingClient(EmbeddingClient):

    def __init__(self, config: LLMConfig = None):
        self.config = config or get_settings().llm
        self._client = None
        self._lock = threading.Lock()

    def _get_client(self):
        if self._client is None:
            with self._lock:
                if self._client is None:
                    from openai import AsyncOpenAI
                    self._client = AsyncOpenAI(
                        api_key=self.config.api_key,
                        timeout=self.config.timeout_seconds,
                    )
        return self._client

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, max=10), reraise=True)
    async def embed(self, text: str) -> list[float]:
        response = await self._get_client().embeddings.create(
            model=self.config.embedding_model,
            input=text,
        )
        return list(response.data[0].embedding)


# ──────────────────────────────────────────────────────────────
#  Lazy singletons
# ──────────────────────────────────────────────────────────────

_singleton_lock = threading.Lock()
_text_client: Optional[TextGenerationClient] = None
_text_client_ready = False
_embedding_client: Optional[EmbeddingClient] = None
_embedding_client_ready = False


def get_text_generation_client() -> Optional[TextGenerationClient]:
    """Shared text generation client, or None when no API key is configured."""
    global _text_client, _text_client_ready
    if not _text_client_ready:
        with _singleton_lock:
            if not _text_client_ready:
                config = get_settings().llm
                _text_client = LLMTextGenerationClient(config) if config.api_key else None
                if _text_client is None:
                    logger.warning("llm_client_unavailable", reason="no api key configured")
                _text_client_ready = True
    return _text_client


def get_embedding_client() -> Optional[EmbeddingClient]:
    global _embedding_client, _embedding_client_ready
    if not _embedding_client_ready:
        with _singleton_lock:
            if not _embedding_client_ready:
                config = get_settings().llm
                _embedding_client = OpenAIEmbeddingClient(config) if config.api_key else None
                _embedding_client_ready = True
    return _embedding_client


def set_text_generation_client(client: Optional[TextGenerationClient]):
    """Install a specific client (tests, alternative providers)."""
    global _text_client, _text_client_ready
    with _singleton_lock:
        _text_client = client
        _text_client_ready = True


def reset_clients():
    global _text_client, _text_client_ready, _embedding_client, _embedding_client_ready
    with _singleton_lock:
        _text_client = None
        _text_client_ready = False
        _embedding_client = None
        _embedding_client_ready = False
