"""Model access for indexing, explanations and chat.

Everything that embeds text or asks for a completion goes through
``LiteLLMProvider`` here. litellm retries transient failures itself
(``num_retries``); anything left over surfaces as ProviderError.
"""

from __future__ import annotations

import logging
import os

import litellm

from movelens.config import MoveLensConfig
from movelens.errors import ProviderError

litellm.suppress_debug_info = True
litellm.set_verbose = False  # type: ignore[assignment]

logger = logging.getLogger(__name__)

# Environment variable litellm reads for each provider prefix. None means the
# provider runs locally without a key; unlisted prefixes use <PREFIX>_API_KEY.
_KEY_ENV_VARS: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "groq": "GROQ_API_KEY",
    "together_ai": "TOGETHERAI_API_KEY",
    "ollama": None,
    "ollama_chat": None,
}


def provider_of(model: str) -> str:
    """Provider prefix of a LiteLLM model string (``openai`` when absent)."""
    return model.split("/")[0].lower() if "/" in model else "openai"


def key_env_var(provider: str) -> str | None:
    provider = provider.lower()
    return _KEY_ENV_VARS.get(provider, f"{provider.upper()}_API_KEY")


def validate_api_key(model: str) -> None:
    """Fail fast, before any work starts, when *model* has no credentials.

    Raises:
        EnvironmentError: naming the variable that needs to be exported.
    """
    provider = provider_of(model)
    env_var = key_env_var(provider)
    if env_var is not None and not os.getenv(env_var):
        raise EnvironmentError(
            f"No credentials for '{provider}' models: export {env_var} first."
        )


async def complete(
    model: str,
    messages: list[dict],
    max_tokens: int = 2048,
    temperature: float = 0.0,
    num_retries: int = 3,
) -> str:
    """Chat completion text for *messages* (empty string when the model returns none)."""
    try:
        response = await litellm.acompletion(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            num_retries=num_retries,
        )
    except Exception as exc:
        raise ProviderError(f"Completion failed ({model}): {exc}") from exc
    content = response.choices[0].message.content
    return content if content is not None else ""


async def embed(model: str, text: str, num_retries: int = 3) -> list[float]:
    """Embedding vector for a single *text*."""
    try:
        response = await litellm.aembedding(model=model, input=[text], num_retries=num_retries)
    except Exception as exc:
        raise ProviderError(f"Embedding failed ({model}): {exc}") from exc
    first = response.data[0]
    return first["embedding"]


class LiteLLMProvider:
    """Binds model names so engines can call ``embed(text)`` / ``complete(messages, ...)``."""

    def __init__(
        self,
        completion_model: str,
        embedding_model: str,
        num_retries: int = 3,
    ) -> None:
        self.completion_model = completion_model
        self.embedding_model = embedding_model
        self.num_retries = num_retries

    @classmethod
    def from_config(cls, cfg: MoveLensConfig) -> LiteLLMProvider:
        return cls(
            completion_model=cfg.generation.model,
            embedding_model=cfg.embedding.model,
            num_retries=cfg.generation.num_retries,
        )

    async def embed(self, text: str) -> list[float]:
        logger.debug("Embedding %d chars with %s", len(text), self.embedding_model)
        return await embed(self.embedding_model, text, num_retries=self.num_retries)

    async def complete(
        self, messages: list[dict], temperature: float = 0.0, max_tokens: int = 2048
    ) -> str:
        logger.debug(
            "Completion with %s (%d messages, max_tokens=%d)",
            self.completion_model,
            len(messages),
            max_tokens,
        )
        return await complete(
            self.completion_model,
            messages,
            max_tokens=max_tokens,
            temperature=temperature,
            num_retries=self.num_retries,
        )
