"""
LLM generation providers and the fallback gateway.

Every backend receives the same ChatPrompt: an optional context block and the
user's message.  Providers with a system channel get the context there; the
local provider gets it concatenated ahead of the message.  Either way the
model sees every passage, in retrieval-rank order, before the question.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import requests
from loguru import logger

from .config import LLMConfig
from .exceptions import GenerationUnavailable, ProviderError
from .providers import (
    CLOUD_PRIORITY,
    ProviderCredential,
    ProviderKind,
    active_credentials,
    default_model,
    process_api_key,
)


@dataclass
class ChatPrompt:
    user: str
    system: Optional[str] = None

    def combined(self) -> str:
        """Single-string form for providers without a system channel."""
        if self.system:
            return f"{self.system}\n\n{self.user}"
        return self.user


def build_prompt(message: str, context: Optional[List[str]] = None) -> ChatPrompt:
    passages = [p for p in (context or []) if p]
    if not passages:
        return ChatPrompt(user=message)
    return ChatPrompt(user=message, system="Context: " + "\n\n".join(passages))


@dataclass
class Completion:
    text: str
    model: str
    tokens: int = 0


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class GenerationBackend(ABC):
    """A single chat-completion provider (synchronous; run in an executor)."""

    kind: ProviderKind

    def __init__(self, config: LLMConfig):
        self._config = config

    @abstractmethod
    def _complete(
        self, prompt: ChatPrompt, model: str, api_key: Optional[str], base_url: Optional[str]
    ) -> Completion:
        """Call the provider; any exception is converted to ProviderError."""

    def complete(
        self,
        prompt: ChatPrompt,
        model: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
    ) -> Completion:
        try:
            completion = self._complete(prompt, model, api_key, base_url)
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderError(self.kind.value, str(exc)) from exc
        logger.info(
            "{} response generated with {} tokens", self.kind.value, completion.tokens
        )
        return completion

    def _require_key(self, api_key: Optional[str]) -> str:
        if not api_key:
            raise ProviderError(self.kind.value, "no API key configured")
        return api_key

    @staticmethod
    def _chat_messages(prompt: ChatPrompt) -> List[Dict[str, str]]:
        messages = []
        if prompt.system:
            messages.append({"role": "system", "content": prompt.system})
        messages.append({"role": "user", "content": prompt.user})
        return messages


class OpenAIChatBackend(GenerationBackend):
    kind = ProviderKind.OPENAI

    def _complete(self, prompt, model, api_key, base_url):
        from openai import OpenAI
        client = OpenAI(
            api_key=self._require_key(api_key),
            base_url=base_url or self._config.openai_base_url,
            timeout=self._config.request_timeout,
        )
        response = client.chat.completions.create(
            model=model,
            messages=self._chat_messages(prompt),
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
        )
        usage = getattr(response, "usage", None)
        return Completion(
            text=response.choices[0].message.content or "",
            model=model,
            tokens=getattr(usage, "total_tokens", 0) or 0,
        )


class AnthropicBackend(GenerationBackend):
    kind = ProviderKind.ANTHROPIC

    def _complete(self, prompt, model, api_key, base_url):
        import anthropic
        client_kwargs = {
            "api_key": self._require_key(api_key),
            "timeout": self._config.request_timeout,
        }
        if base_url:
            client_kwargs["base_url"] = base_url
        client = anthropic.Anthropic(**client_kwargs)

        request = {
            "model": model,
            "max_tokens": self._config.max_tokens,
            "temperature": self._config.temperature,
            "messages": [{"role": "user", "content": prompt.user}],
        }
        if prompt.system:
            request["system"] = prompt.system
        response = client.messages.create(**request)

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        tokens = response.usage.input_tokens + response.usage.output_tokens
        return Completion(text=text, model=model, tokens=tokens)


class GeminiBackend(GenerationBackend):
    """Google Gemini via the google-generativeai SDK."""

    kind = ProviderKind.GEMINI

    def _complete(self, prompt, model, api_key, base_url):
        import google.generativeai as genai
        genai.configure(api_key=self._require_key(api_key))
        gemini = genai.GenerativeModel(model, system_instruction=prompt.system)
        response = gemini.generate_content(
            prompt.user,
            generation_config=genai.types.GenerationConfig(
                max_output_tokens=self._config.max_tokens,
                temperature=self._config.temperature,
            ),
        )
        usage = getattr(response, "usage_metadata", None)
        return Completion(
            text=response.text,
            model=model,
            tokens=getattr(usage, "total_token_count", 0) or 0,
        )


class GroqBackend(GenerationBackend):
    kind = ProviderKind.GROQ

    def _complete(self, prompt, model, api_key, base_url):
        from groq import Groq
        client_kwargs = {"api_key": self._require_key(api_key)}
        if base_url:
            client_kwargs["base_url"] = base_url
        client = Groq(**client_kwargs)
        response = client.chat.completions.create(
            model=model,
            messages=self._chat_messages(prompt),
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
        )
        usage = getattr(response, "usage", None)
        return Completion(
            text=response.choices[0].message.content or "",
            model=model,
            tokens=getattr(usage, "total_tokens", 0) or 0,
        )


class OllamaChatBackend(GenerationBackend):
    """Ollama local provider (uses the /api/generate endpoint)."""

    kind = ProviderKind.OLLAMA

    def _complete(self, prompt, model, api_key, base_url):
        host = (base_url or self._config.ollama_base_url).rstrip("/")
        response = requests.post(
            f"{host}/api/generate",
            json={"model": model, "prompt": prompt.combined(), "stream": False},
            timeout=self._config.request_timeout,
        )
        response.raise_for_status()
        data = response.json()
        tokens = int(data.get("prompt_eval_count") or 0) + int(data.get("eval_count") or 0)
        return Completion(text=data.get("response", ""), model=model, tokens=tokens)


_BACKEND_CLASSES = {
    ProviderKind.OPENAI: OpenAIChatBackend,
    ProviderKind.ANTHROPIC: AnthropicBackend,
    ProviderKind.GEMINI: GeminiBackend,
    ProviderKind.GROQ: GroqBackend,
    ProviderKind.OLLAMA: OllamaChatBackend,
}


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


@dataclass
class GenerationRequest:
    message: str
    context: List[str] = field(default_factory=list)
    model: Optional[str] = None
    # Pinning a provider bypasses the selection policy.
    provider: Optional[ProviderKind] = None
    credential_override: Optional[str] = None
    endpoint_override: Optional[str] = None
    tenant_credentials: List[ProviderCredential] = field(default_factory=list)


@dataclass
class GenerationResult:
    answer: str
    model: str
    provider: ProviderKind
    tokens: int = 0


@dataclass
class ProviderSelection:
    kind: ProviderKind
    model: str
    api_key: Optional[str] = None
    base_url: Optional[str] = None


def _priority(kind: ProviderKind) -> int:
    return CLOUD_PRIORITY.index(kind) if kind in CLOUD_PRIORITY else len(CLOUD_PRIORITY)


class GenerationGateway:
    """
    Turns a prompt plus optional context into an answer.

    Selection (once per request, unless the caller pins a provider):
    a tenant credential wins, then the first process-configured cloud
    provider in priority order, then the local provider.  A failed non-local
    call is retried exactly once on the local provider with its default model.
    """

    def __init__(
        self,
        config: Optional[LLMConfig] = None,
        backends: Optional[Dict[ProviderKind, GenerationBackend]] = None,
    ):
        self._config = config or LLMConfig()
        self._backends: Dict[ProviderKind, GenerationBackend] = {
            kind: cls(self._config) for kind, cls in _BACKEND_CLASSES.items()
        }
        if backends:
            self._backends.update(backends)

    def select_provider(self, request: GenerationRequest) -> ProviderSelection:
        credentials = active_credentials(request.tenant_credentials)
        credential: Optional[ProviderCredential] = None

        if request.provider is not None:
            kind = request.provider
            credential = next((c for c in credentials if c.provider is kind), None)
        elif credentials:
            credential = min(credentials, key=lambda c: _priority(c.provider))
            kind = credential.provider
        else:
            kind = next(
                (k for k in CLOUD_PRIORITY if process_api_key(self._config, k)),
                ProviderKind.OLLAMA,
            )

        api_key = request.credential_override or (credential.api_key if credential else None)
        if not api_key and kind is not ProviderKind.OLLAMA:
            api_key = process_api_key(self._config, kind) or None
        base_url = request.endpoint_override or (credential.base_url if credential else None)
        model = (
            request.model
            or (credential.model if credential else None)
            or default_model(self._config, kind)
        )
        return ProviderSelection(kind=kind, model=model, api_key=api_key, base_url=base_url)

    async def _call(self, selection: ProviderSelection, prompt: ChatPrompt) -> Completion:
        backend = self._backends[selection.kind]
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(
            None,
            lambda: backend.complete(
                prompt, selection.model, selection.api_key, selection.base_url
            ),
        )

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        selection = self.select_provider(request)
        prompt = build_prompt(request.message, request.context)

        try:
            completion = await self._call(selection, prompt)
            return GenerationResult(
                answer=completion.text,
                model=completion.model,
                provider=selection.kind,
                tokens=completion.tokens,
            )
        except ProviderError as primary_exc:
            if selection.kind is ProviderKind.OLLAMA:
                logger.error("Local provider failed with no further fallback: {}", primary_exc.message)
                raise GenerationUnavailable(str(primary_exc)) from primary_exc
            logger.warning(
                "{} failed, falling back to {}: {}",
                selection.kind.value,
                ProviderKind.OLLAMA.value,
                primary_exc.message,
            )
            fallback = ProviderSelection(
                kind=ProviderKind.OLLAMA, model=self._config.ollama_model
            )
            try:
                completion = await self._call(fallback, prompt)
            except ProviderError as fallback_exc:
                logger.error("Both {} and the local provider failed", selection.kind.value)
                raise GenerationUnavailable(
                    str(primary_exc), str(fallback_exc)
                ) from fallback_exc

        return GenerationResult(
            answer=completion.text,
            model=completion.model,
            provider=ProviderKind.OLLAMA,
            tokens=completion.tokens,
        )
