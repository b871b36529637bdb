"""
Provider catalogue.

The set of model providers is closed: every embedding or generation backend
is addressed through ProviderKind, never through free-form strings.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional

from .config import LLMConfig


class ProviderKind(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    GROQ = "groq"
    OLLAMA = "ollama"

    @classmethod
    def parse(cls, value: str) -> "ProviderKind":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown provider '{value}'. Valid options: {[k.value for k in cls]}"
            ) from None


class ProviderFamily(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    LOCAL = "local"


PROVIDER_FAMILIES: Dict[ProviderKind, ProviderFamily] = {
    ProviderKind.OPENAI: ProviderFamily.PRIMARY,
    ProviderKind.ANTHROPIC: ProviderFamily.SECONDARY,
    ProviderKind.GEMINI: ProviderFamily.SECONDARY,
    ProviderKind.GROQ: ProviderFamily.SECONDARY,
    ProviderKind.OLLAMA: ProviderFamily.LOCAL,
}

# Cloud providers in the order they are preferred when no provider is pinned.
CLOUD_PRIORITY: List[ProviderKind] = [
    ProviderKind.OPENAI,
    ProviderKind.ANTHROPIC,
    ProviderKind.GEMINI,
    ProviderKind.GROQ,
]

PROVIDER_MODELS: Dict[ProviderKind, List[str]] = {
    ProviderKind.OPENAI: ["gpt-4o-mini", "gpt-4o", "gpt-4-turbo-preview", "gpt-4", "gpt-3.5-turbo"],
    ProviderKind.ANTHROPIC: [
        "claude-3-5-sonnet-20241022",
        "claude-3-sonnet-20240229",
        "claude-3-haiku-20240307",
        "claude-3-opus-20240229",
    ],
    ProviderKind.GEMINI: ["gemini-2.0-flash", "gemini-1.5-pro", "gemini-1.5-flash"],
    ProviderKind.GROQ: ["llama-3.3-70b-versatile", "llama-3.1-8b-instant", "mixtral-8x7b-32768"],
    ProviderKind.OLLAMA: ["llama2", "codellama", "mistral", "neural-chat", "deepseek-r1:1.5b", "qwen2.5", "gemma2"],
}

_DISPLAY_NAMES: Dict[ProviderKind, str] = {
    ProviderKind.OPENAI: "OpenAI",
    ProviderKind.ANTHROPIC: "Anthropic",
    ProviderKind.GEMINI: "Gemini",
    ProviderKind.GROQ: "Groq",
    ProviderKind.OLLAMA: "Ollama",
}


@dataclass
class ProviderCredential:
    """A tenant-supplied credential for one provider."""

    provider: ProviderKind
    api_key: str
    base_url: Optional[str] = None
    model: Optional[str] = None
    active: bool = True


@dataclass
class ProviderDescriptor:
    """A provider as offered to a tenant; computed per request, never persisted."""

    name: str
    kind: ProviderKind
    family: ProviderFamily
    models: List[str] = field(default_factory=list)
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    is_default: bool = True

    def to_dict(self) -> Dict[str, object]:
        # Never expose the key itself.
        return {
            "name": self.name,
            "type": self.kind.value,
            "family": self.family.value,
            "models": list(self.models),
            "base_url": self.base_url,
            "is_default": self.is_default,
            "has_credential": bool(self.api_key),
        }


def process_api_key(config: LLMConfig, kind: ProviderKind) -> str:
    """Return the process-level credential for a cloud provider ("" if unset)."""
    return {
        ProviderKind.OPENAI: config.openai_api_key,
        ProviderKind.ANTHROPIC: config.anthropic_api_key,
        ProviderKind.GEMINI: config.gemini_api_key,
        ProviderKind.GROQ: config.groq_api_key,
    }.get(kind, "")


def default_model(config: LLMConfig, kind: ProviderKind) -> str:
    return {
        ProviderKind.OPENAI: config.openai_model,
        ProviderKind.ANTHROPIC: config.anthropic_model,
        ProviderKind.GEMINI: config.gemini_model,
        ProviderKind.GROQ: config.groq_model,
        ProviderKind.OLLAMA: config.ollama_model,
    }[kind]


def active_credentials(
    credentials: Optional[Iterable[ProviderCredential]],
) -> List[ProviderCredential]:
    return [c for c in (credentials or []) if c.active and c.api_key]


def available_providers(
    config: LLMConfig,
    tenant_credentials: Optional[Iterable[ProviderCredential]] = None,
) -> List[ProviderDescriptor]:
    """
    List the providers a tenant can use.

    Process-configured cloud providers come first (in priority order), then the
    always-available local provider, then one entry per active tenant credential.
    """
    providers: List[ProviderDescriptor] = []

    for kind in CLOUD_PRIORITY:
        key = process_api_key(config, kind)
        if key:
            providers.append(
                ProviderDescriptor(
                    name=f"{_DISPLAY_NAMES[kind]} (Default)",
                    kind=kind,
                    family=PROVIDER_FAMILIES[kind],
                    models=list(PROVIDER_MODELS[kind]),
                    api_key=key,
                    base_url=config.openai_base_url if kind is ProviderKind.OPENAI else None,
                )
            )

    providers.append(
        ProviderDescriptor(
            name="Ollama (Local)",
            kind=ProviderKind.OLLAMA,
            family=ProviderFamily.LOCAL,
            models=list(PROVIDER_MODELS[ProviderKind.OLLAMA]),
            base_url=config.ollama_base_url,
        )
    )

    for credential in active_credentials(tenant_credentials):
        models = list(PROVIDER_MODELS[credential.provider])
        if credential.model and credential.model not in models:
            models.insert(0, credential.model)
        providers.append(
            ProviderDescriptor(
                name=f"{_DISPLAY_NAMES[credential.provider]} (Custom)",
                kind=credential.provider,
                family=PROVIDER_FAMILIES[credential.provider],
                models=models,
                api_key=credential.api_key,
                base_url=credential.base_url,
                is_default=False,
            )
        )

    return providers
