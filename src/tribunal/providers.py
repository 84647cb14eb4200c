"""Static provider table and the wire drivers that speak each provider's format."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import TransientProviderError
from .models import StreamRequest

# Upstream models that spend most of their budget on hidden reasoning tokens.
THINKING_MODELS = frozenset(
    {
        "gemini-2.5-pro",
        "gemini-3-pro-preview",
        "gpt-5",
        "gpt-5.2",
        "deepseek-reasoner",
    }
)
THINKING_MODEL_TOKEN_MULTIPLIER = 4


def short_model_name(model_id: str) -> str:
    return model_id.rsplit("/", 1)[-1]


def is_thinking_model(model_id: str) -> bool:
    return short_model_name(model_id) in THINKING_MODELS


@dataclass(frozen=True)
class HttpCall:
    """A fully built upstream request."""
    url: str
    headers: Dict[str, str]
    body: Dict[str, Any]


class ProviderDriver(ABC):
    """
    Speaks one streaming wire format.

    A driver claims upstream model names by prefix (an empty prefix list claims
    everything), builds the HTTP request for a StreamRequest, and extracts the
    text delta from one decoded SSE payload.
    """

    wire = ""

    def __init__(self, prefixes: Tuple[str, ...] = ()) -> None:
        self.prefixes = prefixes

    def matches(self, model_id: str) -> bool:
        if not self.prefixes:
            return True
        return any(model_id.startswith(p) for p in self.prefixes)

    @abstractmethod
    def auth_headers(self, api_key: str) -> Dict[str, str]:
        ...

    @abstractmethod
    def build_request(
        self,
        base_url: str,
        upstream_model: str,
        request: StreamRequest,
        api_key: str,
        max_tokens: int,
        temperature: Optional[float],
        token_param: str,
    ) -> HttpCall:
        ...

    @abstractmethod
    def parse_stream_chunk(self, payload: Dict[str, Any]) -> Optional[str]:
        ...


class OpenAIDriver(ProviderDriver):
    """OpenAI-shaped chat completions: ``choices[0].delta.content``."""

    wire = "openai"

    def auth_headers(self, api_key):
        return {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}

    def build_request(self, base_url, upstream_model, request, api_key, max_tokens, temperature, token_param):
        body: Dict[str, Any] = {
            "model": upstream_model,
            "messages": request.messages(),
            "stream": True,
            token_param: max_tokens,
        }
        if temperature is not None:
            body["temperature"] = temperature
        return HttpCall(f"{base_url}/chat/completions", self.auth_headers(api_key), body)

    def parse_stream_chunk(self, payload):
        choices = payload.get("choices") or []
        if not choices:
            return None
        delta = choices[0].get("delta") or {}
        return delta.get("content") or None


class GeminiDriver(ProviderDriver):
    """Native Google streaming: ``candidates[0].content.parts[*].text``."""

    wire = "gemini"

    def auth_headers(self, api_key):
        return {"x-goog-api-key": api_key, "Content-Type": "application/json"}

    def build_request(self, base_url, upstream_model, request, api_key, max_tokens, temperature, token_param):
        contents = [
            {
                "role": "model" if turn.role == "assistant" else "user",
                "parts": [{"text": turn.content}],
            }
            for turn in request.history
        ]
        contents.append({"role": "user", "parts": [{"text": request.message}]})
        generation_config: Dict[str, Any] = {"maxOutputTokens": max_tokens}
        if temperature is not None:
            generation_config["temperature"] = temperature
        body = {
            "systemInstruction": {"parts": [{"text": request.effective_system_prompt()}]},
            "contents": contents,
            "generationConfig": generation_config,
        }
        url = f"{base_url}/models/{upstream_model}:streamGenerateContent?alt=sse"
        return HttpCall(url, self.auth_headers(api_key), body)

    def parse_stream_chunk(self, payload):
        candidates = payload.get("candidates") or []
        if not candidates:
            return None
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts if not p.get("thought"))
        return text or None


class AnthropicDriver(ProviderDriver):
    """Anthropic messages API: ``content_block_delta`` events."""

    wire = "anthropic"

    def auth_headers(self, api_key):
        return {
            "x-api-key": api_key,
            "anthropic-version": "2023-06-01",
            "Content-Type": "application/json",
        }

    def build_request(self, base_url, upstream_model, request, api_key, max_tokens, temperature, token_param):
        messages = [{"role": t.role, "content": t.content} for t in request.history]
        messages.append({"role": "user", "content": request.message})
        body: Dict[str, Any] = {
            "model": upstream_model,
            "system": request.effective_system_prompt(),
            "messages": messages,
            "stream": True,
            "max_tokens": max_tokens,
        }
        if temperature is not None:
            body["temperature"] = temperature
        return HttpCall(f"{base_url}/messages", self.auth_headers(api_key), body)

    def parse_stream_chunk(self, payload):
        if payload.get("type") == "error":
            error = payload.get("error") or {}
            raise TransientProviderError(
                f"Stream error event: {error.get('type', 'error')}: {error.get('message', '')}"
            )
        if payload.get("type") != "content_block_delta":
            return None
        delta = payload.get("delta") or {}
        return delta.get("text") or None


@dataclass(frozen=True)
class Endpoint:
    base_url: str
    driver: ProviderDriver


@dataclass(frozen=True)
class ProviderDescriptor:
    """
    Static per-provider metadata.

    ``prefixes`` and ``models`` decide which logical model ids the provider
    serves. ``endpoints`` are tried in order and the first whose driver claims
    the upstream model name is used. ``fallbacks`` names, per logical id, the
    logical id to substitute once this provider is exhausted.
    """
    id: str
    label: str
    credential: str
    endpoints: Tuple[Endpoint, ...]
    prefixes: Tuple[str, ...] = ()
    models: Tuple[str, ...] = ()
    strip_prefix: str = ""
    upstream_models: Dict[str, str] = field(default_factory=dict)
    no_temperature: Tuple[str, ...] = ()
    completion_tokens_prefixes: Tuple[str, ...] = ()
    fallbacks: Dict[str, str] = field(default_factory=dict)
    alternate: Optional[str] = None
    extra_headers: Dict[str, str] = field(default_factory=dict)

    @property
    def base_url(self) -> str:
        return self.endpoints[0].base_url

    def serves(self, model_id: str) -> bool:
        if model_id in self.models:
            return True
        return any(model_id.startswith(p) for p in self.prefixes)

    def upstream_model(self, model_id: str) -> str:
        if model_id in self.upstream_models:
            return self.upstream_models[model_id]
        if self.strip_prefix and model_id.startswith(self.strip_prefix):
            return model_id[len(self.strip_prefix):]
        return model_id

    def endpoint_for(self, upstream_model: str) -> Endpoint:
        for endpoint in self.endpoints:
            if endpoint.driver.matches(upstream_model):
                return endpoint
        return self.endpoints[-1]

    def supports_temperature(self, model_id: str) -> bool:
        name = short_model_name(model_id)
        return not any(
            model_id.startswith(p) or name.startswith(p) for p in self.no_temperature
        )

    def token_param(self, model_id: str) -> str:
        if any(model_id.startswith(p) for p in self.completion_tokens_prefixes):
            return "max_completion_tokens"
        return "max_tokens"

    def fallback_for(self, model_id: str) -> Optional[str]:
        return self.fallbacks.get(model_id)


PROXYAPI_BASE = "https://api.proxyapi.ru"

PROXYAPI_MODEL_MAP = {
    "proxyapi/gpt-4o": "gpt-4o",
    "proxyapi/gpt-4o-mini": "gpt-4o-mini",
    "proxyapi/o3-mini": "o3-mini",
    "proxyapi/gpt-5": "gpt-5",
    "proxyapi/gpt-5-mini": "gpt-5-mini",
    "proxyapi/gpt-5.2": "gpt-5.2",
    "proxyapi/claude-sonnet-4": "claude-sonnet-4-20250514",
    "proxyapi/claude-3-5-sonnet": "claude-3-5-sonnet-20241022",
    "proxyapi/claude-3-5-haiku": "claude-3-5-haiku-20241022",
    "proxyapi/gemini-2.0-flash": "gemini-2.0-flash",
    "proxyapi/gemini-2.5-pro": "gemini-2.5-pro",
    "proxyapi/gemini-2.5-flash": "gemini-2.5-flash",
    "proxyapi/gemini-3-pro-preview": "gemini-3-pro-preview",
    "proxyapi/gemini-3-flash-preview": "gemini-3-flash-preview",
    "proxyapi/deepseek-chat": "deepseek-chat",
    "proxyapi/deepseek-reasoner": "deepseek-reasoner",
}

PROXYAPI_FALLBACKS = {
    "proxyapi/gemini-3-pro-preview": "google/gemini-3-pro-preview",
    "proxyapi/gemini-3-flash-preview": "google/gemini-3-flash-preview",
    "proxyapi/gemini-2.5-pro": "google/gemini-2.5-pro",
    "proxyapi/gemini-2.5-flash": "google/gemini-2.5-flash",
    "proxyapi/gpt-5": "openai/gpt-5",
    "proxyapi/gpt-5-mini": "openai/gpt-5-mini",
    "proxyapi/gpt-5.2": "openai/gpt-5.2",
}


class ProxyApiDescriptor(ProviderDescriptor):
    """ProxyAPI also accepts vendor-qualified ids such as ``proxyapi/openai/gpt-4o``."""

    def upstream_model(self, model_id: str) -> str:
        if model_id in self.upstream_models:
            return self.upstream_models[model_id]
        return short_model_name(model_id)


PROVIDERS: List[ProviderDescriptor] = [
    ProxyApiDescriptor(
        id="proxyapi",
        label="ProxyAPI",
        credential="proxyapi",
        prefixes=("proxyapi/",),
        endpoints=(
            Endpoint(f"{PROXYAPI_BASE}/anthropic/v1", AnthropicDriver(("claude",))),
            Endpoint(f"{PROXYAPI_BASE}/google/v1", OpenAIDriver(("gemini",))),
            Endpoint(f"{PROXYAPI_BASE}/openai/v1", OpenAIDriver()),
        ),
        upstream_models=PROXYAPI_MODEL_MAP,
        no_temperature=("deepseek-reasoner", "o1", "o3"),
        fallbacks=PROXYAPI_FALLBACKS,
    ),
    ProviderDescriptor(
        id="lovable",
        label="Lovable AI",
        credential="lovable",
        prefixes=("openai/", "google/"),
        endpoints=(Endpoint("https://ai.gateway.lovable.dev/v1", OpenAIDriver()),),
        no_temperature=("openai/",),
        completion_tokens_prefixes=("openai/",),
    ),
    ProviderDescriptor(
        id="gemini",
        label="Google Gemini",
        credential="gemini",
        prefixes=("gemini/",),
        strip_prefix="gemini/",
        endpoints=(
            Endpoint("https://generativelanguage.googleapis.com/v1beta", GeminiDriver()),
        ),
    ),
    ProviderDescriptor(
        id="deepseek",
        label="DeepSeek",
        credential="deepseek",
        models=("deepseek-chat", "deepseek-reasoner"),
        endpoints=(Endpoint("https://api.deepseek.com", OpenAIDriver()),),
        no_temperature=("deepseek-reasoner",),
    ),
    ProviderDescriptor(
        id="mistral",
        label="Mistral",
        credential="mistral",
        models=(
            "mistral-large-latest",
            "mistral-small-latest",
            "mistral-medium-latest",
            "codestral-latest",
        ),
        endpoints=(Endpoint("https://api.mistral.ai/v1", OpenAIDriver()),),
    ),
    ProviderDescriptor(
        id="groq",
        label="Groq",
        credential="groq",
        prefixes=("groq/",),
        strip_prefix="groq/",
        endpoints=(Endpoint("https://api.groq.com/openai/v1", OpenAIDriver()),),
    ),
    ProviderDescriptor(
        id="openrouter",
        label="OpenRouter",
        credential="openrouter",
        prefixes=(
            "openrouter/",
            "anthropic/",
            "meta-llama/",
            "mistralai/",
            "qwen/",
            "x-ai/",
            "deepseek/",
            "microsoft/",
            "nousresearch/",
        ),
        endpoints=(Endpoint("https://openrouter.ai/api/v1", OpenAIDriver()),),
        alternate="proxyapi",
        extra_headers={"HTTP-Referer": "https://tribunal.local", "X-Title": "Tribunal"},
    ),
]

PROVIDERS_BY_ID: Dict[str, ProviderDescriptor] = {p.id: p for p in PROVIDERS}
