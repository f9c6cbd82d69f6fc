"""Model Router — turns loose (provider, model) input into dispatchable specs.

  - build_model_spec: canonical "provider/model" string, with prefix conflict
    detection and OpenRouter's org/model namespacing rule
  - ModelRouter.registry_candidates: lookup keys tried against the registry
  - ModelRouter.provider_config: base URL + credentials for a provider
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from council_gateway.core.config import settings
from council_gateway.gateway.errors import (
    ConfigurationError,
    MissingApiKeyError,
    ProviderConflictError,
    UnknownProviderError,
)
from council_gateway.gateway.registry import ModelRegistry, check_media_capabilities
from council_gateway.gateway.types import (
    DEFAULT_PROVIDER_CONFIGS,
    ProviderConfig,
    ProviderDefinition,
    ProviderKind,
)

logger = logging.getLogger(__name__)

NAMESPACE_PREFIX = "models/"  # Gemini API resource prefix, not a provider

# OpenRouter lists xAI models under a different org name
_REGISTRY_ALIASES = {"xai": "x-ai"}


def map_provider_kind(provider: str) -> ProviderKind:
    name = provider.lower()
    if name == "anthropic":
        return ProviderKind.ANTHROPIC
    if name in ("gemini", "google"):
        return ProviderKind.GEMINI
    return ProviderKind.OPENAI_COMPAT


def model_prefix(model: str) -> str | None:
    """Provider hint embedded in a model id ("openai/gpt-4o" → "openai")."""
    if model.startswith(NAMESPACE_PREFIX) or "/" not in model:
        return None
    return model.split("/", 1)[0]


def build_model_spec(provider: str | None, model: str) -> str:
    """Build the canonical "provider/model" dispatch spec.

    Raises ProviderConflictError when the model's embedded prefix names a
    different provider, and ConfigurationError for OpenRouter models that
    are not org-namespaced.
    """
    if not provider:
        return model

    provider = provider.lower()
    if provider == "gemini" and model.startswith(NAMESPACE_PREFIX):
        return f"{provider}/{model}"

    prefix = model_prefix(model)
    if provider == "openrouter":
        if prefix is not None and prefix.lower() == "openrouter":
            rest = model.split("/", 1)[1]
            if "/" not in rest:
                raise ConfigurationError(f"openrouter models must be namespaced (e.g. openai/gpt-4o), got '{model}'")
            return f"openrouter/{rest}"
        if prefix is None:
            raise ConfigurationError(f"openrouter models must be namespaced (e.g. openai/gpt-4o), got '{model}'")
        return f"openrouter/{model}"

    if prefix is None:
        return f"{provider}/{model}"
    if prefix.lower() == provider:
        # the prefix is canonicalized to the lowercase provider name
        return f"{provider}/{model.split('/', 1)[1]}"
    raise ProviderConflictError(prefix, provider)


@dataclass
class ResolvedModel:
    """Result of routing one model for dispatch."""

    provider: str
    spec: str  # canonical provider/model
    model: str  # model id as the vendor expects it
    registry_key: str
    warnings: list[str] = field(default_factory=list)


class ModelRouter:
    """Resolves providers, specs, registry keys and provider configs.

    Usage:
        router = ModelRouter(api_keys={"openai": "sk-..."})
        resolved = router.resolve("gpt-4o-mini", provider="openai", registry=registry)
        config = router.provider_config(resolved.provider)
    """

    def __init__(
        self,
        providers: dict[str, ProviderDefinition] | None = None,
        default_provider: str | None = None,
        api_keys: dict[str, str] | None = None,
        base_urls: dict[str, str] | None = None,
        env: Mapping[str, str] | None = None,
    ):
        self.providers = dict(providers or DEFAULT_PROVIDER_CONFIGS)
        self.default_provider = default_provider if default_provider is not None else settings.default_provider
        self.api_keys = api_keys or {}
        self.base_urls = base_urls or {}
        self._env = env if env is not None else os.environ

    # -- provider / spec -----------------------------------------------------

    def provider_for(self, model: str, provider: str | None = None) -> str | None:
        """Explicit provider, else the model's prefix, else the default."""
        if provider:
            return provider.lower()
        prefix = model_prefix(model)
        if prefix:
            return prefix.lower()
        return self.default_provider or None

    def resolve(
        self,
        model: str,
        provider: str | None = None,
        registry: ModelRegistry | None = None,
        has_images: bool = False,
        has_video: bool = False,
    ) -> ResolvedModel:
        """Resolve a model for dispatch and gate media against the registry."""
        name = self.provider_for(model, provider)
        if not name:
            raise ConfigurationError(f"no provider for model '{model}' (use provider/model or set a default)")

        spec = build_model_spec(name, model)
        vendor_model = spec.split("/", 1)[1]
        key = self.resolve_registry_key(name, model, registry)
        warnings = check_media_capabilities(registry, key, has_images, has_video)
        return ResolvedModel(provider=name, spec=spec, model=vendor_model, registry_key=key, warnings=warnings)

    # -- registry keys -------------------------------------------------------

    def registry_candidates(self, provider: str | None, model: str) -> list[str]:
        candidates = [model]

        bare = model
        prefix = model_prefix(model)
        if prefix and prefix.lower() in self.providers:
            bare = model.split("/", 1)[1]
            candidates.append(bare)

        if bare.startswith(NAMESPACE_PREFIX):
            bare = bare[len(NAMESPACE_PREFIX) :]
            candidates.append(bare)

        family = (provider or prefix or "").lower()
        if family and not model.startswith(f"{family}/"):
            candidates.append(f"{family}/{bare}")

        alias = _REGISTRY_ALIASES.get(family)
        if alias:
            candidates.append(f"{alias}/{bare}")

        return list(dict.fromkeys(candidates))

    def resolve_registry_key(
        self,
        provider: str | None,
        model: str,
        registry: ModelRegistry | None,
    ) -> str:
        """First candidate present in the registry; first candidate if none match."""
        candidates = self.registry_candidates(provider, model)
        if registry is not None:
            for candidate in candidates:
                if candidate in registry:
                    return candidate
        return candidates[0]

    # -- provider config -----------------------------------------------------

    def provider_config(self, provider: str, api_key: str | None = None) -> ProviderConfig:
        """Resolve base URL and credentials: explicit key → configured key → env var."""
        name = provider.lower()
        definition = self.providers.get(name)

        base_url = self.base_urls.get(name) or (definition.base_url if definition else "")
        if not base_url:
            raise UnknownProviderError(name)

        kind = definition.kind if definition else map_provider_kind(name)
        env_var = definition.api_key_env if definition and definition.api_key_env else f"{name.upper()}_API_KEY"
        no_auth = definition.no_auth if definition else False

        key = api_key or self.api_keys.get(name) or self._env.get(env_var) or None
        if key is None and not no_auth:
            raise MissingApiKeyError(name, env_var)

        return ProviderConfig(name=name, kind=kind, base_url=base_url.rstrip("/"), api_key=key)
