"""Tests for model routing: canonical specs, registry keys, provider configs."""

from __future__ import annotations

import pytest

from council_gateway.gateway.errors import (
    CapabilityError,
    ConfigurationError,
    MissingApiKeyError,
    ProviderConflictError,
    UnknownProviderError,
)
from council_gateway.gateway.router import (
    ModelRouter,
    build_model_spec,
    map_provider_kind,
    model_prefix,
)
from council_gateway.gateway.types import (
    ChatMessage,
    ChatRequest,
    ImagePart,
    ProviderDefinition,
    ProviderKind,
    TextPart,
)


# ==========================================================================
# Test: build_model_spec
# ==========================================================================


class TestBuildModelSpec:
    """Canonical provider/model strings."""

    def test_no_provider_returns_model_unchanged(self):
        assert build_model_spec(None, "gpt-4o") == "gpt-4o"
        assert build_model_spec("", "openai/gpt-4o") == "openai/gpt-4o"

    def test_bare_model_gets_provider_prefix(self):
        assert build_model_spec("openai", "gpt-4o") == "openai/gpt-4o"

    def test_matching_prefix_kept(self):
        assert build_model_spec("openai", "openai/gpt-4o") == "openai/gpt-4o"

    def test_provider_is_case_insensitive(self):
        assert build_model_spec("OpenAI", "gpt-4o") == "openai/gpt-4o"

    def test_prefix_is_case_insensitive(self):
        assert build_model_spec("openai", "OpenAI/gpt-4o") == "openai/gpt-4o"
        assert build_model_spec("OPENROUTER", "OpenRouter/openai/gpt-4o") == "openrouter/openai/gpt-4o"

    def test_conflicting_prefix_raises(self):
        with pytest.raises(ProviderConflictError) as exc:
            build_model_spec("openai", "anthropic/claude-3")
        assert "model prefix 'anthropic' conflicts with provider 'openai'" in str(exc.value)
        assert exc.value.prefix == "anthropic"
        assert exc.value.provider == "openai"

    def test_gemini_models_namespace_is_not_a_prefix(self):
        assert build_model_spec("gemini", "models/gemini-2.5-flash") == "gemini/models/gemini-2.5-flash"

    def test_openrouter_prefixes_namespaced_model(self):
        assert build_model_spec("openrouter", "openai/gpt-4o") == "openrouter/openai/gpt-4o"

    def test_openrouter_keeps_fully_qualified_model(self):
        assert build_model_spec("openrouter", "openrouter/openai/gpt-4o") == "openrouter/openai/gpt-4o"

    def test_openrouter_rejects_bare_model(self):
        with pytest.raises(ConfigurationError, match="namespaced"):
            build_model_spec("openrouter", "gpt-4o")

    def test_openrouter_rejects_prefix_only_model(self):
        with pytest.raises(ConfigurationError, match="namespaced"):
            build_model_spec("openrouter", "openrouter/gpt-4o")

    def test_deterministic(self):
        results = {build_model_spec("openrouter", "anthropic/claude-sonnet-4") for _ in range(5)}
        assert results == {"openrouter/anthropic/claude-sonnet-4"}


class TestHelpers:
    def test_model_prefix(self):
        assert model_prefix("openai/gpt-4o") == "openai"
        assert model_prefix("gpt-4o") is None
        assert model_prefix("models/gemini-2.5-pro") is None

    def test_map_provider_kind(self):
        assert map_provider_kind("anthropic") == ProviderKind.ANTHROPIC
        assert map_provider_kind("Gemini") == ProviderKind.GEMINI
        assert map_provider_kind("google") == ProviderKind.GEMINI
        assert map_provider_kind("openrouter") == ProviderKind.OPENAI_COMPAT
        assert map_provider_kind("my-proxy") == ProviderKind.OPENAI_COMPAT


# ==========================================================================
# Test: ModelRouter.resolve
# ==========================================================================


class TestResolve:
    def test_explicit_provider_wins(self, router):
        resolved = router.resolve("gpt-4o-mini", provider="openai")
        assert resolved.provider == "openai"
        assert resolved.spec == "openai/gpt-4o-mini"
        assert resolved.model == "gpt-4o-mini"

    def test_provider_from_prefix(self, router):
        resolved = router.resolve("anthropic/claude-sonnet-4")
        assert resolved.provider == "anthropic"
        assert resolved.model == "claude-sonnet-4"

    def test_mixed_case_prefix_does_not_conflict_with_itself(self, router, registry):
        resolved = router.resolve("OpenAI/gpt-4o-mini", registry=registry)
        assert resolved.provider == "openai"
        assert resolved.spec == "openai/gpt-4o-mini"
        assert resolved.model == "gpt-4o-mini"
        assert resolved.registry_key == "openai/gpt-4o-mini"

    def test_default_provider_for_bare_model(self, router):
        assert router.resolve("gpt-4o").provider == "openai"

    def test_no_provider_anywhere_raises(self):
        router = ModelRouter(default_provider="", env={})
        with pytest.raises(ConfigurationError, match="no provider"):
            router.resolve("gpt-4o")

    def test_openrouter_vendor_model_keeps_namespace(self, router):
        resolved = router.resolve("openai/gpt-4o-mini", provider="openrouter")
        assert resolved.spec == "openrouter/openai/gpt-4o-mini"
        assert resolved.model == "openai/gpt-4o-mini"

    def test_registry_key_found(self, router, registry):
        resolved = router.resolve("gpt-4o-mini", provider="openai", registry=registry)
        assert resolved.registry_key == "openai/gpt-4o-mini"

    def test_vision_false_blocks_images(self, router, registry):
        with pytest.raises(CapabilityError) as exc:
            router.resolve("gpt-3.5-turbo", provider="openai", registry=registry, has_images=True)
        assert "does not support image inputs" in str(exc.value)

    def test_unknown_vision_warns(self, router, registry):
        resolved = router.resolve("gemini-2.5-flash", provider="gemini", registry=registry, has_images=True)
        assert any("cannot verify image support" in w for w in resolved.warnings)

    def test_no_registry_warns_on_images(self, router):
        resolved = router.resolve("gpt-4o", provider="openai", has_images=True)
        assert any("registry unavailable" in w for w in resolved.warnings)

    def test_no_media_no_warnings(self, router):
        assert router.resolve("gpt-4o", provider="openai").warnings == []


# ==========================================================================
# Test: registry candidates
# ==========================================================================


class TestRegistryCandidates:
    def test_prefixed_model(self, router):
        assert router.registry_candidates("openai", "openai/gpt-4o") == ["openai/gpt-4o", "gpt-4o"]

    def test_bare_model_gets_family(self, router):
        assert router.registry_candidates("openai", "gpt-4o") == ["gpt-4o", "openai/gpt-4o"]

    def test_gemini_namespace_stripped(self, router):
        candidates = router.registry_candidates("gemini", "models/gemini-2.5-flash")
        assert candidates == ["models/gemini-2.5-flash", "gemini-2.5-flash", "gemini/gemini-2.5-flash"]

    def test_xai_alias(self, router):
        candidates = router.registry_candidates("xai", "grok-4")
        assert candidates == ["grok-4", "xai/grok-4", "x-ai/grok-4"]

    def test_no_duplicates(self, router):
        candidates = router.registry_candidates(None, "openai/gpt-4o")
        assert len(candidates) == len(set(candidates))

    def test_resolve_registry_key_uses_alias(self, router, registry):
        assert router.resolve_registry_key("xai", "grok-4", registry) == "x-ai/grok-4"

    def test_resolve_registry_key_falls_back_to_first(self, router, registry):
        assert router.resolve_registry_key("openai", "o9-unknown", registry) == "o9-unknown"


# ==========================================================================
# Test: provider_config
# ==========================================================================


class TestProviderConfig:
    def test_explicit_key_wins(self, router):
        config = router.provider_config("openai", api_key="sk-explicit")
        assert config.api_key == "sk-explicit"
        assert config.kind == ProviderKind.OPENAI_COMPAT
        assert config.base_url == "https://api.openai.com/v1"

    def test_configured_key(self, router):
        assert router.provider_config("anthropic").api_key == "sk-ant-test"

    def test_env_key(self):
        router = ModelRouter(env={"XAI_API_KEY": "from-env"})
        assert router.provider_config("xai").api_key == "from-env"

    def test_missing_key_raises(self):
        router = ModelRouter(env={})
        with pytest.raises(MissingApiKeyError) as exc:
            router.provider_config("openai")
        assert exc.value.env_var == "OPENAI_API_KEY"

    def test_no_auth_provider_allows_missing_key(self):
        providers = {
            "local": ProviderDefinition(
                name="local",
                kind=ProviderKind.OPENAI_COMPAT,
                base_url="http://localhost:8080/v1/",
                no_auth=True,
            )
        }
        config = ModelRouter(providers=providers, env={}).provider_config("local")
        assert config.api_key is None
        assert config.base_url == "http://localhost:8080/v1"

    def test_unknown_provider_without_base_url(self):
        with pytest.raises(UnknownProviderError):
            ModelRouter(env={}).provider_config("mystery")

    def test_base_url_override_for_custom_provider(self):
        router = ModelRouter(base_urls={"proxy": "https://proxy.example/v1"}, api_keys={"proxy": "k"}, env={})
        config = router.provider_config("proxy")
        assert config.kind == ProviderKind.OPENAI_COMPAT
        assert config.base_url == "https://proxy.example/v1"


class TestChatRequestMedia:
    def test_image_detection_feeds_capability_gate(self, router, registry):
        request = ChatRequest(
            model="gpt-3.5-turbo",
            messages=[ChatMessage.user([TextPart("what is this"), ImagePart("https://x.test/a.png")])],
        )
        assert request.has_images()
        with pytest.raises(CapabilityError):
            router.resolve(request.model, provider="openai", registry=registry, has_images=request.has_images())
