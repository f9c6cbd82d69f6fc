"""Model registry — merged pricing/capability catalog keyed by model id.

Sources are merged in order, later ones fully replacing earlier entries with
the same id:

  1. organization override file (optional)
  2. OpenRouter catalog (per-token USD prices, converted to per-1k)
  3. LiteLLM proxy ``/model/info`` (optional)
  4. embedded Gemini pricing table

The merged registry is cached as JSON and written atomically.
"""

from __future__ import annotations

import logging
import math
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel, Field, PrivateAttr

from council_gateway.core.config import settings
from council_gateway.gateway.errors import CapabilityError, GatewayError
from council_gateway.gateway.http import send_json

logger = logging.getLogger(__name__)

REGISTRY_VERSION = 1

_REASONING_PARAMS = {"reasoning", "reasoning_effort", "include_reasoning", "thinking"}

# Pricing per 1M tokens (input / output), Google AI Studio paid tier
_GEMINI_PRICING = {
    "gemini-2.0-flash": {"input": 0.10, "output": 0.40, "context": 1_048_576, "max_output": 8_192},
    "gemini-2.0-flash-lite": {"input": 0.075, "output": 0.30, "context": 1_048_576, "max_output": 8_192},
    "gemini-2.5-flash": {"input": 0.30, "output": 2.50, "context": 1_048_576, "max_output": 65_536},
    "gemini-2.5-flash-lite": {"input": 0.10, "output": 0.40, "context": 1_048_576, "max_output": 65_536},
    "gemini-2.5-pro": {"input": 1.25, "output": 10.00, "context": 1_048_576, "max_output": 65_536},
    "gemini-3-pro-preview": {"input": 2.00, "output": 12.00, "context": 1_048_576, "max_output": 65_536},
    "text-embedding-004": {"input": 0.0, "output": 0.0, "context": 2_048, "max_output": None},
}


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class ModelPricing(BaseModel):
    """USD prices. Each component is independently optional."""

    prompt_per_1k: float | None = None
    completion_per_1k: float | None = None
    request: float | None = None

    def estimate(self, input_tokens: int, output_tokens: int) -> float | None:
        """Closed-form cost, or None when any component is unknown."""
        if self.prompt_per_1k is None or self.completion_per_1k is None or self.request is None:
            return None
        return (
            input_tokens / 1000 * self.prompt_per_1k
            + output_tokens / 1000 * self.completion_per_1k
            + self.request
        )


class ModelCapability(BaseModel):
    vision: bool | None = None
    reasoning: bool | None = None
    web_search: bool | None = None


class ModelEntry(BaseModel):
    id: str
    context_length: int | None = None
    max_output_tokens: int | None = None
    pricing: ModelPricing = Field(default_factory=ModelPricing)
    provider: str | None = None
    capability: ModelCapability | None = None


class ModelRegistry(BaseModel):
    version: int = REGISTRY_VERSION
    updated_at: str | None = None
    models: list[ModelEntry] = Field(default_factory=list)

    _index: dict[str, int] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        self.rebuild_index()

    def rebuild_index(self) -> None:
        # Duplicate ids in a single source: last one wins, same as merge()
        deduped: dict[str, ModelEntry] = {}
        for entry in self.models:
            deduped[entry.id] = entry
        self.models = list(deduped.values())
        self._index = {entry.id: i for i, entry in enumerate(self.models)}

    def find(self, model_id: str) -> ModelEntry | None:
        i = self._index.get(model_id)
        return self.models[i] if i is not None else None

    def __contains__(self, model_id: str) -> bool:
        return model_id in self._index

    def __len__(self) -> int:
        return len(self.models)

    def merge(self, other: ModelRegistry) -> None:
        """Merge another registry in. Entries with the same id are replaced whole."""
        for entry in other.models:
            i = self._index.get(entry.id)
            if i is None:
                self._index[entry.id] = len(self.models)
                self.models.append(entry)
            else:
                self.models[i] = entry


@dataclass
class RegistryFetchResult:
    registry: ModelRegistry
    warnings: list[str] = field(default_factory=list)


@dataclass
class PricingEstimate:
    estimate_usd: float | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    pricing_source: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "estimate_usd": self.estimate_usd,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "pricing_source": self.pricing_source,
            "warnings": list(self.warnings),
        }


# ---------------------------------------------------------------------------
# Cache file
# ---------------------------------------------------------------------------


def registry_cache_path() -> Path:
    return Path(settings.registry_path).expanduser()


def load_registry(path: Path | None = None) -> ModelRegistry | None:
    """Load the cached registry, or None if it was never synced."""
    path = path or registry_cache_path()
    if not path.exists():
        return None
    return ModelRegistry.model_validate_json(path.read_text(encoding="utf-8"))


def save_registry(registry: ModelRegistry, path: Path | None = None) -> Path:
    path = path or registry_cache_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(registry.model_dump_json(indent=2))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return path


# ---------------------------------------------------------------------------
# Source parsers
# ---------------------------------------------------------------------------


def _parse_price(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _as_limit(value: Any) -> int | None:
    """Positive integer token limit, or None."""
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        return None
    return value


def _per_1k(value: Any) -> float | None:
    price = _parse_price(value)
    return price * 1000 if price is not None else None


def _openrouter_capability(item: dict) -> ModelCapability | None:
    cap = ModelCapability()

    modalities = (item.get("architecture") or {}).get("input_modalities")
    if isinstance(modalities, list):
        cap.vision = any(isinstance(m, str) and m.lower() == "image" for m in modalities)

    params = item.get("supported_parameters")
    if isinstance(params, list) and any(isinstance(p, str) and p.lower() in _REASONING_PARAMS for p in params):
        cap.reasoning = True

    if (item.get("pricing") or {}).get("web_search") is not None:
        cap.web_search = True

    if cap.vision is None and cap.reasoning is None and cap.web_search is None:
        return None
    return cap


def parse_openrouter_models(payload: dict) -> ModelRegistry:
    entries: list[ModelEntry] = []
    for item in payload.get("data") or []:
        model_id = item.get("id") or ""
        if not model_id:
            continue
        pricing = item.get("pricing") or {}
        context = item.get("context_length")
        max_output = (item.get("top_provider") or {}).get("max_completion_tokens")
        entries.append(
            ModelEntry(
                id=model_id,
                context_length=context if isinstance(context, int) else None,
                max_output_tokens=_as_limit(max_output),
                pricing=ModelPricing(
                    prompt_per_1k=_per_1k(pricing.get("prompt")),
                    completion_per_1k=_per_1k(pricing.get("completion")),
                    request=_parse_price(pricing.get("request")),
                ),
                provider="openrouter",
                capability=_openrouter_capability(item),
            )
        )
    return ModelRegistry(models=entries)


def parse_litellm_models(payload: dict) -> ModelRegistry:
    entries: list[ModelEntry] = []
    for item in payload.get("data") or []:
        info = item.get("model_info") or {}
        model_id = item.get("model_name") or info.get("key") or ""
        if not model_id:
            continue
        context = info.get("max_input_tokens") or info.get("max_tokens")
        entries.append(
            ModelEntry(
                id=model_id,
                context_length=context if isinstance(context, int) else None,
                max_output_tokens=_as_limit(info.get("max_output_tokens")),
                pricing=ModelPricing(
                    prompt_per_1k=_per_1k(info.get("input_cost_per_token")),
                    completion_per_1k=_per_1k(info.get("output_cost_per_token")),
                    # LiteLLM has no per-request fee concept; zero is exact
                    request=0.0,
                ),
                provider="litellm",
            )
        )
    return ModelRegistry(models=entries)


def embedded_gemini_registry() -> ModelRegistry:
    entries = [
        ModelEntry(
            id=name,
            context_length=p["context"],
            max_output_tokens=p["max_output"],
            pricing=ModelPricing(
                prompt_per_1k=p["input"] / 1000,
                completion_per_1k=p["output"] / 1000,
                request=0.0,
            ),
            provider="gemini",
        )
        for name, p in _GEMINI_PRICING.items()
    ]
    return ModelRegistry(models=entries)


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


async def fetch_registry(
    client: httpx.AsyncClient,
    org_registry_path: Path | None = None,
    openrouter_models_url: str | None = None,
    litellm_base_url: str | None = None,
    openrouter_api_key: str | None = None,
    litellm_api_key: str | None = None,
) -> RegistryFetchResult:
    """Build a fresh registry from every source. Failing sources become warnings."""
    registry = ModelRegistry()
    warnings: list[str] = []

    org_path = org_registry_path or settings.org_registry_path
    if org_path:
        org_path = Path(org_path).expanduser()
        if org_path.exists():
            registry.merge(ModelRegistry.model_validate_json(org_path.read_text(encoding="utf-8")))
        else:
            warnings.append(f"org registry not found: {org_path}")

    or_key = openrouter_api_key or os.environ.get("OPENROUTER_API_KEY")
    if or_key:
        try:
            payload, _ = await send_json(
                client,
                "GET",
                openrouter_models_url or settings.openrouter_models_url,
                provider="openrouter",
                headers={"Authorization": f"Bearer {or_key}"},
            )
            registry.merge(parse_openrouter_models(payload))
        except GatewayError as e:
            warnings.append(f"openrouter failed: {e}")
    else:
        warnings.append("openrouter skipped: missing API key")

    base = (litellm_base_url if litellm_base_url is not None else settings.litellm_base_url).rstrip("/")
    if base:
        ll_key = litellm_api_key or os.environ.get("LITELLM_API_KEY")
        headers = {"Authorization": f"Bearer {ll_key}"} if ll_key else {}
        try:
            payload, _ = await send_json(client, "GET", f"{base}/model/info", provider="litellm", headers=headers)
            registry.merge(parse_litellm_models(payload))
        except GatewayError as e:
            warnings.append(f"litellm failed: {e}")
    else:
        warnings.append("litellm skipped: no base url configured")

    registry.merge(embedded_gemini_registry())
    registry.updated_at = datetime.now(timezone.utc).isoformat()

    for warning in warnings:
        logger.warning("Registry sync: %s", warning)
    logger.info("Registry synced: %d models", len(registry))
    return RegistryFetchResult(registry=registry, warnings=warnings)


# ---------------------------------------------------------------------------
# Estimates & capability gating
# ---------------------------------------------------------------------------


def estimate_tokens(chars: int) -> int:
    """Rough heuristic: 4 chars per token."""
    return math.ceil(chars / 4)


def estimate_pricing(
    registry: ModelRegistry | None,
    model_id: str,
    input_tokens: int,
    output_tokens: int,
) -> PricingEstimate:
    estimate = PricingEstimate()
    if registry is None:
        estimate.warnings.append("registry unavailable; sync the model registry first")
        return estimate

    entry = registry.find(model_id)
    if entry is None:
        estimate.warnings.append(f"model not found in registry: {model_id}")
        return estimate

    estimate.input_tokens = input_tokens
    estimate.output_tokens = output_tokens
    estimate.pricing_source = entry.provider
    estimate.estimate_usd = entry.pricing.estimate(input_tokens, output_tokens)
    if estimate.estimate_usd is None:
        estimate.warnings.append(f"pricing incomplete for {model_id}")
    return estimate


def check_media_capabilities(
    registry: ModelRegistry | None,
    model_id: str,
    has_images: bool,
    has_video: bool = False,
) -> list[str]:
    """Refuse media the model is known not to accept; warn when unknown.

    Returns the list of warnings. Raises CapabilityError for an explicit
    ``vision=False``. Video is never blocked.
    """
    warnings: list[str] = []
    if not has_images and not has_video:
        return warnings

    if registry is None:
        vision = None
        reason = "registry unavailable"
    else:
        entry = registry.find(model_id)
        if entry is None:
            vision = None
            reason = "model not in registry"
        else:
            vision = entry.capability.vision if entry.capability else None
            reason = "capability unknown"

    if has_images:
        if vision is False:
            raise CapabilityError(model_id, "image inputs")
        if vision is None:
            warnings.append(f"{reason}: cannot verify image support for {model_id}")

    if has_video and vision is None:
        warnings.append(f"{reason}: cannot verify video support for {model_id}")

    for warning in warnings:
        logger.warning(warning)
    return warnings
