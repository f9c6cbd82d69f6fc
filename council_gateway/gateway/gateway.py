"""LLM Gateway — single-model entry point tying all gateway components together.

Dispatching one request:
  1. ModelRouter resolves provider, canonical spec and registry key
  2. Registry gates media inputs (explicit vision=false refuses the call)
  3. Pricing estimate from the registry; BudgetLedger enforces caps and
     reserves the estimate
  4. Provider adapter performs the network round trip(s)
  5. Normalizer fills derived usage fields; exact cost enrichment (best effort)
  6. Reservation committed with the actual spend, or released on failure

Usage:
    async with LlmGateway(registry=load_registry()) as gateway:
        result = await gateway.ask(ChatRequest(model="openai/gpt-4o-mini", messages=[...]))
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field, replace

import httpx

from council_gateway.core.config import settings
from council_gateway.core.logging import log_context
from council_gateway.gateway.budget import BudgetLedger, BudgetReservation
from council_gateway.gateway.errors import GatewayError
from council_gateway.gateway.normalizer import normalize_response
from council_gateway.gateway.registry import (
    ModelRegistry,
    PricingEstimate,
    estimate_pricing,
    estimate_tokens,
)
from council_gateway.gateway.router import ModelRouter, ResolvedModel
from council_gateway.gateway.types import (
    ChatRequest,
    ChatResponse,
    EmbeddingRequest,
    EmbeddingResponse,
    ImageRequest,
    ImageResponse,
    StreamEvent,
    VideoRequest,
    VideoResponse,
)
from council_gateway.gateway.vendor_adapters import BaseProviderAdapter, OpenAICompatAdapter, get_adapter

logger = logging.getLogger(__name__)


@dataclass
class PreparedCall:
    """A routed, estimated chat call that has not touched the network yet."""

    resolved: ResolvedModel
    request: ChatRequest  # model rewritten to the vendor's id
    estimate: PricingEstimate
    output_tokens: int  # output-token count behind the estimate

    @property
    def warnings(self) -> list[str]:
        return self.resolved.warnings + self.estimate.warnings


@dataclass
class GatewayResult:
    """Outcome of one dispatched chat call."""

    provider: str
    model: str  # canonical provider/model spec
    response: ChatResponse
    estimate: PricingEstimate
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "provider": self.provider,
            "model": self.model,
            **self.response.to_dict(),
            "pricing": self.estimate.to_dict(),
            "warnings": list(self.warnings),
        }


def budget_enabled(max_cost: float | None, daily_budget: float | None) -> bool:
    return max_cost is not None or daily_budget is not None


class LlmGateway:
    """Main gateway façade.

    Integrates:
      - ModelRouter: provider/spec/registry-key resolution
      - Registry: capability gating and pricing estimates
      - BudgetLedger: pre-call caps, reservations and spend settlement
      - Provider adapters: one per provider, sharing the HTTP client
    """

    def __init__(
        self,
        router: ModelRouter | None = None,
        registry: ModelRegistry | None = None,
        ledger: BudgetLedger | None = None,
        client: httpx.AsyncClient | None = None,
        adapter_kwargs: dict | None = None,
    ):
        """
        Args:
            router: Provider/model resolution (default: built-in providers + env keys)
            registry: Merged model registry; None degrades capability checks to warnings
            ledger: Budget ledger (default: settings.budget_path), used only when caps are set
            client: Shared HTTP client injected into every adapter
            adapter_kwargs: Extra adapter kwargs (poll_interval, max_poll_attempts, ...)
        """
        self.router = router or ModelRouter()
        self.registry = registry
        self._ledger = ledger
        self.client = client
        self._adapter_kwargs = adapter_kwargs or {}
        self._adapters: dict[str, BaseProviderAdapter] = {}

    @property
    def ledger(self) -> BudgetLedger:
        if self._ledger is None:
            self._ledger = BudgetLedger()
        return self._ledger

    async def __aenter__(self) -> LlmGateway:
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()
        self._adapters.clear()

    def get_adapter(self, provider: str) -> BaseProviderAdapter:
        """Get or create the adapter for a provider."""
        if provider not in self._adapters:
            config = self.router.provider_config(provider)
            self._adapters[provider] = get_adapter(config, client=self.client, **self._adapter_kwargs)
        return self._adapters[provider]

    # -- planning ------------------------------------------------------------

    def output_tokens_for(self, resolved: ResolvedModel, max_tokens: int | None) -> int:
        """Output tokens to price: the request's cap, else the model's own limit, else the default."""
        if max_tokens:
            return max_tokens
        entry = self.registry.find(resolved.registry_key) if self.registry is not None else None
        if entry is not None and entry.max_output_tokens:
            return entry.max_output_tokens
        return settings.default_max_output_tokens

    def prepare(
        self,
        request: ChatRequest,
        provider: str | None = None,
        has_video: bool = False,
        output_tokens: int | None = None,
    ) -> PreparedCall:
        """Route, gate and estimate a chat call. Raises before any network I/O.

        ``output_tokens`` overrides the output-token count used for the
        estimate; the request itself is not changed.
        """
        resolved = self.router.resolve(
            request.model,
            provider=provider,
            registry=self.registry,
            has_images=request.has_images(),
            has_video=has_video or request.has_video(),
        )
        tokens = output_tokens or self.output_tokens_for(resolved, request.max_tokens)
        estimate = estimate_pricing(
            self.registry,
            resolved.registry_key,
            estimate_tokens(request.prompt_chars()),
            tokens,
        )
        return PreparedCall(
            resolved=resolved,
            request=replace(request, model=resolved.model),
            estimate=estimate,
            output_tokens=tokens,
        )

    def reserve(
        self,
        estimate_usd: float | None,
        max_cost: float | None,
        daily_budget: float | None,
    ) -> BudgetReservation | None:
        """Check the caps and hold the estimate; None when no cap is set."""
        if not budget_enabled(max_cost, daily_budget):
            return None
        return self.ledger.ensure_budget(estimate_usd, max_cost, daily_budget)

    # -- dispatch ------------------------------------------------------------

    async def dispatch(self, call: PreparedCall) -> ChatResponse:
        """Execute a prepared call: network round trip, normalization, cost enrichment."""
        with log_context(provider=call.resolved.provider, model=call.resolved.spec):
            adapter = self.get_adapter(call.resolved.provider)
            response = normalize_response(await adapter.chat(call.request))
            if response.usage.cost_usd is None:
                response.usage.cost_usd = await self.exact_cost(call.resolved.provider, response.response_id)
            logger.debug("Dispatched %s (response %s)", call.resolved.spec, response.response_id)
        return response

    async def exact_cost(self, provider: str, response_id: str | None) -> float | None:
        """Best-effort exact cost lookup; any failure falls back to None."""
        if provider != "openrouter" or not response_id:
            return None
        try:
            adapter = self.get_adapter(provider)
            if not isinstance(adapter, OpenAICompatAdapter):
                return None
            return await adapter.generation_cost(response_id)
        except GatewayError as e:
            logger.debug("Exact cost lookup for %s skipped: %s", response_id, e)
            return None

    async def ask(
        self,
        request: ChatRequest,
        provider: str | None = None,
        max_cost: float | None = None,
        daily_budget: float | None = None,
        has_video: bool = False,
    ) -> GatewayResult:
        """Single-model chat with capability gating and budget enforcement."""
        call = self.prepare(request, provider=provider, has_video=has_video)
        reservation = self.reserve(call.estimate.estimate_usd, max_cost, daily_budget)
        try:
            response = await self.dispatch(call)
            if reservation is not None:
                reservation.commit(BudgetLedger.spend_amount(response.usage.cost_usd, call.estimate.estimate_usd))
        finally:
            if reservation is not None:
                reservation.release()

        return GatewayResult(
            provider=call.resolved.provider,
            model=call.resolved.spec,
            response=response,
            estimate=call.estimate,
            warnings=call.warnings,
        )

    async def stream(
        self,
        request: ChatRequest,
        provider: str | None = None,
        max_cost: float | None = None,
        daily_budget: float | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Streaming chat.

        The estimate is recorded when the stream ends, whether it ran to
        completion or the consumer closed it early. A provider error
        releases the reservation instead.
        """
        call = self.prepare(request, provider=provider)
        reservation = self.reserve(call.estimate.estimate_usd, max_cost, daily_budget)

        adapter = self.get_adapter(call.resolved.provider)
        failed = False
        try:
            async for event in adapter.stream_chat(call.request):
                yield event
        except GatewayError:
            failed = True
            raise
        finally:
            if reservation is not None:
                if failed:
                    reservation.release()
                else:
                    reservation.commit(call.estimate.estimate_usd)

    # -- other capabilities ---------------------------------------------------

    def _route(self, model: str, provider: str | None, has_images: bool = False) -> ResolvedModel:
        return self.router.resolve(model, provider=provider, registry=self.registry, has_images=has_images)

    async def embeddings(self, request: EmbeddingRequest, provider: str | None = None) -> EmbeddingResponse:
        resolved = self._route(request.model, provider)
        adapter = self.get_adapter(resolved.provider)
        return await adapter.embeddings(replace(request, model=resolved.model))

    async def generate_image(self, request: ImageRequest, provider: str | None = None) -> ImageResponse:
        resolved = self._route(request.model, provider)
        adapter = self.get_adapter(resolved.provider)
        return await adapter.image_generation(replace(request, model=resolved.model))

    async def generate_video(self, request: VideoRequest, provider: str | None = None) -> VideoResponse:
        resolved = self._route(request.model, provider, has_images=request.image is not None)
        adapter = self.get_adapter(resolved.provider)
        return await adapter.video_generation(replace(request, model=resolved.model))
