"""Council Orchestrator — one prompt fanned out to many models.

  - One task per model (duplicates dispatched independently)
  - asyncio.Semaphore caps requests in flight; a task holds its permit
    until it finishes, success or failure
  - Results land in pre-sized slots by input position, so output order is
    input order no matter which model answers first
  - Any member failure fails the whole council; siblings already running are
    left to finish and their results are discarded
  - Budget is checked and reserved once for the summed estimate before
    dispatch; the reservation is committed with the actual spend after the
    council succeeds and released if it fails
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field, replace

from council_gateway.core.config import settings
from council_gateway.core.logging import log_context
from council_gateway.core.metrics import COUNCIL_RUNS
from council_gateway.gateway.budget import BudgetLedger
from council_gateway.gateway.errors import ConfigurationError, CouncilError
from council_gateway.gateway.gateway import LlmGateway, PreparedCall
from council_gateway.gateway.normalizer import add_usage
from council_gateway.gateway.registry import PricingEstimate
from council_gateway.gateway.types import ChatMessage, ChatRequest, ContentPart, TextPart, Usage

logger = logging.getLogger(__name__)

DRY_RUN_CONTENT = "(dry-run) no provider call executed"


@dataclass
class CouncilMemberResult:
    model: str  # canonical provider/model spec
    content: str
    usage: Usage
    pricing: PricingEstimate
    response_id: str | None = None
    latency_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "model": self.model,
            "content": self.content,
            "usage": self.usage.to_dict(),
            "pricing": self.pricing.to_dict(),
            "response_id": self.response_id,
            "latency_ms": self.latency_ms,
        }


@dataclass
class CouncilResult:
    id: str
    results: list[CouncilMemberResult] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    estimate_usd_total: float | None = None
    warnings: list[str] = field(default_factory=list)
    dry_run: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "results": [r.to_dict() for r in self.results],
            "usage": self.usage.to_dict(),
            "estimate_usd_total": self.estimate_usd_total,
            "warnings": list(self.warnings),
            "dry_run": self.dry_run,
        }


def _sum_estimates(estimates: list[PricingEstimate]) -> float | None:
    """Council estimate; indeterminate if any member's is."""
    total = 0.0
    for estimate in estimates:
        if estimate.estimate_usd is None:
            return None
        total += estimate.estimate_usd
    return total


class CouncilOrchestrator:
    """Bounded-concurrency fan-out over an LlmGateway.

    Usage:
        council = CouncilOrchestrator(gateway, max_parallel=2)
        result = await council.run(["openai/gpt-4o", "anthropic/claude-sonnet-4"], "Review this diff")
    """

    def __init__(self, gateway: LlmGateway, max_parallel: int | None = None):
        self.gateway = gateway
        self.max_parallel = max(1, max_parallel if max_parallel is not None else settings.council_max_parallel)

    def _build_request(
        self,
        model: str,
        prompt: str,
        media: list[ContentPart] | None,
        system: str | None,
        temperature: float | None,
        max_tokens: int | None,
        response_format: dict | None,
    ) -> ChatRequest:
        content: str | list[ContentPart] = [TextPart(prompt), *media] if media else prompt
        messages = [ChatMessage.user(content)]
        if system:
            messages.insert(0, ChatMessage.system(system))
        return ChatRequest(
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            response_format=response_format,
        )

    def prepare(
        self,
        models: list[str],
        prompt: str,
        provider: str | None = None,
        media: list[ContentPart] | None = None,
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        response_format: dict | None = None,
    ) -> list[PreparedCall]:
        """Route and estimate every member. Fails before any network call.

        Without ``max_tokens`` every member is priced at the largest output
        limit among the members, so no member's estimate is starved.
        """
        if not models:
            raise ConfigurationError("council requires at least one model")

        calls: list[PreparedCall] = []
        for model in models:
            member_provider = self.gateway.router.provider_for(model, provider)
            if not member_provider:
                raise ConfigurationError(f"provider is required for council model '{model}'")
            request = self._build_request(model, prompt, media, system, temperature, max_tokens, response_format)
            calls.append(self.gateway.prepare(request, provider=member_provider))

        if max_tokens is None:
            shared = max(c.output_tokens for c in calls)
            calls = [
                c
                if c.output_tokens == shared
                else self.gateway.prepare(
                    replace(c.request, model=models[i]), provider=c.resolved.provider, output_tokens=shared
                )
                for i, c in enumerate(calls)
            ]
        return calls

    async def run(
        self,
        models: list[str],
        prompt: str,
        provider: str | None = None,
        media: list[ContentPart] | None = None,
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        response_format: dict | None = None,
        max_cost: float | None = None,
        daily_budget: float | None = None,
        dry_run: bool = False,
    ) -> CouncilResult:
        council_id = uuid.uuid4().hex[:16]
        calls = self.prepare(models, prompt, provider, media, system, temperature, max_tokens, response_format)
        total_estimate = _sum_estimates([c.estimate for c in calls])
        warnings = [w for c in calls for w in c.warnings]

        reservation = self.gateway.reserve(total_estimate, max_cost, daily_budget)

        if dry_run:
            if reservation is not None:
                reservation.release()
            results = [
                CouncilMemberResult(
                    model=c.resolved.spec,
                    content=DRY_RUN_CONTENT,
                    usage=Usage(input_tokens=0, output_tokens=0, total_tokens=0, cost_usd=0.0),
                    pricing=c.estimate,
                )
                for c in calls
            ]
            COUNCIL_RUNS.labels(status="dry_run").inc()
            return CouncilResult(
                id=council_id,
                results=results,
                usage=Usage(input_tokens=0, output_tokens=0, total_tokens=0, cost_usd=0.0),
                estimate_usd_total=total_estimate,
                warnings=warnings,
                dry_run=True,
            )

        with log_context(council_id=council_id):
            logger.info(
                "Council %s: dispatching %d models (max_parallel=%d)",
                council_id,
                len(calls),
                self.max_parallel,
            )
            try:
                results = await self._dispatch_all(calls)
                if reservation is not None:
                    spend = 0.0
                    for result in results:
                        amount = BudgetLedger.spend_amount(result.usage.cost_usd, result.pricing.estimate_usd)
                        spend += amount or 0.0
                    reservation.commit(spend)
            finally:
                if reservation is not None:
                    reservation.release()

            usage = Usage()
            for result in results:
                add_usage(usage, result.usage)

            COUNCIL_RUNS.labels(status="success").inc()
            logger.info("Council %s finished: %d results", council_id, len(results))
        return CouncilResult(
            id=council_id,
            results=results,
            usage=usage,
            estimate_usd_total=total_estimate,
            warnings=warnings,
        )

    async def _dispatch_all(self, calls: list[PreparedCall]) -> list[CouncilMemberResult]:
        semaphore = asyncio.Semaphore(self.max_parallel)
        slots: list[CouncilMemberResult | None] = [None] * len(calls)

        async def _member(index: int, call: PreparedCall) -> None:
            async with semaphore:
                start = time.monotonic()
                response = await self.gateway.dispatch(call)
                slots[index] = CouncilMemberResult(
                    model=call.resolved.spec,
                    content=response.content,
                    usage=replace(response.usage),
                    pricing=call.estimate,
                    response_id=response.response_id,
                    latency_ms=int((time.monotonic() - start) * 1000),
                )

        # Every task settles before we look at failures; nothing is cancelled.
        outcomes = await asyncio.gather(
            *(_member(i, call) for i, call in enumerate(calls)),
            return_exceptions=True,
        )

        failures = [(i, o) for i, o in enumerate(outcomes) if isinstance(o, BaseException)]
        if failures:
            COUNCIL_RUNS.labels(status="failed").inc()
            for i, error in failures:
                logger.warning("Council member #%d (%s) failed: %s", i, calls[i].resolved.spec, error)
            index, error = failures[0]
            raise CouncilError(index, calls[index].resolved.spec, error, failed=len(failures)) from error

        return [slot for slot in slots if slot is not None]
