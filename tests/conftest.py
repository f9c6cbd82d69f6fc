from __future__ import annotations

from collections.abc import Callable
from datetime import date

import httpx
import pytest

from council_gateway.core.config import settings

# Never sleep between retries or polls in tests
settings.retry_base_delay = 0.0
settings.retry_max_delay = 0.0
settings.video_poll_interval_seconds = 0.0

from council_gateway.gateway.budget import BudgetLedger  # noqa: E402
from council_gateway.gateway.registry import (  # noqa: E402
    ModelCapability,
    ModelEntry,
    ModelPricing,
    ModelRegistry,
)
from council_gateway.gateway.router import ModelRouter  # noqa: E402

TEST_API_KEYS = {
    "openai": "sk-openai-test",
    "openrouter": "sk-or-test",
    "xai": "xai-test",
    "litellm": "sk-litellm-test",
    "anthropic": "sk-ant-test",
    "gemini": "gemini-test",
}


def _mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def mock_client() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.AsyncClient]:
    """Factory for an AsyncClient whose every request is answered by `handler`."""
    return _mock_client


@pytest.fixture
def registry() -> ModelRegistry:
    return ModelRegistry(
        models=[
            ModelEntry(
                id="openai/gpt-4o-mini",
                pricing=ModelPricing(prompt_per_1k=0.15, completion_per_1k=0.6, request=0.0),
                provider="openrouter",
                capability=ModelCapability(vision=True),
            ),
            ModelEntry(
                id="openai/gpt-3.5-turbo",
                pricing=ModelPricing(prompt_per_1k=0.5, completion_per_1k=1.5, request=0.0),
                provider="openrouter",
                capability=ModelCapability(vision=False),
            ),
            ModelEntry(
                id="anthropic/claude-sonnet-4",
                pricing=ModelPricing(prompt_per_1k=3.0, completion_per_1k=15.0, request=0.0),
                provider="openrouter",
                capability=ModelCapability(vision=True, reasoning=True),
            ),
            ModelEntry(
                id="gemini-2.5-flash",
                pricing=ModelPricing(prompt_per_1k=0.0003, completion_per_1k=0.0025, request=0.0),
                provider="gemini",
            ),
            ModelEntry(
                id="x-ai/grok-4",
                pricing=ModelPricing(prompt_per_1k=3.0, completion_per_1k=15.0),
                provider="openrouter",
            ),
        ]
    )


@pytest.fixture
def router() -> ModelRouter:
    return ModelRouter(api_keys=dict(TEST_API_KEYS), default_provider="openai", env={})


class FixedDay:
    """Injectable clock for the budget ledger."""

    def __init__(self, day: date):
        self.day = day

    def __call__(self) -> date:
        return self.day


@pytest.fixture
def clock() -> FixedDay:
    return FixedDay(date(2025, 3, 14))


@pytest.fixture
def ledger(tmp_path, clock) -> BudgetLedger:
    return BudgetLedger(tmp_path / "budget.json", today=clock)
