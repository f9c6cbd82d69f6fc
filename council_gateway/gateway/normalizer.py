"""Response Normalizer — post-processes adapter responses.

  - Fills total_tokens when the vendor reports only the parts
  - Folds a header-reported cost into usage when the body carries none
  - Sums usage across council members (missing fields count as zero)
"""

from __future__ import annotations

from council_gateway.gateway.types import ChatResponse, Usage


def normalize_response(response: ChatResponse) -> ChatResponse:
    """Apply normalization to a chat response. Idempotent."""
    usage = response.usage

    if usage.total_tokens is None and (usage.input_tokens is not None or usage.output_tokens is not None):
        usage.total_tokens = (usage.input_tokens or 0) + (usage.output_tokens or 0)

    if usage.cost_usd is None and response.header_cost is not None:
        usage.cost_usd = response.header_cost

    if response.content is None:
        response.content = ""

    return response


def _add(total: int | float | None, value: int | float | None) -> int | float | None:
    if value is None:
        return total
    return (total or 0) + value


def add_usage(total: Usage, usage: Usage) -> Usage:
    """Accumulate `usage` into `total` in place and return it."""
    total.input_tokens = _add(total.input_tokens, usage.input_tokens)
    total.output_tokens = _add(total.output_tokens, usage.output_tokens)
    total.reasoning_tokens = _add(total.reasoning_tokens, usage.reasoning_tokens)
    total.total_tokens = _add(total.total_tokens, usage.total_tokens)
    total.cost_usd = _add(total.cost_usd, usage.cost_usd)
    return total
