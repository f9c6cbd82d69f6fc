"""Multi-provider LLM gateway.

Dispatches chat, embedding, image and video requests to LLM providers with:
  - Model Router (provider/model resolution and prefix conflicts)
  - Model Registry (capabilities and pricing merged from several sources)
  - Stream Decoders (SSE and named-event chunk framing)
  - Provider Adapters (OpenAI-compatible, Anthropic, Gemini dialects)
  - Council Orchestrator (bounded fan-out of one prompt to many models)
  - Budget Ledger (per-call and daily spend caps, file-backed)
"""
