"""Provider Adapters — protocol-level handling for each wire dialect.

Each adapter translates the vendor-neutral request types into one vendor's
HTTP protocol, sends it, and returns normalized responses.

Dialect-specific behaviors:
  - OpenAI-compatible: chat completions, SSE streaming, embeddings, images,
    multipart video submission + status polling + content download
  - Anthropic: /v1/messages, system blocks, response_format → forced tool,
    named-event streaming
  - Gemini: generateContent, role merging, file_data/inline_data parts,
    resumable upload for large media, predictLongRunning video operations

Capabilities a dialect does not offer raise UnsupportedOperationError.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx

from council_gateway.core.config import settings
from council_gateway.core.metrics import PROVIDER_LATENCY, PROVIDER_REQUESTS
from council_gateway.gateway.errors import (
    ConfigurationError,
    GatewayError,
    MissingApiKeyError,
    OperationFailedError,
    OperationTimeoutError,
    ProtocolError,
    TransportError,
    UnsupportedOperationError,
)
from council_gateway.gateway.http import build_client, error_from_response, parse_json, send_json
from council_gateway.gateway.http import request as send_request
from council_gateway.gateway.media import encode_base64, guess_mime, is_remote_uri, needs_upload, parse_data_url
from council_gateway.gateway.stream import (
    GEMINI_DELTA_POINTER,
    NamedEventDecoder,
    SSEDecoder,
    StreamDecoder,
    decode_stream,
)
from council_gateway.gateway.types import (
    AudioPart,
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ContentPart,
    EmbeddingRequest,
    EmbeddingResponse,
    FilePart,
    GeneratedImage,
    GeneratedVideo,
    ImagePart,
    ImageRequest,
    ImageResponse,
    MediaInput,
    PassthroughPart,
    ProviderConfig,
    ProviderKind,
    StreamEvent,
    TextPart,
    Usage,
    VideoRequest,
    VideoResponse,
)

logger = logging.getLogger(__name__)


def _as_int(value: Any) -> int | None:
    return value if isinstance(value, int) and not isinstance(value, bool) else None


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


class BaseProviderAdapter(ABC):
    """Base class for all provider adapters.

    The HTTP client may be injected (tests pass one built on
    httpx.MockTransport); otherwise the adapter owns one and closes it in
    aclose().
    """

    kind: ProviderKind

    def __init__(
        self,
        config: ProviderConfig,
        client: httpx.AsyncClient | None = None,
        poll_interval: float | None = None,
        max_poll_attempts: int | None = None,
        inline_limit: int | None = None,
        max_retries: int | None = None,
    ):
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self._owns_client = client is None
        self.client = client or build_client()
        self.poll_interval = settings.video_poll_interval_seconds if poll_interval is None else poll_interval
        self.max_poll_attempts = settings.video_max_poll_attempts if max_poll_attempts is None else max_poll_attempts
        self.inline_limit = settings.inline_media_limit_bytes if inline_limit is None else inline_limit
        self.max_retries = max_retries

    @property
    def provider(self) -> str:
        return self.config.name

    @abstractmethod
    async def chat(self, request: ChatRequest) -> ChatResponse:
        """Send a chat request and return the normalized response."""
        ...

    @abstractmethod
    def stream_chat(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        """Stream content deltas for a chat request."""
        ...

    async def embeddings(self, request: EmbeddingRequest) -> EmbeddingResponse:
        raise UnsupportedOperationError(self.kind.value, "embeddings")

    async def image_generation(self, request: ImageRequest) -> ImageResponse:
        raise UnsupportedOperationError(self.kind.value, "image generation")

    async def video_generation(self, request: VideoRequest) -> VideoResponse:
        raise UnsupportedOperationError(self.kind.value, "video generation")

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    # -- shared plumbing -----------------------------------------------------

    def _require_key(self, env_hint: str) -> str:
        if not self.config.api_key:
            raise MissingApiKeyError(self.provider, env_hint)
        return self.config.api_key

    @asynccontextmanager
    async def _observe(self, operation: str):
        start = time.monotonic()
        status = "success"
        try:
            yield
        except GatewayError as e:
            status = type(e).__name__
            raise
        except Exception:
            status = "error"
            raise
        finally:
            PROVIDER_REQUESTS.labels(provider=self.provider, operation=operation, status=status).inc()
            PROVIDER_LATENCY.labels(provider=self.provider, operation=operation).observe(time.monotonic() - start)

    async def _post_json(self, url: str, payload: Any, headers: dict[str, str]) -> tuple[Any, httpx.Headers]:
        return await send_json(
            self.client,
            "POST",
            url,
            provider=self.provider,
            max_retries=self.max_retries,
            json=payload,
            headers=headers,
        )

    async def _get_json(self, url: str, headers: dict[str, str]) -> Any:
        data, _ = await send_json(
            self.client, "GET", url, provider=self.provider, max_retries=self.max_retries, headers=headers
        )
        return data

    async def _stream(
        self,
        url: str,
        payload: Any,
        headers: dict[str, str],
        decoder: StreamDecoder,
    ) -> AsyncIterator[StreamEvent]:
        headers = {**headers, "Accept": "text/event-stream"}
        try:
            async with self.client.stream("POST", url, json=payload, headers=headers) as resp:
                if not resp.is_success:
                    await resp.aread()
                    raise error_from_response(resp, self.provider)
                async for event in decode_stream(resp.aiter_bytes(), decoder):
                    yield event
        except httpx.HTTPError as e:
            raise TransportError(f"{self.provider}: stream failed: {e}", provider=self.provider) from e

    async def _fetch_bytes(self, url: str) -> tuple[bytes, str | None]:
        resp = await send_request(self.client, "GET", url, provider=self.provider, max_retries=self.max_retries)
        content_type = resp.headers.get("content-type")
        mime = content_type.split(";", 1)[0].strip() if content_type else None
        return resp.content, mime

    async def _media_bytes(self, media: MediaInput) -> bytes:
        """Raw bytes of a media input. Data URLs are decoded, http(s) URLs downloaded."""
        if media.url is None:
            return media.read_bytes()
        data_url = parse_data_url(media.url)
        if data_url is not None:
            return data_url.decode()
        if not media.url.startswith(("http://", "https://")):
            raise ConfigurationError(f"{self.provider}: cannot fetch media from {media.url}")
        content, _ = await self._fetch_bytes(media.url)
        return content


# ---------------------------------------------------------------------------
# OpenAI-compatible Adapter (OpenAI, OpenRouter, xAI, LiteLLM proxy)
# ---------------------------------------------------------------------------

_OPENAI_OPTIONAL_FIELDS = (
    "temperature",
    "max_tokens",
    "top_p",
    "stop",
    "seed",
    "presence_penalty",
    "frequency_penalty",
    "user",
    "response_format",
)

LITELLM_COST_HEADER = "x-litellm-response-cost"


class OpenAICompatAdapter(BaseProviderAdapter):
    """OpenAI Chat Completions dialect."""

    kind = ProviderKind.OPENAI_COMPAT

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        headers.update(self.config.extra_headers)
        headers.update(extra or {})
        return headers

    @staticmethod
    def _part(part: ContentPart) -> dict:
        if isinstance(part, TextPart):
            return {"type": "text", "text": part.text}
        if isinstance(part, ImagePart):
            image_url: dict[str, Any] = {"url": part.url}
            if part.detail:
                image_url["detail"] = part.detail
            return {"type": "image_url", "image_url": image_url}
        if isinstance(part, FilePart):
            file: dict[str, Any] = {}
            if part.data.startswith("data:"):
                file["file_data"] = part.data
            elif is_remote_uri(part.data):
                mime = part.mime_type or guess_mime(part.data, "")
                if mime.startswith("image/") and not part.data.startswith("gs://"):
                    return {"type": "image_url", "image_url": {"url": part.data}}
                raise ConfigurationError(
                    f"file parts need a data url or an uploaded file id on this provider, got {part.data}"
                )
            else:
                file["file_id"] = part.data
            if part.filename:
                file["filename"] = part.filename
            return {"type": "file", "file": file}
        if isinstance(part, AudioPart):
            return {"type": "input_audio", "input_audio": {"data": part.data, "format": part.format}}
        return part.value

    def _message(self, message: ChatMessage) -> dict:
        if message.is_text_only():
            return {"role": message.role, "content": message.text()}
        return {"role": message.role, "content": [self._part(p) for p in message.parts]}

    def _chat_payload(self, request: ChatRequest, stream: bool = False) -> dict:
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": [self._message(m) for m in request.messages],
        }
        for name in _OPENAI_OPTIONAL_FIELDS:
            value = getattr(request, name)
            if value is not None:
                payload[name] = value
        if stream:
            payload["stream"] = True
        payload.update(request.extra_body)
        return payload

    @staticmethod
    def parse_usage(data: dict) -> Usage:
        usage = data.get("usage") or {}
        details = usage.get("completion_tokens_details") or {}
        return Usage(
            input_tokens=_as_int(usage.get("prompt_tokens")),
            output_tokens=_as_int(usage.get("completion_tokens")),
            reasoning_tokens=_as_int(details.get("reasoning_tokens")),
            total_tokens=_as_int(usage.get("total_tokens")),
            cost_usd=_as_float(usage.get("cost")),
        )

    async def chat(self, request: ChatRequest) -> ChatResponse:
        async with self._observe("chat"):
            data, headers = await self._post_json(
                f"{self.base_url}/chat/completions",
                self._chat_payload(request),
                self._headers(request.extra_headers),
            )

        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise ProtocolError(f"{self.provider}: response has no choices")
        message = choices[0].get("message") or {}

        return ChatResponse(
            content=message.get("content") or "",
            usage=self.parse_usage(data),
            response_id=data.get("id"),
            header_cost=_as_float(headers.get(LITELLM_COST_HEADER)),
            raw=data,
        )

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        async for event in self._stream(
            f"{self.base_url}/chat/completions",
            self._chat_payload(request, stream=True),
            self._headers(request.extra_headers),
            SSEDecoder(),
        ):
            yield event

    async def generation_cost(self, response_id: str) -> float | None:
        """Exact USD cost of a finished generation (OpenRouter ``/generation``)."""
        async with self._observe("generation_cost"):
            data = await self._get_json(
                str(httpx.URL(f"{self.base_url}/generation", params={"id": response_id})),
                self._headers(),
            )
        if not isinstance(data, dict):
            raise ProtocolError(f"{self.provider}: unexpected generation payload")
        details = data.get("data") if isinstance(data.get("data"), dict) else {}
        for value in (details.get("total_cost"), details.get("total_cost_usd"), data.get("total_cost")):
            cost = _as_float(value)
            if cost is not None:
                return cost
        return None

    async def embeddings(self, request: EmbeddingRequest) -> EmbeddingResponse:
        async with self._observe("embeddings"):
            data, _ = await self._post_json(
                f"{self.base_url}/embeddings",
                {"model": request.model, "input": request.inputs},
                self._headers(request.extra_headers),
            )
        try:
            vectors = [item["embedding"] for item in data["data"]]
        except (KeyError, TypeError) as e:
            raise ProtocolError(f"{self.provider}: malformed embeddings response") from e
        return EmbeddingResponse(vectors=vectors, usage=self.parse_usage(data), raw=data)

    async def image_generation(self, request: ImageRequest) -> ImageResponse:
        payload: dict[str, Any] = {"model": request.model, "prompt": request.prompt}
        for name in ("n", "size", "quality", "background"):
            value = getattr(request, name)
            if value is not None:
                payload[name] = value

        async with self._observe("image"):
            data, _ = await self._post_json(
                f"{self.base_url}/images/generations", payload, self._headers(request.extra_headers)
            )

        images = [
            GeneratedImage(
                b64_json=item.get("b64_json"),
                url=item.get("url"),
                revised_prompt=item.get("revised_prompt"),
            )
            for item in data.get("data") or []
        ]
        if not images:
            raise ProtocolError(f"{self.provider}: image response contained no data")
        return ImageResponse(images=images, usage=self.parse_usage(data), raw=data)

    async def video_generation(self, request: VideoRequest) -> VideoResponse:
        # multipart form; (None, value) tuples are plain fields
        form: dict[str, Any] = {"model": (None, request.model), "prompt": (None, request.prompt)}
        if request.seconds is not None:
            form["seconds"] = (None, str(request.seconds))
        if request.size:
            form["size"] = (None, request.size)
        headers = {k: v for k, v in self._headers(request.extra_headers).items() if k != "Content-Type"}

        async with self._observe("video"):
            if request.image is not None:
                filename = request.image.path.name if request.image.path else "reference"
                image = await self._media_bytes(request.image)
                form["input_reference"] = (filename, image, request.image.mime_type)

            resp = await send_request(
                self.client,
                "POST",
                f"{self.base_url}/videos",
                provider=self.provider,
                max_retries=self.max_retries,
                files=form,
                headers=headers,
            )
            job = parse_json(resp, self.provider)
            video_id = job.get("id")
            if not video_id:
                raise ProtocolError(f"{self.provider}: video submission returned no id")

            status = await self._poll_video(video_id, headers)
            content, mime = await self._fetch_video(video_id, headers)

        mime = mime or "video/mp4"
        return VideoResponse(
            videos=[GeneratedVideo(url=f"data:{mime};base64,{encode_base64(content)}", mime_type=mime)],
            operation_id=video_id,
            raw=status,
        )

    async def _poll_video(self, video_id: str, headers: dict[str, str]) -> dict:
        url = f"{self.base_url}/videos/{video_id}"
        for attempt in range(self.max_poll_attempts):
            data = await self._get_json(url, headers)
            status = data.get("status")
            if status == "completed":
                return data
            if status == "failed":
                error = data.get("error")
                message = error.get("message") if isinstance(error, dict) else error
                raise OperationFailedError(message or "video generation failed", operation_id=video_id)
            logger.debug("Video %s status=%s (poll %d/%d)", video_id, status, attempt + 1, self.max_poll_attempts)
            await asyncio.sleep(self.poll_interval)

        raise OperationTimeoutError(
            f"video {video_id} not finished after {self.max_poll_attempts} polls", operation_id=video_id
        )

    async def _fetch_video(self, video_id: str, headers: dict[str, str]) -> tuple[bytes, str | None]:
        resp = await send_request(
            self.client,
            "GET",
            f"{self.base_url}/videos/{video_id}/content",
            provider=self.provider,
            max_retries=self.max_retries,
            headers=headers,
        )
        content_type = resp.headers.get("content-type")
        mime = content_type.split(";", 1)[0].strip() if content_type else None
        return resp.content, mime if mime and mime.startswith("video/") else None


# ---------------------------------------------------------------------------
# Anthropic Adapter
# ---------------------------------------------------------------------------

ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_DEFAULT_MAX_TOKENS = 1024
RESPONSE_FORMAT_TOOL = "response_format"

# Models that accept native structured output instead of the forced-tool trick
_OUTPUT_FORMAT_MODELS = ("sonnet-4.5", "sonnet-4-5", "opus-4.1", "opus-4-1")


def _response_schema(response_format: dict | None) -> dict | None:
    if not response_format or response_format.get("type") == "text":
        return None
    if "response_schema" in response_format:
        return response_format["response_schema"]
    schema = (response_format.get("json_schema") or {}).get("schema")
    if schema is not None:
        return schema
    if response_format.get("type") == "json_object":
        return {"type": "object", "properties": {}, "additionalProperties": True}
    return None


class AnthropicAdapter(BaseProviderAdapter):
    """Anthropic Messages API dialect."""

    kind = ProviderKind.ANTHROPIC

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {
            "x-api-key": self._require_key("ANTHROPIC_API_KEY"),
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }
        headers.update(self.config.extra_headers)
        headers.update(extra or {})
        return headers

    async def _image_block(self, part: ImagePart) -> dict:
        data_url = parse_data_url(part.url)
        if data_url is not None:
            return {"type": "image", "source": {"type": "base64", "media_type": data_url.mime_type, "data": data_url.data}}
        if part.url.startswith("https://"):
            return {"type": "image", "source": {"type": "url", "url": part.url}}
        if part.url.startswith("http://"):
            # Anthropic only fetches https; inline plain-http images ourselves
            content, mime = await self._fetch_bytes(part.url)
            media_type = mime or guess_mime(part.url, "image/png")
            return {"type": "image", "source": {"type": "base64", "media_type": media_type, "data": encode_base64(content)}}
        raise ConfigurationError(f"unsupported image url for anthropic: {part.url[:60]}")

    async def _content(self, message: ChatMessage) -> str | list[dict]:
        if message.is_text_only():
            return message.text()
        blocks: list[dict] = []
        for part in message.parts:
            if isinstance(part, TextPart):
                blocks.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                blocks.append(await self._image_block(part))
            elif isinstance(part, PassthroughPart):
                blocks.append(part.value)
            else:
                raise ConfigurationError(f"anthropic does not accept {type(part).__name__} content")
        return blocks

    async def _chat_payload(self, request: ChatRequest, stream: bool = False) -> dict:
        system: list[dict] = []
        messages: list[dict] = []
        for message in request.messages:
            if message.role == "system":
                text = message.text()
                if text:
                    system.append({"type": "text", "text": text})
                continue
            if message.role not in ("user", "assistant"):
                raise ConfigurationError(f"anthropic does not support role '{message.role}'")
            messages.append({"role": message.role, "content": await self._content(message)})

        payload: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.max_tokens or ANTHROPIC_DEFAULT_MAX_TOKENS,
        }
        if stream:
            payload["stream"] = True
        if system:
            payload["system"] = system
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.top_p is not None:
            payload["top_p"] = request.top_p
        stop = [s.strip() for s in request.stop or [] if s.strip()]
        if stop:
            payload["stop_sequences"] = stop
        if request.user:
            payload["metadata"] = {"user_id": request.user}

        schema = _response_schema(request.response_format)
        if schema is not None:
            if any(m in request.model.lower() for m in _OUTPUT_FORMAT_MODELS):
                payload["output_format"] = {"type": "json_schema", "schema": schema}
            else:
                payload["tools"] = [{"name": RESPONSE_FORMAT_TOOL, "input_schema": schema}]
                payload["tool_choice"] = {"type": "tool", "name": RESPONSE_FORMAT_TOOL}

        payload.update(request.extra_body)
        return payload

    @staticmethod
    def extract_text(data: dict) -> str:
        blocks = data.get("content")
        if not isinstance(blocks, list):
            return data.get("completion") or ""
        text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
        if text:
            return text
        for block in blocks:
            if block.get("type") == "tool_use" and block.get("name") == RESPONSE_FORMAT_TOOL:
                return json.dumps(block.get("input", {}), ensure_ascii=False)
        return ""

    async def chat(self, request: ChatRequest) -> ChatResponse:
        payload = await self._chat_payload(request)
        async with self._observe("chat"):
            data, _ = await self._post_json(f"{self.base_url}/v1/messages", payload, self._headers(request.extra_headers))

        usage = data.get("usage") or {}
        input_tokens = _as_int(usage.get("input_tokens"))
        output_tokens = _as_int(usage.get("output_tokens"))
        return ChatResponse(
            content=self.extract_text(data),
            usage=Usage(input_tokens=input_tokens, output_tokens=output_tokens),
            response_id=data.get("id"),
            raw=data,
        )

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        payload = await self._chat_payload(request, stream=True)
        async for event in self._stream(
            f"{self.base_url}/v1/messages",
            payload,
            self._headers(request.extra_headers),
            NamedEventDecoder(),
        ):
            yield event


# ---------------------------------------------------------------------------
# Gemini Adapter (Google Generative Language API)
# ---------------------------------------------------------------------------

_MEDIA_RESOLUTION = {
    "low": "MEDIA_RESOLUTION_LOW",
    "medium": "MEDIA_RESOLUTION_MEDIUM",
    "high": "MEDIA_RESOLUTION_HIGH",
    "ultra_high": "MEDIA_RESOLUTION_ULTRA_HIGH",
}

_GEMINI_ROLES = {"user": "user", "assistant": "model"}


class GeminiAdapter(BaseProviderAdapter):
    """Gemini generateContent dialect with resumable upload and LRO polling."""

    kind = ProviderKind.GEMINI

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {
            "x-goog-api-key": self._require_key("GEMINI_API_KEY"),
            "Content-Type": "application/json",
        }
        headers.update(self.config.extra_headers)
        headers.update(extra or {})
        return headers

    @staticmethod
    def _model_path(model: str) -> str:
        return model.removeprefix("models/")

    @staticmethod
    def _media_part(url: str, mime_type: str | None, detail: str | None = None) -> dict:
        if is_remote_uri(url):
            mime = mime_type or guess_mime(url, "")
            if not mime:
                raise ConfigurationError(f"missing media mime type for {url}")
            part: dict[str, Any] = {"file_data": {"mime_type": mime, "file_uri": url}}
        else:
            data_url = parse_data_url(url)
            if data_url is None:
                raise ConfigurationError("unsupported gemini media url")
            part = {"inline_data": {"mime_type": mime_type or data_url.mime_type, "data": data_url.data}}
        level = _MEDIA_RESOLUTION.get(detail or "")
        if level:
            part["media_resolution"] = {"level": level}
        return part

    def _part(self, part: ContentPart) -> dict:
        if isinstance(part, TextPart):
            return {"text": part.text}
        if isinstance(part, ImagePart):
            return self._media_part(part.url, None, part.detail)
        if isinstance(part, FilePart):
            return self._media_part(part.data, part.mime_type)
        if isinstance(part, AudioPart):
            mime = part.format if part.format.startswith("audio/") else f"audio/{part.format}"
            return {"inline_data": {"mime_type": mime, "data": part.data}}
        return part.value

    def _contents(self, messages: list[ChatMessage]) -> list[dict]:
        contents: list[dict] = []
        for message in messages:
            role = _GEMINI_ROLES.get(message.role)
            if role is None:
                raise ConfigurationError(f"gemini does not support role '{message.role}'")
            parts = [self._part(p) for p in message.parts]
            if not parts:
                continue
            # consecutive messages from the same side become one turn
            if contents and contents[-1]["role"] == role:
                contents[-1]["parts"].extend(parts)
            else:
                contents.append({"role": role, "parts": parts})
        if not contents:
            contents.append({"role": "user", "parts": [{"text": " "}]})
        return contents

    def _chat_payload(self, request: ChatRequest) -> dict:
        system_parts = [
            {"text": m.text()} for m in request.messages if m.role == "system" and m.text()
        ]
        payload: dict[str, Any] = {
            "contents": self._contents([m for m in request.messages if m.role != "system"]),
        }
        if system_parts:
            payload["system_instruction"] = {"parts": system_parts}

        generation: dict[str, Any] = {}
        if request.temperature is not None:
            generation["temperature"] = request.temperature
        if request.max_tokens is not None:
            generation["maxOutputTokens"] = request.max_tokens
        if request.top_p is not None:
            generation["topP"] = request.top_p
        if request.stop:
            generation["stopSequences"] = request.stop
        if request.seed is not None:
            generation["seed"] = request.seed
        if request.response_format and request.response_format.get("type") in ("json_object", "json_schema"):
            generation["responseMimeType"] = "application/json"
            schema = _response_schema(request.response_format)
            if request.response_format.get("type") == "json_schema" and schema is not None:
                generation["responseSchema"] = schema
        if generation:
            payload["generationConfig"] = generation

        payload.update(request.extra_body)
        return payload

    @staticmethod
    def parse_usage(data: dict) -> Usage:
        meta = data.get("usageMetadata") or {}
        return Usage(
            input_tokens=_as_int(meta.get("promptTokenCount")),
            output_tokens=_as_int(meta.get("candidatesTokenCount")),
            reasoning_tokens=_as_int(meta.get("thoughtsTokenCount")),
            total_tokens=_as_int(meta.get("totalTokenCount")),
        )

    async def chat(self, request: ChatRequest) -> ChatResponse:
        url = f"{self.base_url}/models/{self._model_path(request.model)}:generateContent"
        async with self._observe("chat"):
            data, _ = await self._post_json(url, self._chat_payload(request), self._headers(request.extra_headers))

        candidates = data.get("candidates") or []
        if not candidates:
            reason = (data.get("promptFeedback") or {}).get("blockReason", "unknown")
            raise ProtocolError(f"{self.provider}: no candidates returned (blockReason={reason})")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts if not p.get("thought"))

        return ChatResponse(
            content=text,
            usage=self.parse_usage(data),
            response_id=data.get("responseId"),
            raw=data,
        )

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        url = f"{self.base_url}/models/{self._model_path(request.model)}:streamGenerateContent?alt=sse"
        async for event in self._stream(
            url,
            self._chat_payload(request),
            self._headers(request.extra_headers),
            SSEDecoder(GEMINI_DELTA_POINTER),
        ):
            yield event

    async def embeddings(self, request: EmbeddingRequest) -> EmbeddingResponse:
        model = self._model_path(request.model)
        payload = {
            "requests": [
                {"model": f"models/{model}", "content": {"parts": [{"text": text}]}} for text in request.inputs
            ]
        }
        async with self._observe("embeddings"):
            data, _ = await self._post_json(
                f"{self.base_url}/models/{model}:batchEmbedContents", payload, self._headers(request.extra_headers)
            )
        try:
            vectors = [item["values"] for item in data["embeddings"]]
        except (KeyError, TypeError) as e:
            raise ProtocolError(f"{self.provider}: malformed embeddings response") from e
        return EmbeddingResponse(vectors=vectors, raw=data)

    # -- media ---------------------------------------------------------------

    def _upload_root(self) -> str:
        root = self.base_url
        for suffix in ("/v1beta", "/v1"):
            if root.endswith(suffix):
                return root[: -len(suffix)]
        return root

    async def upload_file(self, data: bytes, mime_type: str, display_name: str = "upload") -> str:
        """Two-phase resumable upload. Returns the file URI."""
        headers = self._headers()
        start_headers = {
            **headers,
            "X-Goog-Upload-Protocol": "resumable",
            "X-Goog-Upload-Command": "start",
            "X-Goog-Upload-Header-Content-Type": mime_type,
            "X-Goog-Upload-Header-Content-Length": str(len(data)),
        }
        async with self._observe("upload"):
            start = await send_request(
                self.client,
                "POST",
                f"{self._upload_root()}/upload/v1beta/files",
                provider=self.provider,
                max_retries=self.max_retries,
                json={"file": {"display_name": display_name}},
                headers=start_headers,
            )
            upload_url = start.headers.get("x-goog-upload-url")
            if not upload_url:
                raise ProtocolError(f"{self.provider}: upload start returned no x-goog-upload-url")

            finalize_headers = {
                "x-goog-api-key": headers["x-goog-api-key"],
                "Content-Type": mime_type,
                "X-Goog-Upload-Command": "upload, finalize",
                "X-Goog-Upload-Offset": "0",
            }
            resp = await send_request(
                self.client,
                "POST",
                upload_url,
                provider=self.provider,
                max_retries=self.max_retries,
                content=data,
                headers=finalize_headers,
            )
            result = parse_json(resp, self.provider)

        uri = (result.get("file") or {}).get("uri") or result.get("file_uri")
        if not uri:
            raise ProtocolError(f"{self.provider}: upload finished without a file uri")
        logger.info("Uploaded %d bytes (%s) to %s", len(data), mime_type, uri)
        return uri

    async def prepare_media(self, media: MediaInput, detail: str | None = None) -> ContentPart:
        """Inline small media; upload media at or above the inline limit."""
        if media.url is not None:
            return FilePart(data=media.url, mime_type=media.mime_type)
        if needs_upload(media.size_bytes, self.inline_limit):
            name = media.path.name if media.path else "upload"
            uri = await self.upload_file(media.read_bytes(), media.mime_type, name)
            return FilePart(data=uri, mime_type=media.mime_type)
        if media.mime_type.startswith("image/"):
            return media.as_image_part(detail)
        return FilePart(data=media.as_data_url(), mime_type=media.mime_type)

    # -- video ---------------------------------------------------------------

    async def video_generation(self, request: VideoRequest) -> VideoResponse:
        instance: dict[str, Any] = {"prompt": request.prompt}
        parameters: dict[str, Any] = {}
        if request.seconds is not None:
            parameters["durationSeconds"] = request.seconds
        if request.size:
            parameters["resolution"] = request.size
        if request.aspect_ratio:
            parameters["aspectRatio"] = request.aspect_ratio
        if request.negative_prompt:
            parameters["negativePrompt"] = request.negative_prompt

        payload: dict[str, Any] = {"instances": [instance]}
        if parameters:
            payload["parameters"] = parameters

        headers = self._headers(request.extra_headers)
        url = f"{self.base_url}/models/{self._model_path(request.model)}:predictLongRunning"
        async with self._observe("video"):
            if request.image is not None:
                instance["image"] = await self._video_image(request.image)
            data, _ = await self._post_json(url, payload, headers)
            name = data.get("name")
            if not name:
                raise ProtocolError(f"{self.provider}: video submission returned no operation name")
            operation = await self._poll_operation(name, headers)

        uris = self._video_uris(operation.get("response") or {})
        if not uris:
            raise ProtocolError(f"{self.provider}: operation {name} finished without videos")
        return VideoResponse(videos=[GeneratedVideo(url=u) for u in uris], operation_id=name, raw=operation)

    async def _video_image(self, image: MediaInput) -> dict:
        """Reference frame: remote URIs by reference, large media uploaded, the rest inline."""
        if image.url is not None and parse_data_url(image.url) is None:
            return {"fileUri": image.url, "mimeType": image.mime_type}
        data = await self._media_bytes(image)
        if needs_upload(len(data), self.inline_limit):
            name = image.path.name if image.path else "reference"
            return {"fileUri": await self.upload_file(data, image.mime_type, name), "mimeType": image.mime_type}
        return {"bytesBase64Encoded": encode_base64(data), "mimeType": image.mime_type}

    async def _poll_operation(self, name: str, headers: dict[str, str]) -> dict:
        """Poll a long-running operation until done or the attempt cap is hit."""
        url = name if name.startswith("http") else f"{self.base_url}/{name}"
        for attempt in range(self.max_poll_attempts):
            data = await self._get_json(url, headers)
            if data.get("done"):
                error = data.get("error")
                if error:
                    message = error.get("message") if isinstance(error, dict) else str(error)
                    raise OperationFailedError(message or "operation failed", operation_id=name)
                return data
            logger.debug("Operation %s pending (poll %d/%d)", name, attempt + 1, self.max_poll_attempts)
            await asyncio.sleep(self.poll_interval)

        raise OperationTimeoutError(
            f"operation {name} not done after {self.max_poll_attempts} polls", operation_id=name
        )

    @staticmethod
    def _video_uris(response: dict) -> list[str]:
        samples = (response.get("generateVideoResponse") or {}).get("generatedSamples") or []
        uris = [(s.get("video") or {}).get("uri") for s in samples]
        if not any(uris):
            uris = [v.get("uri") for v in response.get("generatedVideos") or []]
        if not any(uris):
            uris = [v.get("uri") for v in response.get("videos") or []]
        return [u for u in uris if u]


# ---------------------------------------------------------------------------
# Adapter registry
# ---------------------------------------------------------------------------

ADAPTER_REGISTRY: dict[ProviderKind, type[BaseProviderAdapter]] = {
    ProviderKind.OPENAI_COMPAT: OpenAICompatAdapter,
    ProviderKind.ANTHROPIC: AnthropicAdapter,
    ProviderKind.GEMINI: GeminiAdapter,
}


def get_adapter(config: ProviderConfig, **kwargs) -> BaseProviderAdapter:
    """Factory: get the appropriate adapter for a provider config."""
    cls = ADAPTER_REGISTRY.get(config.kind)
    if cls is None:
        raise ValueError(f"No adapter registered for provider kind: {config.kind}")
    return cls(config, **kwargs)
