"""Core types and DTOs for the gateway.

Requests and responses are vendor-neutral; adapters translate them to and
from each wire dialect.
"""

from __future__ import annotations

import base64
import mimetypes
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Union

from council_gateway.gateway.errors import ConfigurationError


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ProviderKind(str, Enum):
    """Wire dialects the dispatcher speaks."""

    OPENAI_COMPAT = "openai_compat"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"


class MediaType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


# ---------------------------------------------------------------------------
# Message content
# ---------------------------------------------------------------------------


@dataclass
class TextPart:
    text: str


@dataclass
class ImagePart:
    """Image reference: http(s)/gs URL or a data URL."""

    url: str
    detail: str | None = None  # low / medium / high / ultra_high


@dataclass
class FilePart:
    """Inline file: data URL or remote URI, with optional metadata."""

    data: str
    mime_type: str | None = None
    filename: str | None = None


@dataclass
class AudioPart:
    data: str  # base64 payload
    format: str = "wav"


@dataclass
class PassthroughPart:
    """A vendor part shape we do not model. Sent as-is."""

    value: dict[str, Any]


ContentPart = Union[TextPart, ImagePart, FilePart, AudioPart, PassthroughPart]


def _part_mime(part: ContentPart) -> str | None:
    """MIME type of a media part: declared, from the data URL header, or guessed from the URI."""
    if isinstance(part, ImagePart):
        return "image/*"
    if not isinstance(part, FilePart):
        return None
    if part.mime_type:
        return part.mime_type.lower()
    if part.data.startswith("data:"):
        header = part.data[len("data:") :].split(",", 1)[0]
        return header.split(";", 1)[0].lower() or None
    mime, _ = mimetypes.guess_type(part.data.split("?", 1)[0])
    return mime


@dataclass
class ChatMessage:
    role: str  # system / user / assistant (tool roles pass through on OpenAI)
    content: str | list[ContentPart]

    @classmethod
    def system(cls, text: str) -> ChatMessage:
        return cls(role="system", content=text)

    @classmethod
    def user(cls, content: str | list[ContentPart]) -> ChatMessage:
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, text: str) -> ChatMessage:
        return cls(role="assistant", content=text)

    @property
    def parts(self) -> list[ContentPart]:
        if isinstance(self.content, str):
            return [TextPart(self.content)]
        return list(self.content)

    def is_text_only(self) -> bool:
        return all(isinstance(p, TextPart) for p in self.parts)

    def text(self) -> str:
        """Concatenate all text parts, ignoring media."""
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


@dataclass
class ChatRequest:
    """Vendor-neutral chat request.

    `model` is the bare model id the vendor expects (the router strips the
    provider prefix from the canonical spec before dispatch).
    """

    model: str
    messages: list[ChatMessage] = field(default_factory=list)
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    stop: list[str] | None = None
    seed: int | None = None
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    user: str | None = None
    response_format: dict[str, Any] | None = None
    extra_headers: dict[str, str] = field(default_factory=dict)
    extra_body: dict[str, Any] = field(default_factory=dict)

    def media_types(self) -> set[str]:
        """Top-level MIME types ("image", "video", ...) of every media part."""
        found: set[str] = set()
        for message in self.messages:
            for part in message.parts:
                mime = _part_mime(part)
                if mime:
                    found.add(mime.split("/", 1)[0])
        return found

    def has_images(self) -> bool:
        return "image" in self.media_types()

    def has_video(self) -> bool:
        return "video" in self.media_types()

    def prompt_chars(self) -> int:
        return sum(len(m.text()) for m in self.messages)


@dataclass
class Usage:
    """Token counts and cost. Every field is optional; None means unreported."""

    input_tokens: int | None = None
    output_tokens: int | None = None
    reasoning_tokens: int | None = None
    total_tokens: int | None = None
    cost_usd: float | None = None

    def to_dict(self) -> dict:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "reasoning_tokens": self.reasoning_tokens,
            "total_tokens": self.total_tokens,
            "cost_usd": self.cost_usd,
        }


@dataclass
class ChatResponse:
    content: str = ""
    usage: Usage = field(default_factory=Usage)
    response_id: str | None = None
    header_cost: float | None = None  # e.g. x-litellm-response-cost
    raw: Any | None = None

    def to_dict(self) -> dict:
        return {
            "content": self.content,
            "usage": self.usage.to_dict(),
            "response_id": self.response_id,
            "header_cost": self.header_cost,
        }


@dataclass
class StreamEvent:
    """One content delta from a streaming call."""

    delta: str
    raw: Any | None = None


# ---------------------------------------------------------------------------
# Media input
# ---------------------------------------------------------------------------


@dataclass
class MediaInput:
    """A typed, MIME-detected media reference.

    Exactly one of `path`, `url` or `data` is set.
    """

    mime_type: str
    path: Path | None = None
    url: str | None = None
    data: bytes | None = None

    @classmethod
    def from_path(cls, path: str | Path) -> MediaInput:
        path = Path(path)
        mime, _ = mimetypes.guess_type(path.name)
        return cls(mime_type=mime or "application/octet-stream", path=path)

    @classmethod
    def from_url(cls, url: str, mime_type: str | None = None) -> MediaInput:
        if mime_type is None:
            guessed, _ = mimetypes.guess_type(url.split("?", 1)[0])
            mime_type = guessed or "application/octet-stream"
        return cls(mime_type=mime_type, url=url)

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: str) -> MediaInput:
        return cls(mime_type=mime_type, data=data)

    @property
    def media_type(self) -> MediaType | None:
        if self.mime_type.startswith("image/"):
            return MediaType.IMAGE
        if self.mime_type.startswith("video/"):
            return MediaType.VIDEO
        return None

    @property
    def size_bytes(self) -> int | None:
        if self.data is not None:
            return len(self.data)
        if self.path is not None:
            return self.path.stat().st_size
        return None

    def read_bytes(self) -> bytes:
        if self.data is not None:
            return self.data
        if self.path is not None:
            return self.path.read_bytes()
        raise ConfigurationError(f"remote media has no local bytes: {self.url}")

    def as_data_url(self) -> str:
        if self.url is not None:
            return self.url
        encoded = base64.b64encode(self.read_bytes()).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"

    def as_image_part(self, detail: str | None = None) -> ImagePart:
        return ImagePart(url=self.as_data_url(), detail=detail)


# ---------------------------------------------------------------------------
# Embeddings / images / video
# ---------------------------------------------------------------------------


@dataclass
class EmbeddingRequest:
    model: str
    inputs: list[str]
    extra_headers: dict[str, str] = field(default_factory=dict)


@dataclass
class EmbeddingResponse:
    vectors: list[list[float]] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    raw: Any | None = None


@dataclass
class ImageRequest:
    model: str
    prompt: str
    n: int | None = None
    size: str | None = None
    quality: str | None = None
    background: str | None = None
    extra_headers: dict[str, str] = field(default_factory=dict)


@dataclass
class GeneratedImage:
    b64_json: str | None = None
    url: str | None = None
    revised_prompt: str | None = None
    mime_type: str = "image/png"


@dataclass
class ImageResponse:
    images: list[GeneratedImage] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    raw: Any | None = None


@dataclass
class VideoRequest:
    model: str
    prompt: str
    seconds: int | None = None
    size: str | None = None  # OpenAI "1280x720"; Gemini resolution "720p"
    aspect_ratio: str | None = None
    negative_prompt: str | None = None
    image: MediaInput | None = None  # optional reference frame
    extra_headers: dict[str, str] = field(default_factory=dict)


@dataclass
class GeneratedVideo:
    url: str
    mime_type: str = "video/mp4"


@dataclass
class VideoResponse:
    videos: list[GeneratedVideo] = field(default_factory=list)
    operation_id: str | None = None
    usage: Usage = field(default_factory=Usage)
    raw: Any | None = None


# ---------------------------------------------------------------------------
# Provider config
# ---------------------------------------------------------------------------


@dataclass
class ProviderConfig:
    """Resolved, per-call provider settings. Opaque to everything but adapters."""

    name: str
    kind: ProviderKind
    base_url: str
    api_key: str | None = None
    extra_headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderDefinition:
    """Static defaults for a known provider."""

    name: str
    kind: ProviderKind
    base_url: str
    api_key_env: str | None = None
    no_auth: bool = False


DEFAULT_PROVIDER_CONFIGS: dict[str, ProviderDefinition] = {
    "openai": ProviderDefinition(
        name="openai",
        kind=ProviderKind.OPENAI_COMPAT,
        base_url="https://api.openai.com/v1",
        api_key_env="OPENAI_API_KEY",
    ),
    "openrouter": ProviderDefinition(
        name="openrouter",
        kind=ProviderKind.OPENAI_COMPAT,
        base_url="https://openrouter.ai/api/v1",
        api_key_env="OPENROUTER_API_KEY",
    ),
    "xai": ProviderDefinition(
        name="xai",
        kind=ProviderKind.OPENAI_COMPAT,
        base_url="https://api.x.ai/v1",
        api_key_env="XAI_API_KEY",
    ),
    "litellm": ProviderDefinition(
        name="litellm",
        kind=ProviderKind.OPENAI_COMPAT,
        base_url="http://localhost:4000",
        api_key_env="LITELLM_API_KEY",
    ),
    "anthropic": ProviderDefinition(
        name="anthropic",
        kind=ProviderKind.ANTHROPIC,
        base_url="https://api.anthropic.com",
        api_key_env="ANTHROPIC_API_KEY",
    ),
    "gemini": ProviderDefinition(
        name="gemini",
        kind=ProviderKind.GEMINI,
        base_url="https://generativelanguage.googleapis.com/v1beta",
        api_key_env="GEMINI_API_KEY",
    ),
}
