"""Tests for media helpers, message types and response normalization."""

from __future__ import annotations

import base64

import pytest

from council_gateway.gateway.errors import ConfigurationError
from council_gateway.gateway.media import is_remote_uri, needs_upload, parse_data_url
from council_gateway.gateway.normalizer import add_usage, normalize_response
from council_gateway.gateway.types import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    FilePart,
    ImagePart,
    MediaInput,
    MediaType,
    TextPart,
    Usage,
)


class TestDataUrls:
    def test_parse(self):
        parsed = parse_data_url("data:image/png;base64,aGVsbG8=")
        assert parsed.mime_type == "image/png"
        assert parsed.decode() == b"hello"

    def test_non_data_url(self):
        assert parse_data_url("https://img.test/a.png") is None

    def test_non_base64_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_data_url("data:text/plain,hello")

    def test_invalid_payload(self):
        with pytest.raises(ConfigurationError):
            parse_data_url("data:image/png;base64,@@@").decode()

    def test_remote_uri(self):
        assert is_remote_uri("gs://bucket/a.mp4")
        assert is_remote_uri("https://x.test")
        assert not is_remote_uri("data:image/png;base64,AA==")

    def test_upload_threshold_is_inclusive(self):
        assert needs_upload(100, limit=100)
        assert not needs_upload(99, limit=100)
        assert not needs_upload(None, limit=100)


class TestMediaInput:
    def test_from_path(self, tmp_path):
        path = tmp_path / "clip.mp4"
        path.write_bytes(b"\x00" * 10)
        media = MediaInput.from_path(path)
        assert media.mime_type == "video/mp4"
        assert media.media_type == MediaType.VIDEO
        assert media.size_bytes == 10

    def test_as_image_part(self):
        part = MediaInput.from_bytes(b"png", "image/png").as_image_part("low")
        assert part == ImagePart(url="data:image/png;base64," + base64.b64encode(b"png").decode(), detail="low")

    def test_url_passthrough(self):
        media = MediaInput.from_url("https://cdn.test/cat.jpg?sig=1")
        assert media.mime_type == "image/jpeg"
        assert media.as_data_url() == "https://cdn.test/cat.jpg?sig=1"
        assert media.size_bytes is None


class TestChatMessage:
    def test_text_only(self):
        message = ChatMessage.user([TextPart("a"), TextPart("b")])
        assert message.is_text_only()
        assert message.text() == "ab"

    def test_media_not_text_only(self):
        message = ChatMessage.user([TextPart("look"), ImagePart("https://x.test/a.png")])
        assert not message.is_text_only()
        assert message.text() == "look"


class TestRequestMedia:
    def _request(self, *parts) -> ChatRequest:
        return ChatRequest(model="m", messages=[ChatMessage.user([TextPart("look"), *parts])])

    def test_text_only_request(self):
        request = ChatRequest(model="m", messages=[ChatMessage.user("hi")])
        assert request.media_types() == set()
        assert not request.has_images()
        assert not request.has_video()

    def test_image_part(self):
        assert self._request(ImagePart("https://x.test/a")).has_images()

    def test_file_part_declared_mime(self):
        request = self._request(FilePart("gs://bucket/blob", mime_type="Video/MP4"))
        assert request.has_video()
        assert not request.has_images()

    def test_file_part_data_url_header(self):
        request = self._request(FilePart("data:image/jpeg;base64,/9j/4AAQ"))
        assert request.has_images()

    def test_file_part_guessed_from_uri(self):
        assert self._request(FilePart("https://cdn.test/clip.mp4?sig=abc")).has_video()
        assert self._request(FilePart("https://cdn.test/page.png")).has_images()

    def test_documents_are_neither(self):
        request = self._request(FilePart("data:application/pdf;base64,JVBERi0="), FilePart("https://cdn.test/blob"))
        assert request.media_types() == {"application"}
        assert not request.has_images()
        assert not request.has_video()

    def test_remote_media_has_no_local_bytes(self):
        with pytest.raises(ConfigurationError, match="no local bytes"):
            MediaInput.from_url("https://cdn.test/frame.png").read_bytes()


class TestNormalizer:
    def test_fills_total_and_header_cost(self):
        response = normalize_response(
            ChatResponse(content="x", usage=Usage(input_tokens=3, output_tokens=4), header_cost=0.5)
        )
        assert response.usage.total_tokens == 7
        assert response.usage.cost_usd == 0.5

    def test_body_cost_wins_over_header(self):
        response = normalize_response(ChatResponse(usage=Usage(cost_usd=0.1), header_cost=0.5))
        assert response.usage.cost_usd == 0.1

    def test_empty_usage_stays_empty(self):
        response = normalize_response(ChatResponse())
        assert response.usage == Usage()

    def test_add_usage(self):
        total = Usage()
        add_usage(total, Usage(input_tokens=1, cost_usd=0.1))
        add_usage(total, Usage(input_tokens=2, output_tokens=5))
        assert total.input_tokens == 3
        assert total.output_tokens == 5
        assert total.cost_usd == pytest.approx(0.1)
        assert total.reasoning_tokens is None
