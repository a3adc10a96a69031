from __future__ import annotations

import base64
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from fusion_api.app.executor import DualTrackExecutor
from fusion_api.app.settings import Settings
from fusion_api.main import create_app

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00\x00\x00\rIHDR"
PNG_B64 = base64.b64encode(PNG_BYTES).decode("ascii")
PNG_DATA_URL = f"data:image/png;base64,{PNG_B64}"
JPEG_DATA_URL = "data:image/jpeg;base64," + base64.b64encode(b"\xff\xd8\xff\xe0jpeg").decode("ascii")
TEST_MODEL = "gemini-test-model"
TEST_BASE_URL = "https://gemini.test/v1beta"


def make_contract_payload(**overrides: Any) -> dict[str, Any]:
    """Reference at 0.9 plus STYLE 0.75 and COMPONENT 0.65 sources."""
    payload: dict[str, Any] = {
        "taskId": "t1",
        "prompt": "Use [Reference] pose with [Source 0] texture and [Source 1] accessories",
        "negativePrompt": "blurry, low quality",
        "reference": {"imageRef": PNG_DATA_URL, "weight": 0.9},
        "sources": [
            {"imageRef": PNG_DATA_URL, "featureType": "STYLE", "weight": 0.75},
            {"imageRef": JPEG_DATA_URL, "featureType": "COMPONENT", "weight": 0.65},
        ],
    }
    payload.update(overrides)
    return payload


def gemini_image_response(
    *,
    data: bytes = PNG_BYTES,
    mime_type: str = "image/png",
    snake_case: bool = False,
) -> dict[str, Any]:
    encoded = base64.b64encode(data).decode("ascii")
    if snake_case:
        part = {"inline_data": {"mime_type": mime_type, "data": encoded}}
    else:
        part = {"inlineData": {"mimeType": mime_type, "data": encoded}}
    return {"candidates": [{"content": {"parts": [{"text": "Here you go."}, part]}}]}


class FakeGemini:
    """MockTransport handler standing in for the provider and image hosts."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.images: dict[str, Callable[[], httpx.Response]] = {}
        self.respond: Callable[[httpx.Request], httpx.Response] = lambda _request: httpx.Response(
            200, json=gemini_image_response()
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith(":generateContent"):
            return self.respond(request)
        factory = self.images.get(str(request.url))
        if factory is None:
            return httpx.Response(404, text="missing")
        return factory()

    @property
    def provider_requests(self) -> list[httpx.Request]:
        return [item for item in self.requests if item.url.path.endswith(":generateContent")]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "gemini_api_key": "test-key",
        "gemini_model": TEST_MODEL,
        "gemini_api_base_url": TEST_BASE_URL,
        "output_dir": tmp_path / "outputs",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def fake_gemini() -> FakeGemini:
    return FakeGemini()


@pytest.fixture
def executor(settings: Settings, fake_gemini: FakeGemini) -> DualTrackExecutor:
    return DualTrackExecutor(
        settings=settings,
        http_client=httpx.AsyncClient(transport=fake_gemini.transport()),
    )


@pytest.fixture
def client(settings: Settings, executor: DualTrackExecutor) -> Iterator[TestClient]:
    app = create_app(settings_override=settings, executor=executor)
    with TestClient(app) as test_client:
        yield test_client


PayloadFactory = Callable[..., dict[str, Any]]


@pytest.fixture
def make_payload() -> PayloadFactory:
    return make_contract_payload


@pytest.fixture
def png_bytes() -> bytes:
    return PNG_BYTES


@pytest.fixture
def settings_factory(tmp_path: Path) -> Callable[..., Settings]:
    def _factory(**overrides: Any) -> Settings:
        return make_settings(tmp_path, **overrides)

    return _factory


@pytest.fixture
def gemini_response() -> Callable[..., dict[str, Any]]:
    return gemini_image_response
