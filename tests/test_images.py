from __future__ import annotations

import asyncio
import base64

import httpx
import pytest

from fusion_api.app.errors import InputResolutionError
from fusion_api.app.images import InlineImage, decode_data_url, resolve_image_ref


def _resolve(image_ref: str, transport: httpx.MockTransport | None = None) -> InlineImage:
    async def _run() -> InlineImage:
        mock = transport or httpx.MockTransport(lambda request: httpx.Response(500))
        async with httpx.AsyncClient(transport=mock) as client:
            return await resolve_image_ref(image_ref, client=client)

    return asyncio.run(_run())


def test_data_url_is_decoded_without_io() -> None:
    payload = base64.b64encode(b"pixels").decode("ascii")

    image = decode_data_url(f"data:image/webp;base64,{payload}")

    assert image.mime_type == "image/webp"
    assert image.data == b"pixels"
    assert image.to_base64() == payload


@pytest.mark.parametrize(
    "image_ref",
    ["data:image/png,notbase64", "data:;base64,AAAA", "data:image/png;base64,@@@"],
)
def test_malformed_data_url(image_ref: str) -> None:
    with pytest.raises(InputResolutionError) as excinfo:
        decode_data_url(image_ref)
    assert excinfo.value.code == "IMAGE_REF_ERROR"
    assert excinfo.value.details["reason"] == "invalid_data_url"


def test_http_download_uses_content_type_without_parameters() -> None:
    transport = httpx.MockTransport(
        lambda request: httpx.Response(
            200, content=b"jpeg-bytes", headers={"content-type": "image/jpeg; charset=binary"}
        )
    )

    image = _resolve("https://images.test/a.jpg", transport)

    assert image.mime_type == "image/jpeg"
    assert image.data == b"jpeg-bytes"


def test_http_download_defaults_to_png() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, content=b"raw"))

    image = _resolve("http://images.test/raw", transport)

    assert image.mime_type == "image/png"


def test_http_download_failure_status() -> None:
    with pytest.raises(InputResolutionError) as excinfo:
        _resolve("https://images.test/missing.png")
    assert excinfo.value.details["reason"] == "download_failed"
    assert excinfo.value.details["status"] == 500


def test_http_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(InputResolutionError) as excinfo:
        _resolve("https://images.test/down.png", httpx.MockTransport(handler))
    assert excinfo.value.details["reason"] == "download_failed"


@pytest.mark.parametrize("image_ref", ["ftp://host/x.png", "/tmp/local.png", "s3://bucket/key"])
def test_unsupported_scheme(image_ref: str) -> None:
    with pytest.raises(InputResolutionError) as excinfo:
        _resolve(image_ref)
    assert excinfo.value.details["reason"] == "unsupported_scheme"


def test_minimal_data_url_resolves_to_png() -> None:
    image = _resolve("data:image/png;base64,AAAA")

    assert image.mime_type == "image/png"
    assert image.data == b"\x00\x00\x00"
