"""Shared test fixtures for aumai-modelfetch."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import httpx
import pytest

from aumai_modelfetch.config import AppSettings, OllamaLibrary, OllamaServer, TransferSettings
from aumai_modelfetch.digest import digest_bytes

REGISTRY_URL = "https://registry.test/v2/library/"
LIBRARY_URL = "https://ollama.test/library/"
SERVER_URL = "http://ollama-server.test:11434/"

CONFIG_MEDIA_TYPE = "application/vnd.docker.container.image.v1+json"
MODEL_MEDIA_TYPE = "application/vnd.ollama.image.model"
PARAMS_MEDIA_TYPE = "application/vnd.ollama.image.params"

CONFIG_BYTES = json.dumps({"model_format": "gguf", "model_family": "llama"}).encode()
MODEL_BYTES = bytes(range(256)) * 16
PARAMS_BYTES = b'{"stop": ["</s>"]}' * 200


# ---------------------------------------------------------------------------
# Fake upstream
# ---------------------------------------------------------------------------


async def _truncated(body: bytes, cut: int) -> AsyncIterator[bytes]:
    yield body[:cut]
    raise httpx.ReadError("connection reset by peer")


def manifest_json(config: bytes, layers: list[tuple[str, bytes]]) -> str:
    return json.dumps(
        {
            "schemaVersion": 2,
            "mediaType": "application/vnd.docker.distribution.manifest.v2+json",
            "config": {
                "mediaType": CONFIG_MEDIA_TYPE,
                "digest": digest_bytes(config),
                "size": len(config),
            },
            "layers": [
                {"mediaType": media_type, "digest": digest_bytes(data), "size": len(data)}
                for media_type, data in layers
            ],
        }
    )


class FakeUpstream:
    """
    In-memory registry, library site, hub API and Ollama server.

    Blobs are served for any ``.../blobs/<digest>`` path and honour
    ``Range`` unless ``ranges`` is off.  ``drop_after`` cuts the next
    response for a digest after that many bytes; ``corrupt`` serves
    flipped bytes for the given number of requests.
    """

    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}
        self.manifests: dict[str, str] = {}
        self.routes: dict[tuple[str, str], Callable[[httpx.Request], httpx.Response]] = {}
        self.drop_after: dict[str, int] = {}
        self.corrupt: dict[str, int] = {}
        self.ranges = True
        self.server_models: list[str] = []
        self.server_status = 200
        self.requests: list[httpx.Request] = []

    def publish(self, repository_path: str, tag: str, config: bytes, layers: list[tuple[str, bytes]]) -> str:
        raw = manifest_json(config, layers)
        self.manifests[f"{repository_path}/manifests/{tag}"] = raw
        for data in [config] + [data for _, data in layers]:
            self.blobs[digest_bytes(data)] = data
        return raw

    def route(self, host: str, path: str, response: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes[(host, path)] = response

    def blob_requests(self, digest: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(f"/blobs/{digest}")]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if "/blobs/" in path:
            return self._blob(request, path.rsplit("/", 1)[-1])
        if "/manifests/" in path:
            body = self.manifests.get(path)
            if body is None:
                return httpx.Response(404, json={"errors": [{"code": "MANIFEST_UNKNOWN"}]})
            return httpx.Response(200, text=body)
        if path == "/api/tags":
            if self.server_status != 200:
                return httpx.Response(self.server_status)
            return httpx.Response(200, json={"models": [{"name": n} for n in self.server_models]})
        route = self.routes.get((request.url.host, path))
        if route is None:
            return httpx.Response(404)
        return route(request)

    def _blob(self, request: httpx.Request, digest: str) -> httpx.Response:
        data = self.blobs.get(digest)
        if data is None:
            return httpx.Response(404, json={"errors": [{"code": "BLOB_UNKNOWN"}]})
        if self.corrupt.get(digest):
            self.corrupt[digest] -= 1
            data = bytes(b ^ 0xFF for b in data)
        start = 0
        range_header = request.headers.get("Range")
        if range_header and self.ranges:
            start = int(range_header.removeprefix("bytes=").rstrip("-"))
            if start >= len(data):
                return httpx.Response(416)
        headers = {}
        if start:
            headers["Content-Range"] = f"bytes {start}-{len(data) - 1}/{len(data)}"
        status = 206 if start else 200
        body = data[start:]
        cut = self.drop_after.pop(digest, None)
        if cut is not None:
            return httpx.Response(status, headers=headers, content=_truncated(body, cut))
        return httpx.Response(status, headers=headers, content=body)


# ---------------------------------------------------------------------------
# Settings fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def models_path(tmp_path: Path) -> Path:
    return tmp_path / "models"


@pytest.fixture()
def make_settings(models_path: Path) -> Callable[..., AppSettings]:
    """Factory for settings pointing at the fake upstream and a temp store."""

    def factory(
        *, server: dict[str, Any] | None = None, transfer: dict[str, Any] | None = None
    ) -> AppSettings:
        return AppSettings(
            ollama_server=OllamaServer(url=SERVER_URL, **(server or {})),
            ollama_library=OllamaLibrary(
                models_path=str(models_path),
                registry_base_url=REGISTRY_URL,
                library_base_url=LIBRARY_URL,
            ),
            transfer=TransferSettings(
                **{"max_retries": 3, "backoff_base": 0, "chunk_size": 1024, **(transfer or {})}
            ),
        )

    return factory


@pytest.fixture()
def settings(make_settings: Callable[..., AppSettings]) -> AppSettings:
    return make_settings()


# ---------------------------------------------------------------------------
# Upstream fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def upstream() -> FakeUpstream:
    """Registry serving ``tinyllama:latest`` (config plus two layers)."""
    fake = FakeUpstream()
    fake.publish(
        "/v2/library/tinyllama",
        "latest",
        CONFIG_BYTES,
        [(MODEL_MEDIA_TYPE, MODEL_BYTES), (PARAMS_MEDIA_TYPE, PARAMS_BYTES)],
    )
    fake.server_models = ["tinyllama:latest"]
    return fake


@pytest.fixture()
def transport(upstream: FakeUpstream) -> httpx.MockTransport:
    return httpx.MockTransport(upstream.handler)
