"""Tests for aumai_modelfetch.transfer."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path

import httpx
import pytest

from aumai_modelfetch.cancellation import CancellationToken
from aumai_modelfetch.config import AppSettings, TransferSettings, build_client
from aumai_modelfetch.digest import digest_bytes
from aumai_modelfetch.errors import (
    BlobNotFoundError,
    ModelFetchError,
    NetworkError,
    SizeMismatchError,
    TransferCancelled,
    UnauthorizedError,
)
from aumai_modelfetch.models import Layer
from aumai_modelfetch.transfer import ResumableTransfer, backoff_delay, check_response, with_retries

from conftest import MODEL_BYTES, REGISTRY_URL, FakeUpstream

LAYER = Layer(digest=digest_bytes(MODEL_BYTES), size=len(MODEL_BYTES))
URL = f"{REGISTRY_URL}tinyllama/blobs/{LAYER.digest}"


def _fetch(
    settings: AppSettings,
    handler,
    partial: Path,
    cancel: CancellationToken | None = None,
    on_progress=None,
    layer: Layer = LAYER,
) -> Path:
    async def go() -> Path:
        async with build_client(settings, transport=httpx.MockTransport(handler)) as client:
            transfer = ResumableTransfer(client, settings.transfer)
            return await transfer.fetch(
                URL, layer, partial, cancel or CancellationToken(), on_progress
            )

    return asyncio.run(go())


@pytest.fixture()
def partial(tmp_path: Path) -> Path:
    return tmp_path / "blobs" / (LAYER.blob_name + "-partial")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestBackoff:
    def test_exponential_and_capped(self) -> None:
        settings = TransferSettings(backoff_base=1.0, backoff_max=5.0)
        assert [backoff_delay(settings, n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]


class TestCheckResponse:
    def _response(self, status: int) -> httpx.Response:
        return httpx.Response(status, request=httpx.Request("GET", URL))

    def test_success_passes(self) -> None:
        check_response(self._response(200), "blob")

    def test_not_found_class_is_configurable(self) -> None:
        with pytest.raises(BlobNotFoundError):
            check_response(self._response(404), "blob", not_found=BlobNotFoundError)

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_errors(self, status: int) -> None:
        with pytest.raises(UnauthorizedError):
            check_response(self._response(status), "blob")

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_transient_errors_are_retryable(self, status: int) -> None:
        with pytest.raises(NetworkError) as info:
            check_response(self._response(status), "blob")
        assert info.value.retryable


class TestWithRetries:
    def test_retries_until_success(self) -> None:
        calls = []

        async def operation() -> str:
            calls.append(1)
            if len(calls) < 3:
                raise httpx.ConnectError("refused")
            return "ok"

        settings = TransferSettings(max_retries=5, backoff_base=0)
        result = asyncio.run(with_retries(operation, settings, CancellationToken(), "thing"))
        assert result == "ok"
        assert len(calls) == 3

    def test_gives_up_after_budget(self) -> None:
        calls = []

        async def operation() -> None:
            calls.append(1)
            raise NetworkError("HTTP 503")

        settings = TransferSettings(max_retries=2, backoff_base=0)
        with pytest.raises(NetworkError):
            asyncio.run(with_retries(operation, settings, CancellationToken(), "thing"))
        assert len(calls) == 2

    def test_permanent_errors_not_retried(self) -> None:
        calls = []

        async def operation() -> None:
            calls.append(1)
            raise UnauthorizedError("no")

        with pytest.raises(UnauthorizedError):
            asyncio.run(
                with_retries(operation, TransferSettings(backoff_base=0), CancellationToken(), "x")
            )
        assert len(calls) == 1

    def test_retryable_flag_decides(self) -> None:
        class Flaky(ModelFetchError):
            retryable = True

        calls = []

        async def operation() -> str:
            calls.append(1)
            if len(calls) == 1:
                raise Flaky("try again")
            return "ok"

        settings = TransferSettings(max_retries=2, backoff_base=0)
        assert asyncio.run(with_retries(operation, settings, CancellationToken(), "x")) == "ok"
        assert len(calls) == 2

    def test_cancelled_before_first_attempt(self) -> None:
        cancel = CancellationToken()
        cancel.cancel("stop")

        async def operation() -> None:
            raise AssertionError("should not run")

        with pytest.raises(TransferCancelled):
            asyncio.run(with_retries(operation, TransferSettings(), cancel, "x"))


# ---------------------------------------------------------------------------
# ResumableTransfer
# ---------------------------------------------------------------------------


class TestResumableTransfer:
    def test_full_download(self, settings: AppSettings, upstream: FakeUpstream, partial: Path) -> None:
        seen: list[int] = []
        _fetch(settings, upstream.handler, partial, on_progress=seen.append)
        assert partial.read_bytes() == MODEL_BYTES
        assert seen[-1] == len(MODEL_BYTES)
        request = upstream.blob_requests(LAYER.digest)[0]
        assert "Range" not in request.headers
        assert request.headers["Accept-Encoding"] == "identity"

    def test_resume_sends_range(self, settings: AppSettings, upstream: FakeUpstream, partial: Path) -> None:
        partial.parent.mkdir(parents=True)
        partial.write_bytes(MODEL_BYTES[:1000])
        _fetch(settings, upstream.handler, partial)
        assert partial.read_bytes() == MODEL_BYTES
        request = upstream.blob_requests(LAYER.digest)[0]
        assert request.headers["Range"] == "bytes=1000-"

    def test_server_ignoring_range_restarts(
        self, settings: AppSettings, upstream: FakeUpstream, partial: Path
    ) -> None:
        upstream.ranges = False
        partial.parent.mkdir(parents=True)
        partial.write_bytes(b"\x00" * 1000)
        _fetch(settings, upstream.handler, partial)
        assert partial.read_bytes() == MODEL_BYTES

    def test_complete_partial_needs_no_request(
        self, settings: AppSettings, upstream: FakeUpstream, partial: Path
    ) -> None:
        partial.parent.mkdir(parents=True)
        partial.write_bytes(MODEL_BYTES)
        _fetch(settings, upstream.handler, partial)
        assert upstream.requests == []

    def test_oversized_partial_is_discarded(
        self, settings: AppSettings, upstream: FakeUpstream, partial: Path
    ) -> None:
        partial.parent.mkdir(parents=True)
        partial.write_bytes(MODEL_BYTES + b"extra")
        _fetch(settings, upstream.handler, partial)
        assert partial.read_bytes() == MODEL_BYTES

    def test_dropped_connection_resumes(
        self, settings: AppSettings, upstream: FakeUpstream, partial: Path
    ) -> None:
        upstream.drop_after[LAYER.digest] = 2048
        _fetch(settings, upstream.handler, partial)
        assert partial.read_bytes() == MODEL_BYTES
        requests = upstream.blob_requests(LAYER.digest)
        assert len(requests) == 2
        assert requests[1].headers["Range"] == "bytes=2048-"

    def test_dropped_connection_without_retries_keeps_prefix(
        self, make_settings, upstream: FakeUpstream, partial: Path
    ) -> None:
        settings = make_settings(transfer={"max_retries": 1})
        upstream.drop_after[LAYER.digest] = 2048
        with pytest.raises(NetworkError):
            _fetch(settings, upstream.handler, partial)
        assert partial.read_bytes() == MODEL_BYTES[:2048]

    def test_size_declared_by_server_disagrees(
        self, settings: AppSettings, upstream: FakeUpstream, partial: Path
    ) -> None:
        layer = Layer(digest=LAYER.digest, size=LAYER.size + 10)
        with pytest.raises(SizeMismatchError):
            _fetch(settings, upstream.handler, partial, layer=layer)

    def test_too_many_bytes(self, settings: AppSettings, partial: Path) -> None:
        async def endless() -> AsyncIterator[bytes]:
            for _ in range(10):
                yield MODEL_BYTES

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=endless())

        with pytest.raises(SizeMismatchError):
            _fetch(settings, handler, partial)

    def test_missing_blob(self, settings: AppSettings, upstream: FakeUpstream, partial: Path) -> None:
        upstream.blobs.clear()
        with pytest.raises(BlobNotFoundError):
            _fetch(settings, upstream.handler, partial)

    def test_server_errors_are_retried(self, settings: AppSettings, partial: Path) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(500)
            return httpx.Response(200, content=MODEL_BYTES)

        _fetch(settings, handler, partial)
        assert partial.read_bytes() == MODEL_BYTES
        assert len(calls) == 2

    def test_cancellation_leaves_partial(
        self, settings: AppSettings, upstream: FakeUpstream, partial: Path
    ) -> None:
        cancel = CancellationToken()

        def on_progress(done: int) -> None:
            if done >= 1024:
                cancel.cancel("user")

        with pytest.raises(TransferCancelled):
            _fetch(settings, upstream.handler, partial, cancel=cancel, on_progress=on_progress)
        assert partial.read_bytes() == MODEL_BYTES[:1024]
