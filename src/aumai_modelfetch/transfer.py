"""Resumable, cancellable blob transfers over HTTP."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import httpx

from .cancellation import CancellationToken
from .config import TransferSettings
from .errors import (
    BlobNotFoundError,
    ModelFetchError,
    ModelNotFoundError,
    NetworkError,
    ResolveError,
    SizeMismatchError,
    TransferCancelled,
    TransferError,
    UnauthorizedError,
)
from .models import Layer

__all__ = [
    "ProgressCallback",
    "ResumableTransfer",
    "check_response",
    "backoff_delay",
    "with_retries",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")
ProgressCallback = Callable[[int], None]


def check_response(
    response: httpx.Response,
    what: str,
    not_found: type[ModelFetchError] = ModelNotFoundError,
    other: type[ModelFetchError] = ResolveError,
) -> None:
    """Map an unsuccessful HTTP status onto the error taxonomy."""
    status = response.status_code
    if response.is_success:
        return
    url = str(response.request.url)
    if status == 404:
        raise not_found(f"{what} not found ({url})")
    if status in (401, 403):
        raise UnauthorizedError(f"Access to {what} denied with HTTP {status} ({url})")
    if status == 429 or status >= 500:
        raise NetworkError(f"HTTP {status} while fetching {what}", url=url)
    raise other(f"HTTP {status} while fetching {what} ({url})")


def backoff_delay(settings: TransferSettings, attempt: int) -> float:
    """Delay before retry number *attempt* (1-based)."""
    return min(settings.backoff_base * (2 ** (attempt - 1)), settings.backoff_max)


async def with_retries(
    operation: Callable[[], Awaitable[T]],
    settings: TransferSettings,
    cancel: CancellationToken,
    what: str,
) -> T:
    """
    Run *operation*, retrying retryable errors with exponential backoff.

    Transport failures count as ``NetworkError``; any error that is not
    ``retryable`` propagates immediately.  Waiting between attempts
    stops early on cancellation.
    """
    attempt = 1
    while True:
        cancel.raise_if_cancelled()
        try:
            return await operation()
        except httpx.TransportError as exc:
            error = NetworkError(f"{type(exc).__name__}: {exc}")
            error.__cause__ = exc
        except ModelFetchError as exc:
            if not exc.retryable:
                raise
            error = exc
        if attempt >= settings.max_retries:
            logger.error("%s: giving up after %d attempt(s): %s", what, attempt, error)
            raise error
        delay = backoff_delay(settings, attempt)
        logger.warning(
            "%s: attempt %d/%d failed: %s; retrying in %.1fs",
            what,
            attempt,
            settings.max_retries,
            error,
            delay,
        )
        if await cancel.sleep(delay):
            raise TransferCancelled(cancel.reason or "cancelled")
        attempt += 1


class ResumableTransfer:
    """
    Streams one blob into its partial file, resuming from whatever is there.

    The partial file only ever grows by bytes received in order, so its
    length is always a valid resume offset; whether those bytes are right
    is only known once the whole blob has been verified.
    """

    def __init__(self, client: httpx.AsyncClient, settings: TransferSettings) -> None:
        self.client = client
        self.settings = settings

    async def fetch(
        self,
        url: str,
        layer: Layer,
        partial_path: Path,
        cancel: CancellationToken,
        on_progress: ProgressCallback | None = None,
    ) -> Path:
        """
        Download *layer* from *url* into *partial_path*.

        Returns *partial_path* once it holds exactly ``layer.size`` bytes.
        Raises ``TransferCancelled`` (file left as-is), ``SizeMismatchError``,
        ``BlobNotFoundError``, ``UnauthorizedError`` or, after the retry
        budget is spent, ``NetworkError``.
        """
        partial_path.parent.mkdir(parents=True, exist_ok=True)

        async def attempt() -> None:
            await self._attempt(url, layer, partial_path, cancel, on_progress)

        await with_retries(attempt, self.settings, cancel, f"blob {layer.short_digest}")

        final_size = partial_path.stat().st_size
        if final_size != layer.size:
            raise SizeMismatchError(layer.digest, layer.size, final_size)
        return partial_path

    async def _attempt(
        self,
        url: str,
        layer: Layer,
        partial_path: Path,
        cancel: CancellationToken,
        on_progress: ProgressCallback | None,
    ) -> None:
        cancel.raise_if_cancelled()
        offset = partial_path.stat().st_size if partial_path.exists() else 0
        if offset > layer.size:
            logger.warning(
                "Partial file for %s is larger than the blob, starting over", layer.digest
            )
            partial_path.unlink()
            offset = 0
        if offset == layer.size and partial_path.exists():
            logger.debug("Partial file for %s is already complete", layer.digest)
            if on_progress:
                on_progress(offset)
            return

        headers = {"Accept-Encoding": "identity"}
        if offset:
            headers["Range"] = f"bytes={offset}-"
            logger.info("Resuming %s from byte %d", layer.short_digest, offset)
        else:
            logger.debug("Requesting %s from %s", layer.digest, url)

        try:
            async with self.client.stream("GET", url, headers=headers) as resp:
                if resp.status_code == 416:
                    # The server does not accept our offset; the partial file is suspect.
                    partial_path.unlink(missing_ok=True)
                    raise NetworkError(f"HTTP 416 for {layer.digest} at offset {offset}", url=url)
                check_response(
                    resp, f"blob {layer.digest}", not_found=BlobNotFoundError, other=TransferError
                )
                mode = "ab"
                if offset and resp.status_code != 206:
                    logger.warning(
                        "Server ignored the range request for %s, restarting from zero",
                        layer.short_digest,
                    )
                    offset = 0
                    mode = "wb"

                content_length = resp.headers.get("Content-Length")
                if content_length is not None and "Content-Encoding" not in resp.headers:
                    if int(content_length) != layer.size - offset:
                        raise SizeMismatchError(
                            layer.digest, layer.size, offset + int(content_length)
                        )

                done = offset
                if on_progress:
                    on_progress(done)
                with open(partial_path, mode) as fh:
                    async for chunk in resp.aiter_bytes(self.settings.chunk_size):
                        fh.write(chunk)
                        done += len(chunk)
                        if on_progress:
                            on_progress(done)
                        if done > layer.size:
                            raise SizeMismatchError(layer.digest, layer.size, done)
                        if cancel.cancelled:
                            fh.flush()
                            logger.info(
                                "Transfer of %s stopped at byte %d", layer.short_digest, done
                            )
                            raise TransferCancelled(cancel.reason or "cancelled")
                    fh.flush()
                    await asyncio.to_thread(os.fsync, fh.fileno())
                logger.debug(
                    "Received %d byte(s) of %s", done - offset, layer.short_digest
                )
        except httpx.TransportError as exc:
            raise NetworkError(
                f"Network error while downloading {layer.digest}: {exc}", url=url
            ) from exc
