"""The acquisition session: resolve, fetch, verify and commit one model."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Protocol

import httpx

from .cancellation import CancellationToken, CleanupCoordinator
from .config import AppSettings, build_client
from .digest import verify
from .errors import IntegrityError, ModelFetchError, StoreError, TransferCancelled
from .models import (
    Layer,
    LayerStatus,
    Manifest,
    ModelIdentifier,
    SessionOutcome,
    SessionStatus,
    TransferState,
)
from .presence import PresenceChecker
from .resolvers import ManifestResolver, resolver_for
from .store import LocalStore
from .transfer import ResumableTransfer

__all__ = ["ProgressListener", "AcquisitionSession"]

logger = logging.getLogger(__name__)


class ProgressListener(Protocol):
    def on_layer_start(self, layer: Layer, resume_from: int) -> None: ...

    def on_progress(self, layer: Layer, bytes_done: int) -> None: ...

    def on_layer_state(self, layer: Layer, state: TransferState) -> None: ...


class _SilentListener:
    def on_layer_start(self, layer: Layer, resume_from: int) -> None:
        pass

    def on_progress(self, layer: Layer, bytes_done: int) -> None:
        pass

    def on_layer_state(self, layer: Layer, state: TransferState) -> None:
        pass


class AcquisitionSession:
    """
    Pulls one model into the local store.

    The session owns the per-blob state for the lifetime of one ``run``:
    every blob moves ``pending -> in_progress -> verifying -> committed``
    or ends ``failed``/``cancelled``.  The run succeeds only if every blob
    is committed; the first permanent failure stops the remaining
    transfers.
    """

    def __init__(
        self,
        settings: AppSettings,
        *,
        client: httpx.AsyncClient | None = None,
        cancel: CancellationToken | None = None,
        progress: ProgressListener | None = None,
        store: LocalStore | None = None,
        resolver: ManifestResolver | None = None,
    ) -> None:
        self.settings = settings
        self.cancel = cancel or CancellationToken()
        self.progress = progress or _SilentListener()
        self.store = store or LocalStore(settings.ollama_library.expanded_models_path)
        self._client = client
        self._resolver = resolver
        self.manifest: Manifest | None = None
        self.statuses: dict[str, LayerStatus] = {}

    def run_sync(self, identifier: ModelIdentifier) -> SessionOutcome:
        return asyncio.run(self.run(identifier))

    async def run(self, identifier: ModelIdentifier) -> SessionOutcome:
        """
        Acquire *identifier*.

        Resolution errors (malformed, not found, unauthorized, network after
        retries) are raised; everything after the manifest is known is
        reported through the returned ``SessionOutcome``.
        """
        client = self._client or build_client(self.settings)
        try:
            return await self._run(identifier, client)
        finally:
            if self._client is None:
                await client.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _set_state(self, status: LayerStatus, state: TransferState) -> None:
        status.transition(state)
        self.progress.on_layer_state(status.layer, state)

    def _on_bytes(self, status: LayerStatus, bytes_done: int) -> None:
        if bytes_done > status.bytes_done:
            status.bytes_fetched += bytes_done - status.bytes_done
        status.bytes_done = bytes_done
        self.progress.on_progress(status.layer, bytes_done)

    def _mark_present(self, status: LayerStatus) -> None:
        status.skipped = True
        status.bytes_done = status.layer.size
        self._set_state(status, TransferState.COMMITTED)
        logger.info("BLOB %s already present, skipping", status.layer.digest)

    async def _run(self, identifier: ModelIdentifier, client: httpx.AsyncClient) -> SessionOutcome:
        resolver = self._resolver or resolver_for(
            identifier.provider, self.settings, client, self.cancel
        )
        try:
            manifest = await resolver.resolve(identifier)
        except TransferCancelled:
            logger.warning("Download of %s cancelled before the manifest was resolved", identifier)
            return SessionOutcome(identifier=identifier, status=SessionStatus.CANCELLED)
        self.manifest = manifest
        blobs = manifest.blobs()
        logger.info(
            "Manifest for %s lists %d blob(s), %d bytes in total",
            identifier,
            len(blobs),
            manifest.total_size,
        )
        self.store.ensure_layout()
        self.statuses = {layer.digest: LayerStatus(layer=layer) for layer in blobs}
        coordinator = CleanupCoordinator(
            self.store, self.settings.ollama_server.remove_downloaded_on_error
        )

        abort = self.cancel.child()
        semaphore = asyncio.Semaphore(self.settings.transfer.max_concurrent_transfers)
        transfer = ResumableTransfer(client, self.settings.transfer)
        errors: list[ModelFetchError] = []

        async def worker(status: LayerStatus) -> None:
            async with semaphore:
                if abort.cancelled:
                    self._set_state(status, TransferState.CANCELLED)
                    return
                try:
                    await self._acquire(
                        status, identifier, resolver, transfer, coordinator, abort
                    )
                except TransferCancelled:
                    if not status.terminal:
                        self._set_state(status, TransferState.CANCELLED)
                except (ModelFetchError, OSError) as exc:
                    if isinstance(exc, OSError):
                        exc = StoreError(f"I/O error for {status.layer.digest}: {exc}")
                    status.error = exc
                    self._set_state(status, TransferState.FAILED)
                    if not errors:
                        logger.error("BLOB %s failed: %s", status.layer.digest, exc)
                    errors.append(exc)
                    abort.cancel(f"blob {status.layer.digest} failed")

        scheduled = []
        for status in self.statuses.values():
            if self.store.has(status.layer.digest, status.layer.size):
                self._mark_present(status)
            else:
                scheduled.append(status)
        await asyncio.gather(*(worker(status) for status in scheduled))

        outcome = SessionOutcome(
            identifier=identifier,
            status=SessionStatus.SUCCESS,
            layers=list(self.statuses.values()),
        )
        if self.cancel.cancelled or errors:
            if self.cancel.cancelled:
                outcome.status = SessionStatus.CANCELLED
                logger.warning("Download of %s cancelled: %s", identifier, self.cancel.reason)
            else:
                outcome.status = SessionStatus.FAILED
                outcome.error = errors[0]
            outcome.cleaned_up = coordinator.cleanup()
            return outcome

        try:
            outcome.manifest_path = self.store.write_manifest(
                identifier, resolver.manifest_host, manifest.raw
            )
        except StoreError as exc:
            logger.error("Failed to save manifest: %s", exc)
            outcome.status = SessionStatus.FAILED
            outcome.error = exc
            return outcome

        await self._check_presence(outcome, client, resolver.manifest_host)
        return outcome

    async def _acquire(
        self,
        status: LayerStatus,
        identifier: ModelIdentifier,
        resolver: ManifestResolver,
        transfer: ResumableTransfer,
        coordinator: CleanupCoordinator,
        abort: CancellationToken,
    ) -> None:
        layer = status.layer
        url = resolver.blob_url(identifier, layer.digest)
        async with self.store.lock(layer.digest, abort):
            # Another process may have committed it while we waited.
            if self.store.has(layer.digest, layer.size):
                self._mark_present(status)
                return
            partial = self.store.partial_path(layer.digest)
            try:
                await self._fetch_verified(status, url, partial, transfer, abort)
                await asyncio.to_thread(self.store.commit, partial, layer.digest)
            except (ModelFetchError, OSError):
                coordinator.discard(layer.digest)
                raise
            self._set_state(status, TransferState.COMMITTED)

    async def _fetch_verified(
        self,
        status: LayerStatus,
        url: str,
        partial: Path,
        transfer: ResumableTransfer,
        abort: CancellationToken,
    ) -> None:
        layer = status.layer
        retries_left = 1 if self.settings.transfer.retry_on_digest_mismatch else 0
        while True:
            status.resumed_from = self.store.partial_size(layer.digest)
            status.bytes_done = status.resumed_from
            if status.state is not TransferState.IN_PROGRESS:
                self._set_state(status, TransferState.IN_PROGRESS)
            self.progress.on_layer_start(layer, status.resumed_from)
            logger.info("Downloading %s BLOB %s", layer.media_type or "", layer.digest)
            try:
                await transfer.fetch(
                    url, layer, partial, abort, lambda n: self._on_bytes(status, n)
                )
                self._set_state(status, TransferState.VERIFYING)
                await asyncio.to_thread(verify, partial, layer.digest)
            except IntegrityError as exc:
                self.store.remove_partial(layer.digest)
                if retries_left <= 0:
                    raise
                retries_left -= 1
                logger.warning("%s; fetching %s again from the start", exc, layer.digest)
                continue
            logger.info("BLOB %s digest verified successfully", layer.digest)
            return

    async def _check_presence(
        self, outcome: SessionOutcome, client: httpx.AsyncClient, manifest_host: str
    ) -> None:
        server = self.settings.ollama_server
        if not server.check_model_presence:
            logger.debug("Model presence check is disabled via settings")
            return
        checker = PresenceChecker(client, server.url, server.api_key)
        try:
            present = await checker.confirm(outcome.identifier, manifest_host)
        except ModelFetchError as exc:
            outcome.status = SessionStatus.SUCCESS_WITH_WARNING
            outcome.warning = f"Could not verify the model with the Ollama server: {exc}"
            logger.warning(outcome.warning)
            return
        if present:
            logger.info("Model %s verified in Ollama server", outcome.identifier)
        else:
            outcome.status = SessionStatus.SUCCESS_WITH_WARNING
            outcome.warning = (
                f"Model {outcome.identifier} not found in the Ollama server after download"
            )
            logger.warning(outcome.warning)
