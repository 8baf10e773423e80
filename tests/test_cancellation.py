"""Tests for aumai_modelfetch.cancellation."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from pathlib import Path

import pytest

from aumai_modelfetch.cancellation import (
    CancellationToken,
    CleanupCoordinator,
    install_signal_handlers,
)
from aumai_modelfetch.digest import digest_bytes
from aumai_modelfetch.errors import TransferCancelled
from aumai_modelfetch.store import LocalStore


# ---------------------------------------------------------------------------
# CancellationToken
# ---------------------------------------------------------------------------


class TestCancellationToken:
    def test_starts_clear(self) -> None:
        token = CancellationToken()
        assert not token.cancelled
        assert token.reason is None
        token.raise_if_cancelled()

    def test_cancel_is_sticky_and_idempotent(self) -> None:
        token = CancellationToken()
        assert token.cancel("first") is True
        assert token.cancel("second") is False
        assert token.cancelled
        assert token.reason == "first"

    def test_raise_if_cancelled(self) -> None:
        token = CancellationToken()
        token.cancel("stop")
        with pytest.raises(TransferCancelled, match="stop"):
            token.raise_if_cancelled()

    def test_child_sees_parent(self) -> None:
        parent = CancellationToken()
        child = parent.child()
        parent.cancel("signal")
        assert child.cancelled
        assert child.reason == "signal"

    def test_child_does_not_cancel_parent(self) -> None:
        parent = CancellationToken()
        child = parent.child()
        child.cancel("blob failed")
        assert child.cancelled
        assert not parent.cancelled

    def test_sleep_wakes_early(self) -> None:
        token = CancellationToken()

        async def scenario() -> bool:
            asyncio.get_running_loop().call_later(0.05, token.cancel)
            return await token.sleep(10)

        started = time.monotonic()
        assert asyncio.run(scenario()) is True
        assert time.monotonic() - started < 2

    def test_sleep_runs_out(self) -> None:
        assert asyncio.run(CancellationToken().sleep(0.01)) is False


# ---------------------------------------------------------------------------
# Signal handlers
# ---------------------------------------------------------------------------


@pytest.mark.skipif(os.name != "posix", reason="needs POSIX signals")
class TestSignalHandlers:
    def test_sigterm_cancels_and_restore(self) -> None:
        token = CancellationToken()
        before = signal.getsignal(signal.SIGTERM)
        restore = install_signal_handlers(token)
        try:
            os.kill(os.getpid(), signal.SIGTERM)
            time.sleep(0.01)
            assert token.cancelled
            assert token.reason == "received SIGTERM"
        finally:
            restore()
        assert signal.getsignal(signal.SIGTERM) == before

    def test_second_sigint_interrupts(self) -> None:
        token = CancellationToken()
        restore = install_signal_handlers(token)
        try:
            os.kill(os.getpid(), signal.SIGINT)
            time.sleep(0.01)
            assert token.cancelled
            with pytest.raises(KeyboardInterrupt):
                os.kill(os.getpid(), signal.SIGINT)
                time.sleep(0.01)
        finally:
            restore()


# ---------------------------------------------------------------------------
# CleanupCoordinator
# ---------------------------------------------------------------------------


def _partial(store: LocalStore, data: bytes) -> str:
    digest = digest_bytes(data)
    store.partial_path(digest).write_bytes(data[:1])
    return digest


class TestCleanupCoordinator:
    @pytest.fixture()
    def store(self, models_path: Path) -> LocalStore:
        s = LocalStore(models_path)
        s.ensure_layout()
        return s

    def test_discard_removes_only_that_partial(self, store: LocalStore) -> None:
        failed = _partial(store, b"failed")
        other = _partial(store, b"someone else")
        coordinator = CleanupCoordinator(store, remove_downloaded_on_error=True)
        coordinator.discard(failed)

        assert coordinator.cleanup() is True
        assert not store.partial_path(failed).exists()
        assert store.partial_path(other).exists()

    def test_committed_blob_untouched(self, store: LocalStore) -> None:
        digest = _partial(store, b"x")
        store.commit(store.partial_path(digest), digest)
        coordinator = CleanupCoordinator(store, remove_downloaded_on_error=True)
        coordinator.discard(digest)
        assert coordinator.cleanup() is False
        assert store.has(digest)

    def test_keeps_partials_when_disabled(
        self, store: LocalStore, caplog: pytest.LogCaptureFixture
    ) -> None:
        digest = _partial(store, b"failed")
        coordinator = CleanupCoordinator(store, remove_downloaded_on_error=False)
        coordinator.discard(digest)
        with caplog.at_level(logging.INFO):
            assert coordinator.cleanup() is False
        assert store.partial_path(digest).exists()
        assert "next run can resume" in caplog.text

    def test_nothing_discarded(self, store: LocalStore) -> None:
        coordinator = CleanupCoordinator(store, remove_downloaded_on_error=True)
        assert coordinator.cleanup() is False
