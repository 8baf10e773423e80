"""Cooperative cancellation and cleanup after failed or interrupted downloads."""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from .errors import StoreError, TransferCancelled

if TYPE_CHECKING:
    from .store import LocalStore

__all__ = [
    "CancellationToken",
    "install_signal_handlers",
    "CleanupCoordinator",
]

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1


class CancellationToken:
    """
    A level-triggered cancellation flag.

    Once cancelled it stays cancelled.  Setting it only assigns plain
    attributes, so it is safe to call from a signal handler, a worker
    thread or a task.  A child token reports cancellation when either it
    or any of its ancestors has been cancelled; cancelling a child never
    affects its parent.
    """

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._parent = parent
        self._cancelled = False
        self._reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> bool:
        """Raise the flag.  Returns ``False`` if it was already raised."""
        if self._cancelled:
            return False
        self._reason = reason
        self._cancelled = True
        return True

    @property
    def cancelled(self) -> bool:
        if self._cancelled:
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def reason(self) -> str | None:
        if self._cancelled:
            return self._reason
        return self._parent.reason if self._parent is not None else None

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise TransferCancelled(self.reason or "cancelled")

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to *seconds*, waking early on cancellation.  Returns ``self.cancelled``."""
        deadline = time.monotonic() + seconds
        while not self.cancelled:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(remaining, _POLL_INTERVAL))
        return self.cancelled

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled}, reason={self.reason!r})"


def install_signal_handlers(token: CancellationToken) -> Callable[[], None]:
    """
    Route SIGINT and SIGTERM into *token*.

    The first signal only raises the token so in-flight transfers stop at
    their next chunk boundary.  A second SIGINT falls through to Python's
    default handling (``KeyboardInterrupt``).  Returns a callable that puts
    the previous handlers back.
    """
    signums = [signal.SIGINT]
    if hasattr(signal, "SIGTERM"):
        signums.append(signal.SIGTERM)

    previous = {signum: signal.getsignal(signum) for signum in signums}

    def _handler(signum: int, frame: object) -> None:
        name = signal.Signals(signum).name
        if token.cancel(f"received {name}"):
            logger.warning("%s received, stopping after the current chunk", name)
        signal.signal(signal.SIGINT, signal.default_int_handler)

    for signum in signums:
        signal.signal(signum, _handler)

    def restore() -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    return restore


class CleanupCoordinator:
    """
    Decides what happens to partial data when a session does not succeed.

    ``discard`` is called for each blob the session gives up on while the
    session still holds that blob's store lock, so a partial file another
    session has claimed since is never touched.  Committed blobs are never
    removed: they are verified, content-addressed and possibly shared with
    other models.
    """

    def __init__(self, store: LocalStore, remove_downloaded_on_error: bool) -> None:
        self.store = store
        self.remove_downloaded_on_error = remove_downloaded_on_error
        self._removed: set[str] = set()
        self._kept: set[str] = set()

    def discard(self, digest: str) -> None:
        """Apply the policy to the partial file of *digest*.  Caller holds its lock."""
        if not self.remove_downloaded_on_error:
            if self.store.partial_size(digest):
                self._kept.add(digest)
            return
        try:
            if self.store.remove_partial(digest):
                self._removed.add(digest)
        except StoreError as exc:
            logger.warning("Could not remove partial download of %s: %s", digest, exc)

    def cleanup(self) -> bool:
        """
        Report the outcome of the policy.  Returns ``True`` if partial data was removed.
        """
        if self._kept:
            logger.info(
                "Keeping %d partial download(s) so the next run can resume", len(self._kept)
            )
        if self._removed:
            logger.info("Removed partial downloads of %d blob(s)", len(self._removed))
        return bool(self._removed)
