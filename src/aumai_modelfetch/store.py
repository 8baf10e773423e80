"""Content-addressed local model store in the layout Ollama reads."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
from collections.abc import AsyncIterator
from pathlib import Path
from typing import TYPE_CHECKING

from .digest import normalize_digest
from .errors import StoreError, TransferCancelled
from .models import ModelIdentifier, Provider, StoreEntry

if TYPE_CHECKING:
    from .cancellation import CancellationToken

if os.name == "posix":
    import fcntl

__all__ = ["LocalStore"]

logger = logging.getLogger(__name__)

_BLOBS_DIR = "blobs"
_MANIFESTS_DIR = "manifests"
_PARTIAL_SUFFIX = "-partial"
_LOCK_SUFFIX = ".lock"
_LOCK_POLL_INTERVAL = 0.25


def _fsync(path: Path) -> None:
    with open(path, "rb") as fh:
        os.fsync(fh.fileno())


class LocalStore:
    """
    On-disk blob and manifest store under an Ollama ``models`` directory.

    Layout::

        blobs/sha256-<hex>                            # committed blobs
        blobs/sha256-<hex>-partial                    # resume cache
        manifests/<host>/<namespace>/<model>/<tag>    # saved manifests

    A file at a committed blob path always hashes to the digest in its
    name: bytes only ever reach it through ``commit``, which is an atomic
    rename inside ``blobs/``.
    """

    def __init__(self, models_path: str | Path) -> None:
        self.root = Path(models_path).expanduser()
        self.blobs_dir = self.root / _BLOBS_DIR
        self.manifests_dir = self.root / _MANIFESTS_DIR
        self._owner: tuple[int, int] | None = None

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def blob_path(self, digest: str) -> Path:
        return self.blobs_dir / normalize_digest(digest).replace(":", "-", 1)

    def partial_path(self, digest: str) -> Path:
        path = self.blob_path(digest)
        return path.with_name(path.name + _PARTIAL_SUFFIX)

    def manifest_path(self, identifier: ModelIdentifier, host: str) -> Path:
        if identifier.provider is Provider.REGISTRY:
            base = self.manifests_dir / host / identifier.namespace / identifier.repository
        else:
            base = self.manifests_dir / host / Path(*identifier.name.split("/"))
        return base / identifier.tag

    # ------------------------------------------------------------------
    # Layout and ownership
    # ------------------------------------------------------------------

    def ensure_layout(self) -> None:
        """Create ``blobs/`` and ``manifests/`` if needed."""
        self._owner = self._infer_owner()
        try:
            missing = [p for p in reversed(self.root.parents) if not p.exists()]
            missing += [
                d for d in (self.root, self.blobs_dir, self.manifests_dir) if not d.exists()
            ]
            for directory in missing:
                directory.mkdir(exist_ok=True)
                self._chown(directory)
        except OSError as exc:
            raise StoreError(f"Cannot create model store at {str(self.root)!r}: {exc}") from exc
        if os.name == "posix" and os.geteuid() != 0:
            owner_uid = self.root.stat().st_uid
            if owner_uid != os.geteuid():
                logger.warning(
                    "Models path %s is not owned by the current user; "
                    "run this command with superuser rights if writes fail",
                    self.root,
                )

    def _infer_owner(self) -> tuple[int, int] | None:
        # Only root can hand files over to the Ollama service user.
        if os.name != "posix" or os.geteuid() != 0:
            return None
        # A fresh models path takes the owner of its nearest existing parent.
        for path in (self.root, *self.root.parents):
            try:
                st = path.stat()
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Cannot infer ownership of %s: %s", self.root, exc)
                return None
            return st.st_uid, st.st_gid
        return None

    def _chown(self, path: Path) -> None:
        if self._owner is None:
            return
        try:
            os.chown(path, *self._owner)
        except OSError as exc:
            logger.warning("Failed to chown %s: %s", path, exc)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def has(self, digest: str, size: int | None = None) -> bool:
        """True when a committed blob exists (and has *size* bytes, if given)."""
        path = self.blob_path(digest)
        try:
            st = path.stat()
        except FileNotFoundError:
            return False
        return size is None or st.st_size == size

    def entry(self, digest: str) -> StoreEntry | None:
        path = self.blob_path(digest)
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return None
        return StoreEntry(digest=normalize_digest(digest), path=path, size=size)

    def partial_size(self, digest: str) -> int:
        try:
            return self.partial_path(digest).stat().st_size
        except FileNotFoundError:
            return 0

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def lock(
        self, digest: str, cancel: CancellationToken | None = None
    ) -> AsyncIterator[None]:
        """
        Hold the advisory lock for *digest* across processes.

        At most one session writes a given partial file at a time.  The
        wait polls so that cancellation is still observed.
        """
        if os.name != "posix":
            yield
            return
        partial = self.partial_path(digest)
        lock_path = partial.with_name(partial.name + _LOCK_SUFFIX)
        self.blobs_dir.mkdir(parents=True, exist_ok=True)
        waited = False
        while True:
            fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o644)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                os.close(fd)
                if not waited:
                    logger.info("Waiting for another download of %s", digest)
                    waited = True
                if cancel is not None and cancel.cancelled:
                    raise TransferCancelled(cancel.reason or "cancelled") from None
                await asyncio.sleep(_LOCK_POLL_INTERVAL)
                continue
            # The previous holder unlinks the lock file on release; only an
            # inode still reachable by name is a valid lock.
            try:
                same = os.fstat(fd).st_ino == os.stat(lock_path).st_ino
            except FileNotFoundError:
                same = False
            if same:
                break
            os.close(fd)
        try:
            yield
        finally:
            with contextlib.suppress(FileNotFoundError):
                lock_path.unlink()
            os.close(fd)

    # ------------------------------------------------------------------
    # Commit / remove
    # ------------------------------------------------------------------

    def commit(self, temp_path: str | Path, digest: str) -> StoreEntry:
        """
        Move a verified temp file into its content-addressed place.

        Callers must have verified *temp_path* against *digest* first.  If
        the blob is already committed (another session won the race) the
        temp file is discarded and the existing entry returned.
        """
        digest = normalize_digest(digest)
        source = Path(temp_path)
        target = self.blob_path(digest)
        try:
            self.blobs_dir.mkdir(parents=True, exist_ok=True)
            if target.exists():
                logger.debug("Blob %s already present, discarding %s", digest, source)
                source.unlink(missing_ok=True)
            else:
                if os.stat(source).st_dev != os.stat(self.blobs_dir).st_dev:
                    # Copy next to the target first so the final rename stays on one volume.
                    staged = self.partial_path(digest)
                    if staged != source:
                        shutil.copyfile(source, staged)
                        source.unlink(missing_ok=True)
                        source = staged
                _fsync(source)
                os.replace(source, target)
                self._chown(target)
                logger.info("Committed blob %s", digest)
        except OSError as exc:
            raise StoreError(f"Failed to commit blob {digest}: {exc}") from exc
        return StoreEntry(digest=digest, path=target, size=target.stat().st_size)

    def remove(self, digest: str) -> bool:
        """Delete a committed blob.  Absent is not an error; returns whether a file was removed."""
        return self._unlink(self.blob_path(digest))

    def remove_partial(self, digest: str) -> bool:
        return self._unlink(self.partial_path(digest))

    def _unlink(self, path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StoreError(f"Failed to remove {str(path)!r}: {exc}") from exc
        logger.info("Removed %s", path)
        return True

    # ------------------------------------------------------------------
    # Manifests
    # ------------------------------------------------------------------

    def write_manifest(self, identifier: ModelIdentifier, host: str, raw: str) -> Path:
        """Atomically write the manifest document Ollama uses to find the blobs."""
        target = self.manifest_path(identifier, host)
        tmp = target.with_name(f".{target.name}.tmp-{os.getpid()}")
        try:
            created = [p for p in reversed(target.parents) if not p.exists()]
            target.parent.mkdir(parents=True, exist_ok=True)
            for directory in created:
                self._chown(directory)
            tmp.write_text(raw, encoding="utf-8")
            _fsync(tmp)
            os.replace(tmp, target)
            self._chown(target)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise StoreError(f"Failed to save manifest {str(target)!r}: {exc}") from exc
        logger.info("Saved manifest to %s", target)
        return target
