"""Streaming digest computation and verification."""

from __future__ import annotations

import hashlib
import re
from pathlib import Path

from .errors import DigestMismatchError

__all__ = [
    "SUPPORTED_ALGORITHMS",
    "compute_digest",
    "digest_bytes",
    "normalize_digest",
    "verify",
]

SUPPORTED_ALGORITHMS = {
    "sha256": 64,
    "sha512": 128,
}

_READ_SIZE = 65536
_DIGEST_RE = re.compile(r"^(?P<algorithm>[a-z0-9]+)[:-](?P<hex>[a-f0-9]+)$")


def normalize_digest(digest: str) -> str:
    """
    Return *digest* as ``<algorithm>:<hex>`` in lower case.

    Also accepts the ``sha256-<hex>`` form used for blob file names.
    """
    match = _DIGEST_RE.match(digest.strip().lower())
    if not match:
        raise ValueError(f"Malformed digest {digest!r}")
    algorithm, hex_digest = match.group("algorithm"), match.group("hex")
    expected_len = SUPPORTED_ALGORITHMS.get(algorithm)
    if expected_len is None:
        raise ValueError(f"Unsupported digest algorithm {algorithm!r}")
    if len(hex_digest) != expected_len:
        raise ValueError(
            f"Digest {digest!r} should have {expected_len} hex characters"
        )
    return f"{algorithm}:{hex_digest}"


def compute_digest(path: str | Path, algorithm: str = "sha256") -> str:
    """Return ``'<algorithm>:<hex>'`` for the file at *path*, read in chunks."""
    h = hashlib.new(algorithm)
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(_READ_SIZE), b""):
            h.update(chunk)
    return f"{algorithm}:{h.hexdigest()}"


def digest_bytes(data: bytes, algorithm: str = "sha256") -> str:
    """Return ``'<algorithm>:<hex>'`` for *data*."""
    return f"{algorithm}:{hashlib.new(algorithm, data).hexdigest()}"


def verify(path: str | Path, expected_digest: str) -> str:
    """
    Hash the whole file at *path* and compare it with *expected_digest*.

    This is the only gate between "bytes on disk" and "bytes trusted",
    so it always runs over the complete file, resumed or not.  Returns the
    normalised digest; raises ``DigestMismatchError`` on mismatch.
    """
    expected = normalize_digest(expected_digest)
    algorithm = expected.split(":", 1)[0]
    actual = compute_digest(path, algorithm)
    if actual != expected:
        raise DigestMismatchError(expected, actual, Path(path))
    return expected
