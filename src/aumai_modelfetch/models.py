"""Pydantic models for aumai-modelfetch."""

from __future__ import annotations

import json
import re
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .digest import normalize_digest
from .errors import MalformedIdentifierError, MalformedManifestError, ModelFetchError

__all__ = [
    "Provider",
    "ModelIdentifier",
    "Layer",
    "Manifest",
    "TransferState",
    "LayerStatus",
    "SessionStatus",
    "SessionOutcome",
    "ListingPage",
    "StoreEntry",
]

_DIGEST_RE = re.compile(r"^(?P<algorithm>[a-z0-9]+):(?P<hex>[a-f0-9]+)$")
_REGISTRY_NAME_RE = re.compile(
    r"^(?:(?P<namespace>[a-z0-9][a-z0-9._-]*)/)?(?P<repository>[a-z0-9][a-z0-9._-]*)$"
)
_HUB_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*/[A-Za-z0-9][A-Za-z0-9._-]*$")
_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9._-]{0,127}$")

DEFAULT_TAG = "latest"
DEFAULT_NAMESPACE = "library"


class Provider(str, Enum):
    """Upstream a model is pulled from."""

    REGISTRY = "registry"
    HUB = "hub"


class ModelIdentifier(BaseModel):
    """A validated ``name:tag`` reference for one provider."""

    model_config = ConfigDict(frozen=True)

    provider: Provider
    name: str
    tag: str = DEFAULT_TAG

    @classmethod
    def parse(cls, text: str, provider: Provider) -> ModelIdentifier:
        """
        Parse *text* using the syntax of *provider*.

        Registry identifiers look like ``llama3.2`` or ``llama3.2:1b`` (an
        optional ``namespace/`` prefix is allowed); hub identifiers look
        like ``owner/repo`` or ``owner/repo:Q4_K_M``.  The tag defaults to
        ``latest``.
        """
        raw = text.strip()
        if not raw:
            raise MalformedIdentifierError(text, "identifier is empty")
        name, sep, tag = raw.partition(":")
        if sep and not tag:
            raise MalformedIdentifierError(text, "tag after ':' is empty")
        tag = tag or DEFAULT_TAG
        if ":" in tag:
            raise MalformedIdentifierError(text, "more than one ':' in identifier")
        if not _TAG_RE.match(tag):
            raise MalformedIdentifierError(text, f"invalid tag {tag!r}")

        if provider is Provider.REGISTRY:
            if not _REGISTRY_NAME_RE.match(name):
                raise MalformedIdentifierError(
                    text, "expected 'model[:tag]' with a lower-case model name"
                )
        else:
            if not _HUB_NAME_RE.match(name):
                raise MalformedIdentifierError(
                    text, "expected 'user/repository[:quantisation]'"
                )
        return cls(provider=provider, name=name, tag=tag)

    @property
    def namespace(self) -> str:
        if "/" in self.name:
            return self.name.split("/", 1)[0]
        return DEFAULT_NAMESPACE

    @property
    def repository(self) -> str:
        return self.name.rsplit("/", 1)[-1]

    def __str__(self) -> str:
        return f"{self.name}:{self.tag}"


class Layer(BaseModel):
    """A content-addressed blob referenced by a manifest."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    digest: str                                   # sha256:<hex>
    media_type: str = Field(default="", alias="mediaType")
    size: int = Field(ge=0)                       # bytes

    @field_validator("digest")
    @classmethod
    def check_digest(cls, value: str) -> str:
        value = value.strip().lower()
        if not _DIGEST_RE.match(value):
            raise ValueError(f"invalid digest {value!r}")
        return normalize_digest(value)

    @property
    def algorithm(self) -> str:
        return self.digest.split(":", 1)[0]

    @property
    def hex(self) -> str:
        return self.digest.split(":", 1)[1]

    @property
    def blob_name(self) -> str:
        """File name of the blob inside the ``blobs`` directory."""
        return f"{self.algorithm}-{self.hex}"

    @property
    def short_digest(self) -> str:
        return f"{self.algorithm}:{self.hex[:12]}"


class Manifest(BaseModel):
    """
    Normalised image manifest (Docker distribution schema version 2).

    ``raw`` keeps the document exactly as the upstream served it; that is
    what gets written into the local ``manifests`` tree.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    schema_version: int = Field(default=2, alias="schemaVersion")
    media_type: str = Field(default="", alias="mediaType")
    config: Layer | None = None
    layers: tuple[Layer, ...] = ()
    raw: str = Field(default="", repr=False)

    @classmethod
    def from_json(cls, text: str) -> Manifest:
        """Parse a manifest document, raising ``MalformedManifestError``."""
        try:
            data: Any = json.loads(text)
        except json.JSONDecodeError as exc:
            raise MalformedManifestError(f"manifest is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise MalformedManifestError("manifest is not a JSON object")
        try:
            return cls.model_validate(
                {
                    "schemaVersion": data.get("schemaVersion", 2),
                    "mediaType": data.get("mediaType", ""),
                    "config": data.get("config"),
                    "layers": data.get("layers") or [],
                    "raw": text,
                }
            )
        except ValidationError as exc:
            raise MalformedManifestError(f"manifest has an unexpected shape: {exc}") from exc

    def blobs(self) -> list[Layer]:
        """Config blob followed by the layers, each digest once."""
        seen: set[str] = set()
        result: list[Layer] = []
        for layer in ([self.config] if self.config else []) + list(self.layers):
            if layer.digest not in seen:
                seen.add(layer.digest)
                result.append(layer)
        return result

    @property
    def total_size(self) -> int:
        return sum(layer.size for layer in self.blobs())


class TransferState(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    VERIFYING = "verifying"
    COMMITTED = "committed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TERMINAL = {TransferState.COMMITTED, TransferState.FAILED, TransferState.CANCELLED}

_ALLOWED_TRANSITIONS: dict[TransferState, set[TransferState]] = {
    TransferState.PENDING: {
        TransferState.IN_PROGRESS,
        TransferState.COMMITTED,
        TransferState.CANCELLED,
        TransferState.FAILED,
    },
    TransferState.IN_PROGRESS: {
        TransferState.VERIFYING,
        TransferState.FAILED,
        TransferState.CANCELLED,
        TransferState.COMMITTED,
    },
    # Verifying may fall back to InProgress for the one retry from offset zero.
    TransferState.VERIFYING: {
        TransferState.COMMITTED,
        TransferState.FAILED,
        TransferState.IN_PROGRESS,
        TransferState.CANCELLED,
    },
}


class LayerStatus(BaseModel):
    """Mutable per-blob bookkeeping owned by one acquisition session."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    layer: Layer
    state: TransferState = TransferState.PENDING
    bytes_done: int = 0
    bytes_fetched: int = 0
    resumed_from: int = 0
    skipped: bool = False
    error: ModelFetchError | None = None

    def transition(self, new_state: TransferState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS.get(self.state, set()):
            raise RuntimeError(
                f"illegal transition {self.state.value} -> {new_state.value} "
                f"for {self.layer.digest}"
            )
        self.state = new_state

    @property
    def terminal(self) -> bool:
        return self.state in _TERMINAL


class SessionStatus(str, Enum):
    SUCCESS = "success"
    SUCCESS_WITH_WARNING = "success_with_warning"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def exit_code(self) -> int:
        if self in (SessionStatus.SUCCESS, SessionStatus.SUCCESS_WITH_WARNING):
            return 0
        if self is SessionStatus.CANCELLED:
            return 130
        return 1


class SessionOutcome(BaseModel):
    """Aggregate result of one acquisition session."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    identifier: ModelIdentifier
    status: SessionStatus
    layers: list[LayerStatus] = Field(default_factory=list)
    manifest_path: Path | None = None
    warning: str | None = None
    error: ModelFetchError | None = None
    cleaned_up: bool = False

    @property
    def ok(self) -> bool:
        return self.status.exit_code == 0

    @property
    def fetched_bytes(self) -> int:
        return sum(s.bytes_fetched for s in self.layers)


class ListingPage(BaseModel):
    """One page of a model or tag catalogue."""

    items: list[str] = Field(default_factory=list)
    next_page_token: str | None = None


class StoreEntry(BaseModel):
    """A committed blob on disk."""

    model_config = ConfigDict(frozen=True)

    digest: str
    path: Path
    size: int
