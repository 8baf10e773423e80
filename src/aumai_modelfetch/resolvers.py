"""Manifest and catalogue resolution for the Ollama registry and Hugging Face."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from html.parser import HTMLParser
from typing import Protocol

import httpx

from .cancellation import CancellationToken
from .config import AppSettings
from .errors import MalformedManifestError, ModelNotFoundError, ResolveError
from .models import ListingPage, Manifest, ModelIdentifier, Provider
from .transfer import check_response, with_retries

__all__ = [
    "ManifestResolver",
    "RegistryResolver",
    "HubResolver",
    "resolver_for",
    "paginate",
]

logger = logging.getLogger(__name__)

MANIFEST_ACCEPT = ", ".join(
    [
        "application/vnd.docker.distribution.manifest.v2+json",
        "application/vnd.oci.image.manifest.v1+json",
    ]
)

HF_REGISTRY_URL = "https://hf.co/v2/"
HF_API_URL = "https://huggingface.co/api/"
HF_MAX_LISTABLE = 999
HF_MAX_PAGE_SIZE = 100

_LIBRARY_PREFIX = "/library/"


class ManifestResolver(Protocol):
    """What the acquisition session needs from an upstream."""

    provider: Provider
    manifest_host: str

    async def resolve(self, identifier: ModelIdentifier) -> Manifest: ...

    async def list_models(self, page_token: str | None = None) -> ListingPage: ...

    async def list_tags(self, model_name: str, page_token: str | None = None) -> ListingPage: ...

    def blob_url(self, identifier: ModelIdentifier, digest: str) -> str: ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _LinkCollector(HTMLParser):
    """Collects ``href`` values of anchors."""

    def __init__(self) -> None:
        super().__init__()
        self.hrefs: list[str] = []

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag != "a":
            return
        for name, value in attrs:
            if name == "href" and value:
                self.hrefs.append(value)


def _hrefs(html: str) -> list[str]:
    collector = _LinkCollector()
    collector.feed(html)
    collector.close()
    return collector.hrefs


def _sorted_unique(items: list[str]) -> list[str]:
    return sorted(set(items), key=str.lower)


def _page_slice(items: list[str], page_token: str | None, page_size: int) -> ListingPage:
    """Cut one page out of a fully known, sorted list using an offset token."""
    try:
        start = int(page_token) if page_token else 0
    except ValueError as exc:
        raise ResolveError(f"Invalid page token {page_token!r}") from exc
    if start < 0:
        raise ResolveError(f"Invalid page token {page_token!r}")
    end = start + page_size
    next_token = str(end) if end < len(items) else None
    return ListingPage(items=items[start:end], next_page_token=next_token)


async def paginate(
    fetch_page: Callable[[str | None], Awaitable[ListingPage]],
    page_token: str | None = None,
) -> AsyncIterator[ListingPage]:
    """
    Yield pages from *fetch_page* (a ``list_models``/``list_tags`` bound
    call taking ``page_token``) until the upstream reports no next page.
    """
    while True:
        page = await fetch_page(page_token)
        yield page
        if not page.next_page_token:
            return
        page_token = page.next_page_token


def _next_link(response: httpx.Response) -> str | None:
    return response.links.get("next", {}).get("url")


# ---------------------------------------------------------------------------
# Ollama registry
# ---------------------------------------------------------------------------


class RegistryResolver:
    """
    Resolves models served by an Ollama-style registry.

    Manifests and blobs come from ``registry_base_url``; the catalogue of
    models and tags is scraped from the library web pages at
    ``library_base_url``, which is the only place Ollama publishes it.
    """

    provider = Provider.REGISTRY

    def __init__(
        self,
        settings: AppSettings,
        client: httpx.AsyncClient,
        cancel: CancellationToken | None = None,
    ) -> None:
        self.settings = settings
        self.client = client
        self.cancel = cancel or CancellationToken()
        self.library = settings.ollama_library

    @property
    def manifest_host(self) -> str:
        return self.library.registry_host

    def _repository_url(self, identifier: ModelIdentifier) -> str:
        base = self.library.registry_base_url
        if identifier.namespace != "library" and base.endswith("/library/"):
            base = base[: -len("library/")] + f"{identifier.namespace}/"
        return f"{base}{identifier.repository}"

    def manifest_url(self, identifier: ModelIdentifier) -> str:
        return f"{self._repository_url(identifier)}/manifests/{identifier.tag}"

    def blob_url(self, identifier: ModelIdentifier, digest: str) -> str:
        return f"{self._repository_url(identifier)}/blobs/{digest}"

    async def _get(self, url: str, what: str, **kwargs) -> httpx.Response:
        async def operation() -> httpx.Response:
            response = await self.client.get(url, **kwargs)
            check_response(response, what)
            return response

        return await with_retries(operation, self.settings.transfer, self.cancel, what)

    async def resolve(self, identifier: ModelIdentifier) -> Manifest:
        if identifier.provider is not Provider.REGISTRY:
            raise ResolveError(f"{identifier} is not an Ollama registry model")
        url = self.manifest_url(identifier)
        logger.info("Downloading manifest from %s", url)
        response = await self._get(
            url, f"model {identifier}", headers={"Accept": MANIFEST_ACCEPT}
        )
        manifest = Manifest.from_json(response.text)
        if not manifest.blobs():
            raise MalformedManifestError(f"Manifest for {identifier} lists no blobs")
        logger.debug("Manifest for %s lists %d blob(s)", identifier, len(manifest.blobs()))
        return manifest

    async def _all_models(self) -> list[str]:
        response = await self._get(self.library.library_base_url, "Ollama library")
        names = []
        for href in _hrefs(response.text):
            if href.startswith(_LIBRARY_PREFIX):
                name = href[len(_LIBRARY_PREFIX):]
                if name and "/" not in name and ":" not in name:
                    names.append(name)
        models = _sorted_unique(names)
        logger.debug("Found %d models in the Ollama library", len(models))
        return models

    async def list_models(self, page_token: str | None = None) -> ListingPage:
        return _page_slice(await self._all_models(), page_token, self.settings.transfer.page_size)

    async def list_tags(self, model_name: str, page_token: str | None = None) -> ListingPage:
        url = f"{self.library.library_base_url}{model_name}/tags"
        logger.debug("Fetching tags for model %s from the Ollama library", model_name)
        response = await self._get(url, f"model {model_name}")
        prefix = f"{_LIBRARY_PREFIX}{model_name}:"
        tags = [
            href[len(_LIBRARY_PREFIX):]
            for href in _hrefs(response.text)
            if href.startswith(prefix) and len(href) > len(prefix)
        ]
        if not tags:
            raise ModelNotFoundError(f"Model {model_name} not found in the Ollama library")
        return _page_slice(_sorted_unique(tags), page_token, self.settings.transfer.page_size)


# ---------------------------------------------------------------------------
# Hugging Face hub
# ---------------------------------------------------------------------------


class HubResolver:
    """
    Resolves GGUF models on Hugging Face that Ollama can run.

    Quantisation tags are derived from the ``.gguf`` file names of a
    repository; manifests and blobs are served by the hub's
    registry-compatible endpoint at ``hf.co/v2``.
    """

    provider = Provider.HUB
    manifest_host = httpx.URL(HF_REGISTRY_URL).host

    def __init__(
        self,
        settings: AppSettings,
        client: httpx.AsyncClient,
        cancel: CancellationToken | None = None,
        registry_url: str = HF_REGISTRY_URL,
        api_url: str = HF_API_URL,
    ) -> None:
        self.settings = settings
        self.client = client
        self.cancel = cancel or CancellationToken()
        self.registry_url = registry_url
        self.api_url = api_url

    def manifest_url(self, identifier: ModelIdentifier) -> str:
        return f"{self.registry_url}{identifier.name}/manifests/{identifier.tag}"

    def blob_url(self, identifier: ModelIdentifier, digest: str) -> str:
        return f"{self.registry_url}{identifier.name}/blobs/{digest}"

    async def _get(self, url: str, what: str, **kwargs) -> httpx.Response:
        async def operation() -> httpx.Response:
            response = await self.client.get(url, **kwargs)
            check_response(response, what)
            return response

        return await with_retries(operation, self.settings.transfer, self.cancel, what)

    async def _quantisations(self, repo: str) -> list[str]:
        url = f"{self.api_url}models/{repo}"
        logger.debug("Fetching tags for model %s from Hugging Face", repo)
        response = await self._get(url, f"Hugging Face model {repo}", params={"blobs": "true"})
        try:
            siblings = response.json().get("siblings") or []
            filenames = [s["rfilename"] for s in siblings]
        except (ValueError, AttributeError, KeyError, TypeError) as exc:
            raise ResolveError(f"Unexpected model info for {repo}: {exc}") from exc
        quants = [
            name[: -len(".gguf")].rsplit("-", 1)[-1]
            for name in filenames
            if name.endswith(".gguf")
        ]
        if not quants:
            raise ModelNotFoundError(
                f"The model {repo} has no support for Ollama (no .gguf files found)"
            )
        return _sorted_unique(quants)

    async def resolve(self, identifier: ModelIdentifier) -> Manifest:
        if identifier.provider is not Provider.HUB:
            raise ResolveError(f"{identifier} is not a Hugging Face model")
        quants = await self._quantisations(identifier.name)
        if identifier.tag != "latest" and identifier.tag.lower() not in {
            q.lower() for q in quants
        }:
            raise ModelNotFoundError(
                f"Quantisation {identifier.tag!r} not available for {identifier.name}; "
                f"available: {', '.join(quants)}"
            )
        url = self.manifest_url(identifier)
        logger.info("Downloading manifest from %s", url)
        response = await self._get(
            url, f"Hugging Face model {identifier}", headers={"Accept": MANIFEST_ACCEPT}
        )
        manifest = Manifest.from_json(response.text)
        if not manifest.blobs():
            raise MalformedManifestError(f"Manifest for {identifier} lists no blobs")
        return manifest

    async def list_models(self, page_token: str | None = None) -> ListingPage:
        """
        One page of Ollama-compatible models, sorted within the page.

        The token is ``<models listed so far>|<next URL>``, the URL being the
        ``rel="next"`` link the hub returns in its ``Link`` header.  The hub
        cannot list past model ``HF_MAX_LISTABLE``; a token beyond it yields
        an empty final page.
        """
        page_size = min(self.settings.transfer.page_size, HF_MAX_PAGE_SIZE)
        offset = 0
        if page_token:
            listed, _, url = page_token.partition("|")
            try:
                offset = int(listed)
            except ValueError as exc:
                raise ResolveError(f"Invalid page token {page_token!r}") from exc
            if not url:
                raise ResolveError(f"Invalid page token {page_token!r}")
            if offset >= HF_MAX_LISTABLE:
                logger.info("Hugging Face lists at most %d models", HF_MAX_LISTABLE)
                return ListingPage(items=[])
            params = None
        else:
            url = f"{self.api_url}models"
            params = {
                "apps": "ollama",
                "gated": "false",
                "limit": str(page_size),
                "sort": "trendingScore",
            }
        response = await self._get(url, "Hugging Face model list", params=params)
        try:
            models = [entry.get("modelId") or entry["id"] for entry in response.json()]
        except (ValueError, AttributeError, KeyError, TypeError) as exc:
            raise ResolveError(f"Unexpected model list from Hugging Face: {exc}") from exc
        models = models[: HF_MAX_LISTABLE - offset]
        listed_now = offset + len(models)
        next_url = _next_link(response)
        next_token = None
        if next_url and listed_now < HF_MAX_LISTABLE:
            next_token = f"{listed_now}|{next_url}"
        return ListingPage(items=_sorted_unique(models), next_page_token=next_token)

    async def list_tags(self, model_name: str, page_token: str | None = None) -> ListingPage:
        tags = [f"{model_name}:{q}" for q in await self._quantisations(model_name)]
        return _page_slice(tags, page_token, self.settings.transfer.page_size)


def resolver_for(
    provider: Provider,
    settings: AppSettings,
    client: httpx.AsyncClient,
    cancel: CancellationToken | None = None,
) -> ManifestResolver:
    if provider is Provider.REGISTRY:
        return RegistryResolver(settings, client, cancel)
    return HubResolver(settings, client, cancel)
