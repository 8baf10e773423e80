"""Ask the Ollama server whether a downloaded model is now known to it."""

from __future__ import annotations

import logging

import httpx

from .errors import PresenceCheckError, UnauthorizedError
from .models import ModelIdentifier, Provider

__all__ = ["PresenceChecker", "candidate_names"]

logger = logging.getLogger(__name__)


def candidate_names(identifier: ModelIdentifier, manifest_host: str) -> list[str]:
    """Names under which the server may list *identifier*."""
    name = str(identifier)
    if identifier.provider is Provider.REGISTRY:
        qualified = f"{identifier.namespace}/{identifier.repository}:{identifier.tag}"
        return [name, qualified, f"{manifest_host}/{qualified}"]
    return [f"{manifest_host}/{name}", f"huggingface.co/{name}", name]


class PresenceChecker:
    """Read-only query against the server's ``/api/tags`` listing."""

    def __init__(
        self, client: httpx.AsyncClient, server_url: str, api_key: str | None = None
    ) -> None:
        self.client = client
        self.tags_url = f"{server_url.rstrip('/')}/api/tags"
        self.api_key = api_key

    async def confirm(self, identifier: ModelIdentifier, manifest_host: str) -> bool:
        names = set(candidate_names(identifier, manifest_host))
        logger.debug("Checking Ollama server for model(s) %s at %s", sorted(names), self.tags_url)
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            response = await self.client.get(self.tags_url, headers=headers)
        except httpx.HTTPError as exc:
            raise PresenceCheckError(f"Ollama server unreachable at {self.tags_url}: {exc}") from exc
        if response.status_code in (401, 403):
            raise UnauthorizedError(
                f"Ollama server rejected the API key with HTTP {response.status_code}"
            )
        if not response.is_success:
            raise PresenceCheckError(
                f"Ollama server answered HTTP {response.status_code} at {self.tags_url}"
            )
        try:
            models = response.json()["models"]
            listed = {entry["name"] for entry in models}
        except (ValueError, KeyError, TypeError) as exc:
            raise PresenceCheckError("Failed to parse Ollama tags response") from exc
        present = bool(names & listed)
        logger.debug("Model %s %s on the Ollama server", identifier, "found" if present else "not found")
        return present
