"""
aumai-modelfetch quickstart: identifiers, the local store, and a full pull.

Run directly:

    python examples/quickstart.py

The demos serve a tiny fake registry in-process through
``httpx.MockTransport``, so nothing touches the network.  All files go to
a temporary directory that is removed afterwards.
"""

from __future__ import annotations

import asyncio
import json
import pathlib
import tempfile

import httpx


# ---------------------------------------------------------------------------
# Demo 1: Parse model identifiers
# ---------------------------------------------------------------------------

def demo_identifiers() -> None:
    """Show how registry and Hugging Face identifiers are validated."""
    print("\n=== Demo 1: Model identifiers ===")

    from aumai_modelfetch.errors import MalformedIdentifierError
    from aumai_modelfetch.models import ModelIdentifier, Provider

    for text, provider in [
        ("llama3.2", Provider.REGISTRY),
        ("llama3.2:1b", Provider.REGISTRY),
        ("bartowski/Llama-3.2-1B-Instruct-GGUF:Q4_K_M", Provider.HUB),
        ("Not A Model", Provider.REGISTRY),
    ]:
        try:
            ident = ModelIdentifier.parse(text, provider)
        except MalformedIdentifierError as exc:
            print(f"  {text!r:50} -> rejected ({exc.reason})")
        else:
            print(f"  {text!r:50} -> name={ident.name} tag={ident.tag}")


# ---------------------------------------------------------------------------
# Demo 2: Verify and commit a blob into the local store
# ---------------------------------------------------------------------------

def demo_store(root: pathlib.Path) -> None:
    """Write a partial file, verify its digest and commit it."""
    print("\n=== Demo 2: Content-addressed store ===")

    from aumai_modelfetch.digest import digest_bytes, verify
    from aumai_modelfetch.store import LocalStore

    store = LocalStore(root / "store-demo")
    store.ensure_layout()

    data = b"pretend these are model weights" * 64
    digest = digest_bytes(data)
    partial = store.partial_path(digest)
    partial.write_bytes(data)
    print(f"  Partial file : {partial.name}")

    verify(partial, digest)
    entry = store.commit(partial, digest)
    print(f"  Committed    : {entry.path.name} ({entry.size:,} bytes)")
    print(f"  has(digest)  : {store.has(digest)}")


# ---------------------------------------------------------------------------
# Demo 3: Pull a model from an in-process fake registry
# ---------------------------------------------------------------------------

def _fake_registry() -> httpx.MockTransport:
    from aumai_modelfetch.digest import digest_bytes

    config = json.dumps({"model_format": "gguf"}).encode()
    weights = bytes(range(256)) * 64
    blobs = {digest_bytes(b): b for b in (config, weights)}
    manifest = json.dumps(
        {
            "schemaVersion": 2,
            "mediaType": "application/vnd.docker.distribution.manifest.v2+json",
            "config": {"digest": digest_bytes(config), "size": len(config)},
            "layers": [
                {
                    "mediaType": "application/vnd.ollama.image.model",
                    "digest": digest_bytes(weights),
                    "size": len(weights),
                }
            ],
        }
    )

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/manifests/latest"):
            return httpx.Response(200, text=manifest)
        if "/blobs/" in path:
            return httpx.Response(200, content=blobs[path.rsplit("/", 1)[-1]])
        if path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": "demo:latest"}]})
        return httpx.Response(404)

    return httpx.MockTransport(handler)


def demo_pull(root: pathlib.Path) -> None:
    """Resolve, download, verify and commit a whole model."""
    print("\n=== Demo 3: Pull a model ===")

    from aumai_modelfetch.config import AppSettings, OllamaLibrary, build_client
    from aumai_modelfetch.models import ModelIdentifier, Provider
    from aumai_modelfetch.session import AcquisitionSession

    settings = AppSettings(
        ollama_library=OllamaLibrary(
            models_path=str(root / "models"),
            registry_base_url="https://registry.example/v2/library/",
        )
    )
    ident = ModelIdentifier.parse("demo", Provider.REGISTRY)

    async def pull():
        async with build_client(settings, transport=_fake_registry()) as client:
            return await AcquisitionSession(settings, client=client).run(ident)

    outcome = asyncio.run(pull())
    print(f"  Status       : {outcome.status.value}")
    print(f"  Manifest     : {outcome.manifest_path.relative_to(root)}")
    print(f"  Fetched      : {outcome.fetched_bytes:,} bytes")
    for status in outcome.layers:
        print(f"  BLOB {status.layer.short_digest} : {status.state.value}")

    again = asyncio.run(pull())
    print(f"  Second pull fetched {again.fetched_bytes} bytes (everything already present)")


def main() -> None:
    demo_identifiers()
    with tempfile.TemporaryDirectory() as tmp:
        root = pathlib.Path(tmp)
        demo_store(root)
        demo_pull(root)
    print("\nDone.")


if __name__ == "__main__":
    main()
