"""CLI entry point for aumai-modelfetch."""

from __future__ import annotations

import asyncio
import functools
import logging
import sys
from pathlib import Path
from typing import NoReturn

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from .cancellation import CancellationToken, install_signal_handlers
from .config import (
    AppSettings,
    build_client,
    load_or_create_default,
    log_level_from_env,
    settings_file_path,
)
from .errors import ModelFetchError
from .models import Layer, ModelIdentifier, Provider, SessionOutcome, SessionStatus, TransferState
from .resolvers import HF_MAX_LISTABLE, paginate, resolver_for
from .session import AcquisitionSession

_console = Console(stderr=True)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else log_level_from_env()
    logging.basicConfig(
        format="%(message)s",
        level=level,
        handlers=[RichHandler(console=_console, show_path=False)],
        force=True,
    )
    if not verbose:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


def _fail(message: str) -> NoReturn:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


class _RichProgress:
    """Renders one bar per blob."""

    def __init__(self, progress: Progress) -> None:
        self.progress = progress
        self.tasks: dict[str, TaskID] = {}

    def _task(self, layer: Layer) -> TaskID:
        if layer.digest not in self.tasks:
            self.tasks[layer.digest] = self.progress.add_task(
                f"BLOB {layer.short_digest}", total=layer.size
            )
        return self.tasks[layer.digest]

    def on_layer_start(self, layer: Layer, resume_from: int) -> None:
        self.progress.update(self._task(layer), completed=resume_from)

    def on_progress(self, layer: Layer, bytes_done: int) -> None:
        self.progress.update(self._task(layer), completed=bytes_done)

    def on_layer_state(self, layer: Layer, state: TransferState) -> None:
        if state is TransferState.COMMITTED:
            self.progress.update(self._task(layer), completed=layer.size)


@click.group()
@click.version_option()
@click.option(
    "--settings",
    "settings_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Settings file (defaults to the per-user settings location).",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, settings_path: Path | None, verbose: bool) -> None:
    """AumAI ModelFetch: resumable, verified model downloads for Ollama."""
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["settings_path"] = settings_path or settings_file_path()


def _settings(ctx: click.Context) -> AppSettings:
    try:
        return load_or_create_default(ctx.obj["settings_path"])
    except (ModelFetchError, OSError) as exc:
        _fail(str(exc))


@main.command("show-config")
@click.pass_context
def show_config_command(ctx: click.Context) -> None:
    """Show the application configuration as JSON."""
    settings = _settings(ctx)
    click.echo(settings.model_dump_json(indent=2))


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


async def _collect(
    settings: AppSettings, provider: Provider, page: int | None, model: str | None
) -> list[str]:
    """All entries, or only page number *page*, of a model or tag listing."""
    async with build_client(settings) as client:
        resolver = resolver_for(provider, settings, client)
        if model is None:
            fetch = resolver.list_models
        else:
            fetch = functools.partial(resolver.list_tags, model)

        items: list[str] = []
        number = 0
        async for listing in paginate(fetch):
            number += 1
            if page is None:
                items.extend(listing.items)
            elif number == page:
                return listing.items
        if page is not None:
            raise ModelFetchError(f"Requested page {page} is beyond available data")
        return items


def _list(
    ctx: click.Context,
    provider: Provider,
    page: int | None,
    page_size: int | None,
    model: str | None = None,
) -> None:
    settings = _settings(ctx)
    if page_size is not None:
        transfer = settings.transfer.model_copy(update={"page_size": page_size})
        settings = settings.model_copy(update={"transfer": transfer})
    if provider is Provider.HUB and model is None and page is not None:
        size = settings.transfer.page_size
        if size * page > HF_MAX_LISTABLE:
            _fail(
                "Hugging Face does not allow listing beyond the first "
                f"{HF_MAX_LISTABLE} models; page {page} with page size {size} "
                f"exceeds this limit by {page * size - HF_MAX_LISTABLE} model(s)."
            )
    try:
        items = asyncio.run(_collect(settings, provider, page, model))
    except ModelFetchError as exc:
        _fail(str(exc))
    for item in items:
        click.echo(item)


_page_option = click.option("--page", type=click.IntRange(min=1), default=None, help="Page number (1-indexed).")
_page_size_option = click.option(
    "--page-size", type=click.IntRange(1, 100), default=None, help="Number of entries per page."
)


@main.command("list-models")
@_page_option
@_page_size_option
@click.pass_context
def list_models_command(ctx: click.Context, page: int | None, page_size: int | None) -> None:
    """List models available in the Ollama library."""
    _list(ctx, Provider.REGISTRY, page, page_size)


@main.command("list-tags")
@click.argument("model")
@click.pass_context
def list_tags_command(ctx: click.Context, model: str) -> None:
    """List all tags of an Ollama library MODEL, e.g. llama3.1."""
    _list(ctx, Provider.REGISTRY, None, None, model=model)


@main.command("hf-list-models")
@_page_option
@_page_size_option
@click.pass_context
def hf_list_models_command(ctx: click.Context, page: int | None, page_size: int | None) -> None:
    """List Hugging Face models that can be downloaded into Ollama."""
    _list(ctx, Provider.HUB, page, page_size)


@main.command("hf-list-tags")
@click.argument("repo")
@click.pass_context
def hf_list_tags_command(ctx: click.Context, repo: str) -> None:
    """List the quantisations of a Hugging Face REPO usable as tags."""
    _list(ctx, Provider.HUB, None, None, model=repo)


# ---------------------------------------------------------------------------
# Downloading
# ---------------------------------------------------------------------------


def _report(outcome: SessionOutcome, settings: AppSettings) -> None:
    status = outcome.status
    if status is SessionStatus.SUCCESS:
        click.echo(f"Model {outcome.identifier} successfully downloaded")
    elif status is SessionStatus.SUCCESS_WITH_WARNING:
        click.echo(f"Model {outcome.identifier} downloaded")
        click.echo(f"Warning: {outcome.warning}", err=True)
    else:
        if status is SessionStatus.FAILED:
            failed = next((s for s in outcome.layers if s.error is not None), None)
            where = f" (BLOB {failed.layer.digest})" if failed else ""
            click.echo(f"Error: download of {outcome.identifier} failed{where}: {outcome.error}", err=True)
        else:
            click.echo(f"Download of {outcome.identifier} cancelled", err=True)
        if outcome.cleaned_up:
            click.echo("Partially downloaded data was removed.", err=True)
        elif not settings.ollama_server.remove_downloaded_on_error:
            click.echo("Partially downloaded data was kept; run the command again to resume.", err=True)
    if outcome.manifest_path:
        click.echo(f"  Manifest : {outcome.manifest_path}")
    click.echo(f"  Fetched  : {outcome.fetched_bytes:,} bytes")


def _download(ctx: click.Context, text: str, provider: Provider) -> None:
    settings = _settings(ctx)
    try:
        identifier = ModelIdentifier.parse(text, provider)
    except ModelFetchError as exc:
        _fail(str(exc))

    click.echo(f"Downloading {identifier} into {settings.ollama_library.expanded_models_path}")
    cancel = CancellationToken()
    restore = install_signal_handlers(cancel)
    try:
        with Progress(
            TextColumn("{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            console=_console,
        ) as progress:
            session = AcquisitionSession(settings, cancel=cancel, progress=_RichProgress(progress))
            outcome = session.run_sync(identifier)
    except ModelFetchError as exc:
        _fail(f"{identifier}: {exc}")
    finally:
        restore()

    _report(outcome, settings)
    sys.exit(outcome.status.exit_code)


@main.command("model-download")
@click.argument("model")
@click.pass_context
def model_download_command(ctx: click.Context, model: str) -> None:
    """Download an Ollama library MODEL given as {model}:{tag}, e.g. llama3.1:8b."""
    _download(ctx, model, Provider.REGISTRY)


@main.command("hf-model-download")
@click.argument("model")
@click.pass_context
def hf_model_download_command(ctx: click.Context, model: str) -> None:
    """Download a Hugging Face MODEL given as {user}/{repo}:{quantisation}."""
    _download(ctx, model, Provider.HUB)


if __name__ == "__main__":
    main()
