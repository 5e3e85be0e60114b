"""
EdgeChat CLI: terminal chat shell and diagnostics.

Registered as the `edgechat` console script via pyproject.toml.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import click

from .config import EdgeChatSettings
from .engines import ENGINES
from .exceptions import EdgeChatError, ErrorKind
from .initialization import InitializationProgress
from .service import ChatService, InitOptions, build_service

_EXIT_COMMANDS = {"/quit", "/exit", "/q"}
_EXIT_INCOMPATIBLE = 2


def _settings_from(ctx: click.Context) -> EdgeChatSettings:
    return ctx.obj["settings"]


def _build(settings: EdgeChatSettings) -> ChatService:
    try:
        return build_service(settings)
    except ValueError as exc:
        raise click.UsageError(str(exc)) from exc


def _init_options(
    settings: EdgeChatSettings,
    accelerator: bool | None,
    fallback: bool | None,
    retries: int | None,
) -> InitOptions:
    return InitOptions(
        use_accelerator=settings.use_accelerator if accelerator is None else accelerator,
        use_fallback=settings.use_fallback if fallback is None else fallback,
        retry_count=settings.retry_count if retries is None else retries,
    )


def _print_progress(event: InitializationProgress) -> None:
    color = "green" if event.progress >= 100 else "cyan"
    click.secho(f"[{event.progress:3d}%] {event.step}", fg=color, err=True)


async def _initialize(service: ChatService, options: InitOptions) -> int:
    """Run initialization with a progress display; returns a process exit code."""
    remove = service.progress_stream.listen(_print_progress)
    try:
        outcome = await service.initialize(options)
    finally:
        remove()
    if outcome:
        click.secho(service.status_message, fg="green", bold=True, err=True)
        return 0
    if outcome.error_kind is ErrorKind.ENGINE_LOAD:
        click.secho(
            f"This device cannot run the on-device model: {outcome.message}", fg="red", err=True
        )
        return _EXIT_INCOMPATIBLE
    kind = outcome.error_kind.value if outcome.error_kind else "unknown"
    click.secho(f"Initialization failed ({kind}): {outcome.message}", fg="red", err=True)
    return 1


def _stream_chunk(chunk: str) -> None:
    click.echo(chunk, nl=False)


async def _chat_loop(service: ChatService) -> None:
    loop = asyncio.get_running_loop()
    click.secho("Type /quit to exit, /info for model details, /status for backend status.", dim=True)
    while True:
        try:
            text = await loop.run_in_executor(
                None, lambda: click.prompt(click.style("you", fg="blue", bold=True), prompt_suffix="> ")
            )
        except click.exceptions.Abort:
            click.echo()
            return
        text = text.strip()
        if not text:
            continue
        if text in _EXIT_COMMANDS:
            return
        if text == "/info":
            click.echo(service.model_info())
            continue
        if text == "/status":
            click.echo(service.status_message)
            continue

        click.secho("assistant> ", fg="magenta", bold=True, nl=False)
        try:
            await service.generate_response_stream(text, _stream_chunk)
        except EdgeChatError as exc:
            click.echo()
            click.secho(f"Error ({exc.kind.value}): {exc}", fg="red", err=True)
            continue
        click.echo()


async def _run_chat(service: ChatService, options: InitOptions) -> int:
    try:
        rc = await _initialize(service, options)
        if rc:
            return rc
        await _chat_loop(service)
        return 0
    finally:
        service.dispose()


async def _run_init(service: ChatService, options: InitOptions) -> int:
    try:
        rc = await _initialize(service, options)
        if rc == 0:
            click.echo(service.model_info())
        return rc
    finally:
        service.dispose()


async def _resolve_model(service: ChatService) -> str:
    resolver = getattr(service.orchestrator.primary, "resolver", None)
    if resolver is not None:
        await resolver.resolve()
    return service.model_info()


# ── Group ─────────────────────────────────────────────────────────────────────


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="edgechat")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="App data directory (default: ~/.edgechat or $EDGECHAT_DATA_DIR).",
)
@click.option(
    "--asset-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory holding the bundled model assets.",
)
@click.option("--engine", type=click.Choice(sorted(ENGINES)), help="On-device inference engine.")
@click.option("--model", "model_name", help="Logical model name (asset file stem).")
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    data_dir: Path | None,
    asset_dir: Path | None,
    engine: str | None,
    model_name: str | None,
) -> None:
    """EdgeChat: on-device chat with resilient model initialization."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        settings = EdgeChatSettings.from_env().with_overrides(
            data_dir=data_dir, asset_dir=asset_dir, engine=engine, model_name=model_name
        )
    except ValueError as exc:
        raise click.UsageError(str(exc)) from exc
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


def _init_flags(func):
    func = click.option(
        "--retries", type=click.IntRange(min=1), help="Primary backend retry budget."
    )(func)
    func = click.option(
        "--fallback/--no-fallback", default=None, help="Engage the cloud fallback if local fails."
    )(func)
    func = click.option(
        "--accelerator/--no-accelerator", default=None, help="Try the GPU/accelerator delegate."
    )(func)
    return func


# ── Commands ──────────────────────────────────────────────────────────────────


@cli.command()
@_init_flags
@click.pass_context
def chat(
    ctx: click.Context, accelerator: bool | None, fallback: bool | None, retries: int | None
) -> None:
    """Initialize the model and start an interactive streaming chat.

    \b
    Examples:
        edgechat chat
        edgechat chat --accelerator
        edgechat --engine apple chat
    """
    settings = _settings_from(ctx)
    service = _build(settings)
    rc = asyncio.run(_run_chat(service, _init_options(settings, accelerator, fallback, retries)))
    raise SystemExit(rc)


@cli.command(name="init")
@_init_flags
@click.pass_context
def init_cmd(
    ctx: click.Context, accelerator: bool | None, fallback: bool | None, retries: int | None
) -> None:
    """Run initialization only and report the outcome."""
    settings = _settings_from(ctx)
    service = _build(settings)
    rc = asyncio.run(_run_init(service, _init_options(settings, accelerator, fallback, retries)))
    raise SystemExit(rc)


@cli.command()
@click.pass_context
def info(ctx: click.Context) -> None:
    """Resolve the model asset into app storage and print model details."""
    settings = _settings_from(ctx)
    service = _build(settings)
    try:
        report = asyncio.run(_resolve_model(service))
    except EdgeChatError as exc:
        click.secho(f"Error ({exc.kind.value}): {exc}", fg="red", err=True)
        raise SystemExit(1) from exc
    finally:
        service.dispose()
    click.echo(report)


def cli_entry() -> None:
    """Entry point for the console_scripts."""
    cli()


if __name__ == "__main__":
    cli_entry()
